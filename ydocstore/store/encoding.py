"""
Checkpoint value encoding.

A checkpoint row stores two things in its ``value`` column:

    varuint(high_watermark) || varuint(len(state_vector)) || state_vector

Variable-length unsigned integers use the lib0 layout (7 bits per byte,
least significant group first, high bit set on every byte but the last),
so rows stay readable by Yjs tooling that understands the same layout.

pycrdt ships equivalent writers (``write_var_uint``, ``write_message``),
but the store package does not import the document model: it only moves
opaque bytes and must stay usable with any DocumentAdapter. The decoder
here is also stricter than a message reader, rejecting trailing bytes so
a corrupt row surfaces as MalformedCheckpoint.
"""

from __future__ import annotations


def write_var_uint(buf: bytearray, num: int) -> None:
    """Append ``num`` to ``buf`` as a lib0 varuint."""
    if num < 0:
        raise ValueError(f"varuint must not be negative: {num}")
    while num > 0x7F:
        buf.append(0x80 | (num & 0x7F))
        num >>= 7
    buf.append(num & 0x7F)


def read_var_uint(data: bytes, pos: int) -> tuple[int, int]:
    """Read a lib0 varuint from ``data`` at ``pos``.

    Returns:
        Tuple of (value, position after the value)

    Raises:
        ValueError: If the data ends inside the value
    """
    num = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("Unexpected end of data while reading varuint")
        byte = data[pos]
        pos += 1
        num |= (byte & 0x7F) << shift
        if byte < 0x80:
            return num, pos
        shift += 7


def encode_checkpoint(high_watermark: int, state_vector: bytes) -> bytes:
    """Encode a checkpoint value."""
    buf = bytearray()
    write_var_uint(buf, high_watermark)
    write_var_uint(buf, len(state_vector))
    buf.extend(state_vector)
    return bytes(buf)


def decode_checkpoint(data: bytes) -> tuple[int, bytes]:
    """Decode a checkpoint value.

    Returns:
        Tuple of (high_watermark, state_vector)

    Raises:
        ValueError: If the value is truncated or has trailing bytes
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise ValueError(f"Checkpoint value must be bytes, got {type(data).__name__}")
    data = bytes(data)
    high_watermark, pos = read_var_uint(data, 0)
    length, pos = read_var_uint(data, pos)
    end = pos + length
    if end > len(data):
        raise ValueError(f"State vector truncated: expected {length} bytes, got {len(data) - pos}")
    if end != len(data):
        raise ValueError(f"Unexpected {len(data) - end} trailing bytes after state vector")
    return high_watermark, data[pos:end]
