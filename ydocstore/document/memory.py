"""
In-memory document adapter for testing.

This module provides a tiny conflict-free document model for:
- Unit and integration tests
- Local development without pycrdt

The model is a grow-only set of entries keyed by ``(client, clock)``.
Applying updates is a set union, so it is idempotent and commutative like
a real CRDT. Payloads are JSON.

Invariants:
    - A malformed payload anywhere in a batch leaves the instance untouched
    - The state vector maps each client to its next clock

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with DocumentAdapter protocol
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any


def _encode(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def encode_entries(entries: Iterable[tuple[str, int, Any]]) -> bytes:
    """Encode entries as an update payload."""
    return _encode({"entries": [[client, clock, value] for client, clock, value in entries]})


def decode_entries(payload: bytes) -> list[tuple[str, int, Any]]:
    """Decode an update payload.

    Raises:
        ValueError: If the payload is not a valid update
    """
    try:
        data = json.loads(bytes(payload).decode("utf-8"))
        return [(str(client), int(clock), value) for client, clock, value in data["entries"]]
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed update payload: {e}") from e


@dataclass
class MemoryDocument:
    """Document instance of the in-memory model.

    Attributes:
        entries: Entry values keyed by (client, clock)
        batch_sizes: Size of every batch applied, in order
        remote_batches: Number of batches applied as remote changes
    """

    entries: dict[tuple[str, int], Any] = field(default_factory=dict)
    batch_sizes: list[int] = field(default_factory=list)
    remote_batches: int = 0

    @property
    def value(self) -> list[Any]:
        """Entry values in (clock, client) order."""
        return [self.entries[key] for key in sorted(self.entries, key=lambda k: (k[1], k[0]))]

    def state_vector(self) -> dict[str, int]:
        vector: dict[str, int] = {}
        for client, clock in self.entries:
            vector[client] = max(vector.get(client, 0), clock + 1)
        return vector

    def insert(self, client: str, value: Any) -> bytes:
        """Add a local entry and return the update describing it."""
        clock = self.state_vector().get(client, 0)
        self.entries[(client, clock)] = value
        return encode_entries([(client, clock, value)])


class InMemoryDocumentAdapter:
    """DocumentAdapter for MemoryDocument instances.

    Example:
        >>> adapter = InMemoryDocumentAdapter()
        >>> doc = adapter.create_empty_instance()
        >>> adapter.apply_payload(doc, encode_entries([("alice", 0, "hi")]))
        >>> doc.value
        ['hi']
    """

    def create_empty_instance(self) -> MemoryDocument:
        return MemoryDocument()

    def apply_payload(
        self, instance: MemoryDocument, payload: bytes, is_remote: bool = True
    ) -> None:
        self.apply_payloads(instance, [payload], is_remote=is_remote)

    def apply_payloads(
        self,
        instance: MemoryDocument,
        payloads: Iterable[bytes],
        is_remote: bool = True,
    ) -> None:
        decoded = [decode_entries(payload) for payload in payloads]
        for entries in decoded:
            for client, clock, value in entries:
                instance.entries.setdefault((client, clock), value)
        instance.batch_sizes.append(len(decoded))
        if is_remote:
            instance.remote_batches += 1

    def encode_full_state(self, instance: MemoryDocument) -> bytes:
        return encode_entries(
            (client, clock, instance.entries[(client, clock)])
            for client, clock in sorted(instance.entries)
        )

    def encode_state_vector_summary(self, instance: MemoryDocument) -> bytes:
        return _encode(instance.state_vector())
