"""
Yjs document adapter backed by pycrdt.

Payloads are Yjs v1 updates and state vectors, the same bytes a Yjs
client or y-websocket server produces, so a log written here can be
replayed by any Yjs implementation.
"""

from __future__ import annotations

from collections.abc import Iterable

from pycrdt import Doc

REMOTE_ORIGIN = "ydocstore-remote"


class YDocAdapter:
    """DocumentAdapter for pycrdt ``Doc`` instances.

    Example:
        >>> adapter = YDocAdapter()
        >>> doc = adapter.create_empty_instance()
        >>> adapter.apply_payload(doc, update)
    """

    def create_empty_instance(self) -> Doc:
        return Doc()

    def apply_payload(self, instance: Doc, payload: bytes, is_remote: bool = True) -> None:
        self.apply_payloads(instance, [payload], is_remote=is_remote)

    def apply_payloads(
        self,
        instance: Doc,
        payloads: Iterable[bytes],
        is_remote: bool = True,
    ) -> None:
        origin = REMOTE_ORIGIN if is_remote else None
        # apply_update joins the enclosing transaction
        with instance.transaction(origin=origin):
            for payload in payloads:
                instance.apply_update(bytes(payload))

    def encode_full_state(self, instance: Doc) -> bytes:
        return instance.get_update()

    def encode_state_vector_summary(self, instance: Doc) -> bytes:
        return instance.get_state()
