"""
Base protocol for the document model capability.

The update log never interprets payload bytes itself. Whenever a document
must be materialized (first-write checkpoint, rehydration, compaction) the
service goes through a DocumentAdapter.

Invariants:
    - Instances are mutated in place and never shared across loads
    - apply_payloads applies a whole batch in one transaction on the instance
    - encode_full_state(instance) applied to an empty instance reproduces it

How to change safely:
    - Protocol changes require updating all implementations
    - Adapters must not touch the store
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Iterable
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class DocumentAdapter(Protocol):
    """Protocol for conflict-free document model backends.

    Example:
        >>> adapter = YDocAdapter()
        >>> doc = adapter.create_empty_instance()
        >>> adapter.apply_payloads(doc, [update_a, update_b])
        >>> snapshot = adapter.encode_full_state(doc)
    """

    @abstractmethod
    def create_empty_instance(self) -> Any:
        """Create a new, empty document instance."""
        ...

    @abstractmethod
    def apply_payload(self, instance: Any, payload: bytes, is_remote: bool = True) -> None:
        """Apply one update to an instance.

        Args:
            instance: Document instance to mutate
            payload: Encoded update
            is_remote: Mark the change as originating elsewhere
        """
        ...

    @abstractmethod
    def apply_payloads(
        self,
        instance: Any,
        payloads: Iterable[bytes],
        is_remote: bool = True,
    ) -> None:
        """Apply several updates, in order, as one atomic batch.

        Observers of the instance see either none or all of the batch.
        """
        ...

    @abstractmethod
    def encode_full_state(self, instance: Any) -> bytes:
        """Encode the instance's complete state as a single update."""
        ...

    @abstractmethod
    def encode_state_vector_summary(self, instance: Any) -> bytes:
        """Encode the instance's state vector."""
        ...
