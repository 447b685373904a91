"""
Document log service for ydocstore.

This module owns the protocol on top of the LogStore:
- First-write checkpoint initialization
- Bounded-memory rehydration (one page of deltas in memory at a time)
- Compaction: fold the log into one full-state delta plus a checkpoint

Compaction order is append, then checkpoint, then delete. A reader
scanning at any point between these steps replays a complete log, and a
compaction interrupted between steps leaves at most one redundant
full-state delta that the next compaction folds in again.

Invariants:
    - Every document that received a write gets a checkpoint row
    - After compact, no delta below the new watermark remains
    - Deltas appended after a load's scan are never purged by that load's
      compaction
    - Background failures are logged and never reach the foreground caller

How to change safely:
    - Never delete deltas before the full-state delta is committed
    - Keep adapter calls out of the store
    - Background work must go through BackgroundTasks so it is tracked
"""

from __future__ import annotations

import logging
from typing import Any

from ..config import CheckpointInitMode, CompactionConfig, CompactionMode
from ..document.base import DocumentAdapter
from ..store.log_store import DeltaRecord, LogStore
from .background import BackgroundTasks

logger = logging.getLogger(__name__)


class DocumentLogService:
    """Appends, rehydrates and compacts documents over a LogStore.

    The service holds no per-document state. Every load creates its own
    document instance, so concurrent loads never share one.

    Example:
        >>> store = await LogStore.connect(StorageConfig(db_path="/tmp/docs.db"))
        >>> service = DocumentLogService(store, YDocAdapter())
        >>> await service.record_update("doc1", update)
        >>> doc = await service.load_document("doc1")
        >>> await service.close()
    """

    def __init__(
        self,
        store: LogStore,
        adapter: DocumentAdapter,
        config: CompactionConfig | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            store: Log store holding deltas and checkpoints
            adapter: Document model used to interpret payloads
            config: Compaction and checkpoint policy
        """
        self.store = store
        self.adapter = adapter
        self.config = config or CompactionConfig()
        self._background = BackgroundTasks()

    @property
    def pending_background_tasks(self) -> int:
        return self._background.pending

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def record_update(self, document_id: str, payload: bytes) -> int:
        """Append an update to a document's log.

        On the first write to a document the initial checkpoint is derived
        from ``payload`` alone. With CheckpointInitMode.BACKGROUND this
        happens in a background task and its failure is only logged.

        Args:
            document_id: Document identifier
            payload: Encoded update

        Returns:
            Sequence number assigned to the update

        Raises:
            StorageUnavailable: If the store cannot be reached
        """
        latest = await self.store.latest_sequence(document_id)
        if latest == -1:
            if self.config.checkpoint_init == CheckpointInitMode.SYNC:
                await self._init_checkpoint(document_id, payload)
            else:
                self._background.dispatch(
                    "init_checkpoint",
                    self._init_checkpoint(document_id, payload),
                    document_id=document_id,
                )

        return await self.store.append_delta(document_id, payload)

    async def _init_checkpoint(self, document_id: str, payload: bytes) -> None:
        # Scratch instance is discarded, only its summary is kept
        scratch = self.adapter.create_empty_instance()
        self.adapter.apply_payload(scratch, payload, is_remote=True)
        summary = self.adapter.encode_state_vector_summary(scratch)
        await self.store.put_checkpoint(document_id, summary, 0)
        logger.debug("Initialized checkpoint", extra={"document_id": document_id})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load_document(
        self,
        document_id: str,
        compaction_threshold: int | None = None,
    ) -> Any:
        """Rebuild a document from its log.

        A document with no rows yields a fresh empty instance.

        Args:
            document_id: Document identifier
            compaction_threshold: Compact when more deltas than this were
                replayed (defaults to the configured threshold)

        Returns:
            Populated document instance

        Raises:
            StorageUnavailable: If the store cannot be reached
            MalformedCheckpoint: If synchronous compaction finds a corrupt checkpoint
        """
        threshold = (
            self.config.threshold if compaction_threshold is None else compaction_threshold
        )
        instance, count, last_sequence = await self._rehydrate(document_id)

        if count > 0 and count > threshold and self.config.mode != CompactionMode.DISABLED:
            if self.config.mode == CompactionMode.SYNC:
                await self.compact(document_id, instance, through_sequence=last_sequence)
            else:
                # Encode now so the caller may keep mutating the instance
                full_state = self.adapter.encode_full_state(instance)
                summary = self.adapter.encode_state_vector_summary(instance)
                self._background.dispatch(
                    "compact",
                    self._flush(document_id, full_state, summary, last_sequence),
                    document_id=document_id,
                )

        logger.debug(
            "Loaded document",
            extra={"document_id": document_id, "deltas": count, "last_sequence": last_sequence},
        )
        return instance

    async def _rehydrate(self, document_id: str) -> tuple[Any, int, int]:
        """Replay the live log into a new instance.

        Returns:
            Tuple of (instance, deltas replayed, last replayed sequence or -1)
        """
        instance = self.adapter.create_empty_instance()
        last_sequence = -1

        def apply_page(page: list[DeltaRecord]) -> None:
            nonlocal last_sequence
            self.adapter.apply_payloads(
                instance, [record.payload for record in page], is_remote=True
            )
            last_sequence = page[-1].sequence

        count = await self.store.scan_deltas(document_id, apply_page)
        return instance, count, last_sequence

    async def encode_document(self, document_id: str) -> bytes:
        """Rebuild a document and encode its full state, without compacting."""
        instance, _, _ = await self._rehydrate(document_id)
        return self.adapter.encode_full_state(instance)

    async def get_state_vector(self, document_id: str) -> bytes:
        """Get the state-vector summary of a document's current state.

        The stored checkpoint is returned when its full-state delta is the
        only live delta. Otherwise the document is rebuilt and compacted, and
        the fresh summary returned. A document without rows gets the summary
        of an empty instance and nothing is written.

        Raises:
            MalformedCheckpoint: If the stored checkpoint cannot be decoded
        """
        checkpoint = await self.store.get_checkpoint(document_id)
        if checkpoint is not None:
            stats = await self.store.get_stats(document_id)
            # A delta that raced a compaction can sit below the watermark
            if stats["deltas"] == 1 and stats["latest_sequence"] == checkpoint.high_watermark:
                return checkpoint.state_vector

        instance, count, last_sequence = await self._rehydrate(document_id)
        if count > 0:
            await self.compact(document_id, instance, through_sequence=last_sequence)
        return self.adapter.encode_state_vector_summary(instance)

    async def has_document(self, document_id: str) -> bool:
        return await self.store.document_exists(document_id)

    async def list_documents(self) -> list[str]:
        return await self.store.list_documents()

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def compact(
        self,
        document_id: str,
        instance: Any,
        through_sequence: int | None = None,
    ) -> int:
        """Fold a document's log into one full-state delta and a checkpoint.

        Args:
            document_id: Document identifier
            instance: Document instance holding the state to persist
            through_sequence: Last sequence reflected in ``instance``. When
                given, deltas after it survive the purge.

        Returns:
            The checkpoint watermark after compaction

        Raises:
            MalformedCheckpoint: If the stored checkpoint cannot be decoded;
                nothing is written in that case
            StorageUnavailable: If the store cannot be reached
        """
        full_state = self.adapter.encode_full_state(instance)
        summary = self.adapter.encode_state_vector_summary(instance)
        return await self._flush(document_id, full_state, summary, through_sequence)

    async def compact_document(self, document_id: str) -> int | None:
        """Rebuild a document from its log and compact it.

        Returns:
            The new watermark, or None if the document has no deltas
        """
        instance, count, last_sequence = await self._rehydrate(document_id)
        if count == 0:
            return None
        return await self.compact(document_id, instance, through_sequence=last_sequence)

    async def _flush(
        self,
        document_id: str,
        full_state: bytes,
        summary: bytes,
        through_sequence: int | None,
    ) -> int:
        previous = await self.store.get_checkpoint(document_id)

        watermark = await self.store.append_delta(document_id, full_state)
        stored = await self.store.put_checkpoint(document_id, summary, watermark)

        purge_to = watermark if through_sequence is None else min(watermark, through_sequence + 1)
        purged = await self.store.delete_range(document_id, 0, purge_to)

        logger.info(
            "Compacted document",
            extra={
                "document_id": document_id,
                "previous_watermark": previous.high_watermark if previous else None,
                "high_watermark": stored.high_watermark,
                "purged": purged,
            },
        )
        return stored.high_watermark

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def delete_document(self, document_id: str) -> int:
        """Remove every delta and the checkpoint of a document.

        Pending background work for the document (checkpoint initialization,
        compaction) is drained first, so none of it writes the document back
        after the delete. Work dispatched while the delete runs is drained
        and deleted as well.

        Returns:
            Number of rows removed
        """
        deleted = 0
        while True:
            await self._background.wait_for(document_id)
            deleted += await self.store.delete_document(document_id)
            if not self._background.pending_for(document_id):
                return deleted

    async def wait_for_background(self) -> None:
        """Wait for all dispatched checkpoint and compaction tasks."""
        await self._background.wait()

    async def close(self) -> None:
        """Drain background work, then close the store."""
        await self.wait_for_background()
        await self.store.close()
        logger.info("Document log service closed")
