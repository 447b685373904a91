"""
Integration tests for DocumentLogService over a SQLite log store.

Tests cover:
- Update recording and first-write checkpoints
- Paged rehydration
- Compaction (synchronous, background, disabled)
- Failure handling of background work
- State vector lookup
- Yjs documents end to end
"""

import asyncio
import logging
import os
import tempfile

import pytest
import pytest_asyncio
from pycrdt import Doc, Text

from ydocstore.config import (
    CheckpointInitMode,
    CompactionConfig,
    CompactionMode,
    StorageConfig,
)
from ydocstore.document import InMemoryDocumentAdapter, YDocAdapter, encode_entries
from ydocstore.errors import MalformedCheckpoint
from ydocstore.service import DocumentLogService
from ydocstore.store import KIND_CHECKPOINT, Checkpoint, LogStore


def _update(client, clock, value):
    return encode_entries([(client, clock, value)])


async def _live_sequences(store, document_id):
    records = []
    await store.scan_deltas(document_id, records.extend)
    return [record.sequence for record in records]


def _insert_raw_checkpoint(conn, document_id, value):
    conn.execute(
        'INSERT INTO "yjs_writings" (document_id, value, kind) VALUES (?, ?, ?)',
        (document_id, value, KIND_CHECKPOINT),
    )


def _count_checkpoints(conn, document_id):
    return conn.execute(
        'SELECT COUNT(*) FROM "yjs_writings" WHERE document_id = ? AND kind = ?',
        (document_id, KIND_CHECKPOINT),
    ).fetchone()[0]


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest_asyncio.fixture
async def store(data_dir):
    """Create a store with two rows per page."""
    store = await LogStore.connect(
        StorageConfig(db_path=os.path.join(data_dir, "docs.db"), page_size=2)
    )
    yield store
    await store.close()


@pytest.fixture
def adapter():
    return InMemoryDocumentAdapter()


@pytest.fixture
def service(store, adapter):
    """Service that awaits checkpoint initialization and compaction."""
    return DocumentLogService(
        store,
        adapter,
        CompactionConfig(
            threshold=100,
            mode=CompactionMode.SYNC,
            checkpoint_init=CheckpointInitMode.SYNC,
        ),
    )


@pytest.fixture
def background_service(store, adapter):
    """Service that dispatches checkpoint initialization and compaction."""
    return DocumentLogService(
        store,
        adapter,
        CompactionConfig(
            threshold=100,
            mode=CompactionMode.BACKGROUND,
            checkpoint_init=CheckpointInitMode.BACKGROUND,
        ),
    )


class TestRecordAndLoad:
    """Recording updates and rebuilding documents."""

    @pytest.mark.asyncio
    async def test_load_replays_in_append_order(self, service, adapter):
        """Loading yields the state of applying A, B, C to an empty instance."""
        payloads = [_update("alice", 0, "A"), _update("alice", 1, "B"), _update("bob", 0, "C")]
        for payload in payloads:
            await service.record_update("doc1", payload)

        doc = await service.load_document("doc1", compaction_threshold=100)

        expected = adapter.create_empty_instance()
        for payload in payloads:
            adapter.apply_payload(expected, payload)
        assert doc.entries == expected.entries
        assert doc.value == ["A", "C", "B"]

    @pytest.mark.asyncio
    async def test_record_update_returns_sequence(self, service, store):
        first = await service.record_update("doc1", _update("alice", 0, "a"))
        second = await service.record_update("doc1", _update("alice", 1, "b"))

        assert second > first
        assert await store.latest_sequence("doc1") == second

    @pytest.mark.asyncio
    async def test_load_applies_one_batch_per_page(self, service):
        """Each page of deltas is applied as one batch."""
        for i in range(5):
            await service.record_update("doc1", _update("alice", i, i))

        doc = await service.load_document("doc1")

        assert doc.batch_sizes == [2, 2, 1]
        assert doc.remote_batches == 3
        assert doc.value == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_load_missing_document(self, service, store):
        """A document that was never written loads as an empty instance."""
        doc = await service.load_document("missing")

        assert doc.entries == {}
        assert await store.document_exists("missing") is False

    @pytest.mark.asyncio
    async def test_loads_return_independent_instances(self, service):
        await service.record_update("doc1", _update("alice", 0, "a"))

        first, second = await asyncio.gather(
            service.load_document("doc1"), service.load_document("doc1")
        )

        assert first is not second
        first.insert("bob", "local")
        assert second.value == ["a"]


class TestCheckpointInitialization:
    """First-write checkpoint behavior."""

    @pytest.mark.asyncio
    async def test_first_write_creates_checkpoint(self, service, store, adapter):
        payload = _update("alice", 0, "P")

        await service.record_update("doc2", payload)

        scratch = adapter.create_empty_instance()
        adapter.apply_payload(scratch, payload)
        assert await store.get_checkpoint("doc2") == Checkpoint(
            "doc2", adapter.encode_state_vector_summary(scratch), 0
        )

    @pytest.mark.asyncio
    async def test_background_first_write_creates_checkpoint(
        self, background_service, store, adapter
    ):
        """The checkpoint appears once background work settles."""
        payload = _update("alice", 0, "P")

        await background_service.record_update("doc2", payload)
        await background_service.wait_for_background()

        checkpoint = await store.get_checkpoint("doc2")
        assert checkpoint is not None
        assert checkpoint.high_watermark == 0
        assert checkpoint.state_vector == b'{"alice":1}'

    @pytest.mark.asyncio
    async def test_later_writes_keep_initial_checkpoint(self, service, store):
        await service.record_update("doc1", _update("alice", 0, "a"))
        await service.record_update("doc1", _update("alice", 1, "b"))

        checkpoint = await store.get_checkpoint("doc1")
        assert checkpoint.state_vector == b'{"alice":1}'
        assert checkpoint.high_watermark == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", [CheckpointInitMode.SYNC, CheckpointInitMode.BACKGROUND])
    async def test_concurrent_first_writes_single_checkpoint(self, store, adapter, mode):
        """Racing first writers leave exactly one checkpoint row."""
        service = DocumentLogService(store, adapter, CompactionConfig(checkpoint_init=mode))

        await asyncio.gather(
            service.record_update("doc6", _update("alice", 0, "a")),
            service.record_update("doc6", _update("bob", 0, "b")),
        )
        await service.wait_for_background()

        assert await store.pool.run("count", _count_checkpoints, "doc6") == 1
        assert len(await _live_sequences(store, "doc6")) == 2

    @pytest.mark.asyncio
    async def test_background_init_failure_is_logged(self, background_service, store, caplog):
        """A payload the model rejects still gets stored; the failure is logged."""
        caplog.set_level(logging.ERROR, logger="ydocstore")

        sequence = await background_service.record_update("doc1", b"not an update")
        await background_service.wait_for_background()

        assert await _live_sequences(store, "doc1") == [sequence]
        assert await store.get_checkpoint("doc1") is None
        failures = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert failures
        assert "init_checkpoint" in failures[0].getMessage()
        assert failures[0].document_id == "doc1"

    @pytest.mark.asyncio
    async def test_sync_init_failure_propagates(self, service, store):
        """With synchronous initialization a rejected payload is never stored."""
        with pytest.raises(ValueError):
            await service.record_update("doc1", b"not an update")

        assert await store.document_exists("doc1") is False


class TestCompaction:
    """Compaction protocol."""

    @pytest.mark.asyncio
    async def test_threshold_triggers_compaction(self, service, store):
        """Five deltas over a threshold of 3 compact into one full-state delta."""
        for i in range(5):
            await service.record_update("doc3", _update("alice", i, i))

        doc = await service.load_document("doc3", compaction_threshold=3)

        sequences = await _live_sequences(store, "doc3")
        assert len(sequences) == 1
        checkpoint = await store.get_checkpoint("doc3")
        assert checkpoint.high_watermark == sequences[0]
        assert doc.value == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_threshold_not_exceeded(self, service, store):
        for i in range(3):
            await service.record_update("doc3", _update("alice", i, i))

        await service.load_document("doc3", compaction_threshold=3)

        assert len(await _live_sequences(store, "doc3")) == 3
        assert (await store.get_checkpoint("doc3")).high_watermark == 0

    @pytest.mark.asyncio
    async def test_background_compaction(self, background_service, store):
        for i in range(5):
            await background_service.record_update("doc3", _update("alice", i, i))

        doc = await background_service.load_document("doc3", compaction_threshold=3)
        await background_service.wait_for_background()

        sequences = await _live_sequences(store, "doc3")
        assert len(sequences) == 1
        assert (await store.get_checkpoint("doc3")).high_watermark == sequences[0]
        assert doc.value == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_background_compaction_uses_state_at_load(self, background_service, store):
        """Local changes after load_document returns are not persisted."""
        for i in range(3):
            await background_service.record_update("doc3", _update("alice", i, i))

        doc = await background_service.load_document("doc3", compaction_threshold=1)
        doc.insert("bob", "unsaved")
        await background_service.wait_for_background()

        reloaded = await background_service.load_document("doc3")
        assert reloaded.value == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_disabled_compaction(self, store, adapter):
        service = DocumentLogService(
            store,
            adapter,
            CompactionConfig(threshold=1, mode=CompactionMode.DISABLED),
        )
        for i in range(4):
            await service.record_update("doc1", _update("alice", i, i))

        await service.load_document("doc1")
        await service.wait_for_background()

        assert len(await _live_sequences(store, "doc1")) == 4

    @pytest.mark.asyncio
    async def test_compaction_equivalence(self, service, adapter):
        """Loading before and after compact yields identical state."""
        for i in range(4):
            await service.record_update("doc1", _update("alice", i, f"a{i}"))
            await service.record_update("doc1", _update("bob", i, f"b{i}"))

        before = await service.load_document("doc1")
        await service.compact("doc1", before)
        after = await service.load_document("doc1")

        assert adapter.encode_full_state(after) == adapter.encode_full_state(before)
        assert after.value == before.value

    @pytest.mark.asyncio
    async def test_no_orphaned_deltas(self, service, store):
        """No live delta is left below the new watermark."""
        for i in range(6):
            await service.record_update("doc1", _update("alice", i, i))

        doc = await service.load_document("doc1")
        watermark = await service.compact("doc1", doc)

        sequences = await _live_sequences(store, "doc1")
        assert sequences == [watermark]
        assert all(sequence >= watermark for sequence in sequences)

    @pytest.mark.asyncio
    async def test_watermark_monotonic(self, service, store):
        """The checkpoint watermark never decreases across operations."""
        watermarks = []

        async def observe():
            checkpoint = await store.get_checkpoint("doc1")
            watermarks.append(checkpoint.high_watermark)

        for round_ in range(3):
            for i in range(3):
                await service.record_update("doc1", _update("alice", round_ * 3 + i, i))
                await observe()
            await service.load_document("doc1", compaction_threshold=2)
            await observe()

        assert watermarks == sorted(watermarks)
        assert watermarks[-1] > 0

    @pytest.mark.asyncio
    async def test_compact_without_deltas(self, service, store, adapter):
        """Compacting an empty document stores an empty full state."""
        empty_summary = adapter.encode_state_vector_summary(adapter.create_empty_instance())
        await store.put_checkpoint("doc4", empty_summary, 0)

        watermark = await service.compact("doc4", adapter.create_empty_instance())

        records = []
        await store.scan_deltas("doc4", records.extend)
        assert [r.sequence for r in records] == [watermark]
        assert records[0].payload == adapter.encode_full_state(adapter.create_empty_instance())
        assert (await store.get_checkpoint("doc4")).state_vector == empty_summary
        assert (await service.load_document("doc4")).entries == {}

    @pytest.mark.asyncio
    async def test_compaction_keeps_deltas_after_scan(self, service, store):
        """A delta appended after the scan survives compaction."""
        for i in range(3):
            await service.record_update("doc1", _update("alice", i, i))
        doc = await service.load_document("doc1")
        scanned = await _live_sequences(store, "doc1")

        late = await service.record_update("doc1", _update("bob", 0, "late"))
        watermark = await service.compact("doc1", doc, through_sequence=scanned[-1])

        assert await _live_sequences(store, "doc1") == [late, watermark]
        reloaded = await service.load_document("doc1")
        assert "late" in reloaded.value
        assert reloaded.value.count(0) == 1

    @pytest.mark.asyncio
    async def test_malformed_checkpoint_aborts_sync_compaction(self, service, store):
        """Compaction reads the checkpoint first and writes nothing when it is corrupt."""
        await store.pool.run("insert", _insert_raw_checkpoint, "doc1", b"\x80")
        for i in range(3):
            await store.append_delta("doc1", _update("alice", i, i))
        before = await _live_sequences(store, "doc1")

        with pytest.raises(MalformedCheckpoint):
            await service.load_document("doc1", compaction_threshold=1)

        assert await _live_sequences(store, "doc1") == before

    @pytest.mark.asyncio
    async def test_background_compaction_failure_is_logged(
        self, background_service, store, caplog
    ):
        """A failing background compaction is logged; the load still succeeds."""
        caplog.set_level(logging.ERROR, logger="ydocstore")
        await store.pool.run("insert", _insert_raw_checkpoint, "doc1", b"\x80")
        for i in range(3):
            await store.append_delta("doc1", _update("alice", i, i))
        before = await _live_sequences(store, "doc1")

        doc = await background_service.load_document("doc1", compaction_threshold=1)
        await background_service.wait_for_background()

        assert doc.value == [0, 1, 2]
        assert await _live_sequences(store, "doc1") == before
        failures = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(failures) == 1
        assert "compact" in failures[0].getMessage()
        assert isinstance(failures[0].exc_info[1], MalformedCheckpoint)

    @pytest.mark.asyncio
    async def test_compact_document(self, service, store):
        for i in range(3):
            await service.record_update("doc1", _update("alice", i, i))

        watermark = await service.compact_document("doc1")

        assert await _live_sequences(store, "doc1") == [watermark]
        assert await service.compact_document("missing") is None


class TestStateVector:
    """State vector lookup."""

    @pytest.mark.asyncio
    async def test_current_checkpoint_returned(self, service, store):
        """A checkpoint covering the newest delta is returned as is."""
        for i in range(3):
            await service.record_update("doc1", _update("alice", i, i))
        doc = await service.load_document("doc1")
        await service.compact("doc1", doc)
        sequences = await _live_sequences(store, "doc1")

        summary = await service.get_state_vector("doc1")

        assert summary == b'{"alice":3}'
        assert await _live_sequences(store, "doc1") == sequences

    @pytest.mark.asyncio
    async def test_stale_checkpoint_triggers_compaction(self, service, store):
        await service.record_update("doc1", _update("alice", 0, "a"))
        await service.record_update("doc1", _update("bob", 0, "b"))

        summary = await service.get_state_vector("doc1")

        assert summary == b'{"alice":1,"bob":1}'
        sequences = await _live_sequences(store, "doc1")
        assert len(sequences) == 1
        checkpoint = await store.get_checkpoint("doc1")
        assert checkpoint == Checkpoint("doc1", summary, sequences[0])

    @pytest.mark.asyncio
    async def test_delta_below_watermark_is_folded(self, service, store):
        """A delta left behind by a raced compaction is not reported as covered."""
        await service.record_update("doc1", _update("alice", 0, "a"))
        doc = await service.load_document("doc1")
        scanned = await _live_sequences(store, "doc1")
        await service.record_update("doc1", _update("bob", 0, "late"))
        await service.compact("doc1", doc, through_sequence=scanned[-1])

        summary = await service.get_state_vector("doc1")

        assert summary == b'{"alice":1,"bob":1}'
        assert len(await _live_sequences(store, "doc1")) == 1

    @pytest.mark.asyncio
    async def test_missing_document(self, service, store):
        """A missing document gets an empty summary and nothing is written."""
        assert await service.get_state_vector("missing") == b"{}"
        assert await store.document_exists("missing") is False


class TestDocumentLifecycle:
    """Deletion, listing and shutdown."""

    @pytest.mark.asyncio
    async def test_delete_then_load(self, service, store):
        """A deleted document loads as a new empty instance."""
        await service.record_update("doc1", _update("alice", 0, "a"))

        await service.delete_document("doc1")
        doc = await service.load_document("doc1")

        assert doc.entries == {}
        assert await service.has_document("doc1") is False
        assert await store.get_checkpoint("doc1") is None

    @pytest.mark.asyncio
    async def test_delete_waits_for_pending_compaction(self, background_service, store):
        """A compaction dispatched before the delete does not bring the document back."""
        for i in range(3):
            await background_service.record_update("doc1", _update("alice", i, i))
        await background_service.load_document("doc1", compaction_threshold=1)

        await background_service.delete_document("doc1")
        await background_service.wait_for_background()

        assert await store.document_exists("doc1") is False
        assert (await background_service.load_document("doc1")).entries == {}

    @pytest.mark.asyncio
    async def test_delete_waits_for_pending_checkpoint_init(self, background_service, store):
        """A first-write checkpoint dispatched before the delete is not written back."""
        await background_service.record_update("doc1", _update("alice", 0, "a"))

        await background_service.delete_document("doc1")
        await background_service.wait_for_background()

        assert await store.get_checkpoint("doc1") is None
        assert await store.document_exists("doc1") is False

    @pytest.mark.asyncio
    async def test_delete_leaves_other_documents_pending_work(self, background_service, store):
        await background_service.record_update("doc1", _update("alice", 0, "a"))
        await background_service.record_update("doc2", _update("bob", 0, "b"))

        await background_service.delete_document("doc1")
        await background_service.wait_for_background()

        assert await store.get_checkpoint("doc2") == Checkpoint("doc2", b'{"bob":1}', 0)

    @pytest.mark.asyncio
    async def test_negative_threshold_does_not_create_document(self, service, store):
        """Loading a missing document never compacts an empty log."""
        doc = await service.load_document("missing", compaction_threshold=-1)

        assert doc.entries == {}
        assert await store.document_exists("missing") is False

    @pytest.mark.asyncio
    async def test_write_after_delete_reinitializes(self, service, store):
        await service.record_update("doc1", _update("alice", 0, "a"))
        await service.delete_document("doc1")

        await service.record_update("doc1", _update("bob", 0, "b"))

        assert (await store.get_checkpoint("doc1")).state_vector == b'{"bob":1}'
        assert (await service.load_document("doc1")).value == ["b"]

    @pytest.mark.asyncio
    async def test_list_and_has_document(self, service):
        await service.record_update("beta", _update("alice", 0, "x"))
        await service.record_update("alpha", _update("alice", 0, "y"))

        assert await service.list_documents() == ["alpha", "beta"]
        assert await service.has_document("alpha") is True
        assert await service.has_document("gamma") is False

    @pytest.mark.asyncio
    async def test_encode_document_does_not_compact(self, store, adapter):
        service = DocumentLogService(
            store,
            adapter,
            CompactionConfig(
                threshold=0,
                mode=CompactionMode.SYNC,
                checkpoint_init=CheckpointInitMode.SYNC,
            ),
        )
        for i in range(3):
            await service.record_update("doc1", _update("alice", i, i))

        update = await service.encode_document("doc1")

        copy = adapter.create_empty_instance()
        adapter.apply_payload(copy, update)
        assert copy.value == [0, 1, 2]
        assert len(await _live_sequences(store, "doc1")) == 3

    @pytest.mark.asyncio
    async def test_close_drains_background_work(self, background_service, store):
        await background_service.record_update("doc1", _update("alice", 0, "a"))

        await background_service.close()

        assert background_service.pending_background_tasks == 0
        assert store.pool.is_closed


class TestYjsDocuments:
    """End-to-end flow with pycrdt documents."""

    @pytest.fixture
    def ydoc_service(self, store):
        return DocumentLogService(
            store,
            YDocAdapter(),
            CompactionConfig(
                threshold=3,
                mode=CompactionMode.SYNC,
                checkpoint_init=CheckpointInitMode.SYNC,
            ),
        )

    @staticmethod
    def _edit(doc, value):
        before = doc.get_state()
        text = doc.get("text", type=Text)
        text += value
        return doc.get_update(before)

    @pytest.mark.asyncio
    async def test_text_survives_compaction(self, ydoc_service, store):
        editor = Doc()
        for part in ("The ", "quick ", "brown ", "fox"):
            await ydoc_service.record_update("notes", self._edit(editor, part))

        loaded = await ydoc_service.load_document("notes")
        assert str(loaded.get("text", type=Text)) == "The quick brown fox"
        assert len(await _live_sequences(store, "notes")) == 1

        await ydoc_service.record_update("notes", self._edit(editor, " jumps"))
        reloaded = await ydoc_service.load_document("notes")

        assert str(reloaded.get("text", type=Text)) == "The quick brown fox jumps"
        assert await ydoc_service.get_state_vector("notes") == editor.get_state()

    @pytest.mark.asyncio
    async def test_first_write_checkpoint_is_state_vector(self, ydoc_service, store):
        editor = Doc()
        update = self._edit(editor, "hello")

        await ydoc_service.record_update("notes", update)

        checkpoint = await store.get_checkpoint("notes")
        assert checkpoint.state_vector == editor.get_state()
        assert checkpoint.high_watermark == 0
