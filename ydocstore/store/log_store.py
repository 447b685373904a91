"""
SQLite update log store for ydocstore.

This module persists the two record kinds of a document's update log in a
single table:
- Delta rows: opaque update payloads, ordered by an auto-increment id
- Checkpoint rows: at most one per document, holding the state-vector
  summary and the high watermark (highest sequence folded into it)

The store has no knowledge of the document model. It only stores, scans
and deletes byte strings keyed by document id and sequence.

Invariants:
    - Sequence numbers are strictly increasing and never reused (AUTOINCREMENT)
    - At most one checkpoint row per document (partial unique index)
    - A checkpoint's watermark never decreases
    - Scans use keyset pagination, never OFFSET

How to change safely:
    - Keep the checkpoint value layout readable by decode_checkpoint
    - Never add a read path that reorders deltas of one document
    - Schema changes must remain compatible with existing tables

Table schema:
    <table_name>:
        - id INTEGER PRIMARY KEY AUTOINCREMENT
        - document_id TEXT
        - value BLOB
        - kind TEXT ('delta' | 'checkpoint')
        - UNIQUE (document_id) WHERE kind = 'checkpoint'
        - INDEX on (document_id), INDEX on (document_id, id)
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from ..config import StorageConfig, is_valid_identifier
from ..errors import MalformedCheckpoint
from .encoding import decode_checkpoint, encode_checkpoint
from .pool import ConnectionPool

logger = logging.getLogger(__name__)

KIND_DELTA = "delta"
KIND_CHECKPOINT = "checkpoint"


@dataclass(frozen=True)
class DeltaRecord:
    """One stored update.

    Attributes:
        sequence: Store-assigned sequence number
        document_id: Owning document
        payload: Opaque update bytes
    """

    sequence: int
    document_id: str
    payload: bytes


@dataclass(frozen=True)
class Checkpoint:
    """The checkpoint of a document.

    Attributes:
        document_id: Owning document
        state_vector: State-vector summary of the folded state
        high_watermark: Highest delta sequence folded into the checkpoint
    """

    document_id: str
    state_vector: bytes
    high_watermark: int


class LogStore:
    """Append-only update log with per-document checkpoints.

    Every operation is a single statement or an explicitly bounded
    transaction on one pooled connection. Nothing here is transactional
    across operations; ordering discipline belongs to the service.

    Example:
        >>> store = await LogStore.connect(StorageConfig(db_path="/tmp/docs.db"))
        >>> seq = await store.append_delta("doc1", b"...")
        >>> await store.scan_deltas("doc1", lambda page: print(len(page)))
        >>> await store.close()
    """

    def __init__(
        self,
        pool: ConnectionPool,
        table_name: str = "yjs_writings",
        page_size: int = 1000,
    ) -> None:
        """Initialize the store over an existing pool.

        Args:
            pool: Connection pool to run queries on
            table_name: Table holding delta and checkpoint rows
            page_size: Default rows per scan page

        Raises:
            ValueError: If table_name is not a plain identifier
        """
        if not is_valid_identifier(table_name):
            raise ValueError(f"Invalid table name: {table_name!r}")
        if page_size < 1:
            raise ValueError("page_size must be at least 1")

        self.pool = pool
        self.table_name = table_name
        self.page_size = page_size
        self._table = f'"{table_name}"'

    @classmethod
    async def connect(cls, config: StorageConfig) -> LogStore:
        """Open a pool, check connectivity and provision the schema.

        Args:
            config: Storage configuration

        Returns:
            Ready-to-use LogStore

        Raises:
            StorageUnavailable: If the database cannot be reached
        """
        pool = ConnectionPool(
            config.db_path,
            size=config.pool_size,
            acquire_timeout=config.acquire_timeout_seconds,
            busy_timeout_ms=config.busy_timeout_ms,
            wal_mode=config.wal_mode,
        )
        try:
            store = cls(pool, table_name=config.table_name, page_size=config.page_size)
            await pool.run("connect", lambda conn: conn.execute("SELECT 1+1").fetchone())
            await store.initialize(use_index=config.use_index)
        except Exception:
            await pool.close()
            raise

        logger.info(
            "Log store connected",
            extra={"db_path": config.db_path, "table_name": config.table_name},
        )
        return store

    async def initialize(self, use_index: bool = True) -> None:
        """Create the table and indexes if they don't exist.

        Args:
            use_index: Also create the document_id lookup indexes
        """
        await self.pool.run("initialize", self._create_schema, use_index)

    def _create_schema(self, conn: sqlite3.Connection, use_index: bool) -> None:
        name = self.table_name
        script = f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                document_id TEXT NOT NULL,
                value BLOB NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN ('{KIND_DELTA}', '{KIND_CHECKPOINT}'))
            );

            -- One checkpoint per document
            CREATE UNIQUE INDEX IF NOT EXISTS "{name}_checkpoint_uq"
                ON {self._table} (document_id) WHERE kind = '{KIND_CHECKPOINT}';
        """
        if use_index:
            script += f"""
            CREATE INDEX IF NOT EXISTS "{name}_docname_idx" ON {self._table} (document_id);
            CREATE INDEX IF NOT EXISTS "{name}_docname_id_idx" ON {self._table} (document_id, id);
            """
        conn.executescript(script)

    async def close(self) -> None:
        """Release all pooled connections."""
        await self.pool.close()

    # ------------------------------------------------------------------
    # Deltas
    # ------------------------------------------------------------------

    async def append_delta(self, document_id: str, payload: bytes) -> int:
        """Append one delta.

        Args:
            document_id: Document identifier
            payload: Opaque update bytes

        Returns:
            Assigned sequence number
        """
        sequence = await self.pool.run("append_delta", self._append_delta, document_id, payload)
        logger.debug(
            "Appended delta",
            extra={"document_id": document_id, "sequence": sequence, "size": len(payload)},
        )
        return sequence

    def _append_delta(self, conn: sqlite3.Connection, document_id: str, payload: bytes) -> int:
        conn.execute("BEGIN IMMEDIATE")
        try:
            cursor = conn.execute(
                f"INSERT INTO {self._table} (document_id, value, kind) VALUES (?, ?, ?)",
                (document_id, bytes(payload), KIND_DELTA),
            )
            sequence = cursor.lastrowid
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        return sequence

    async def latest_sequence(self, document_id: str) -> int:
        """Highest live delta sequence for a document, or -1 if none."""
        return await self.pool.run("latest_sequence", self._latest_sequence, document_id)

    def _latest_sequence(self, conn: sqlite3.Connection, document_id: str) -> int:
        row = conn.execute(
            f"""
            SELECT id FROM {self._table}
            WHERE document_id = ? AND kind = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (document_id, KIND_DELTA),
        ).fetchone()
        return row[0] if row else -1

    async def iter_deltas(
        self,
        document_id: str,
        page_size: int | None = None,
    ) -> AsyncIterator[list[DeltaRecord]]:
        """Yield a document's live deltas in ascending sequence, page by page.

        Each call starts a fresh cursor. Pages are fetched with
        ``id > last_seen ORDER BY id LIMIT page_size`` so concurrent appends
        and deletions never cause a duplicate or reorder a returned page.

        Args:
            document_id: Document identifier
            page_size: Rows per page (defaults to the store's page size)

        Yields:
            Non-empty lists of DeltaRecord
        """
        limit = page_size or self.page_size
        last_seen = 0
        while True:
            page = await self.pool.run(
                "scan_deltas", self._fetch_page, document_id, last_seen, limit
            )
            if not page:
                return
            yield page
            if len(page) < limit:
                return
            last_seen = page[-1].sequence

    def _fetch_page(
        self,
        conn: sqlite3.Connection,
        document_id: str,
        last_seen: int,
        limit: int,
    ) -> list[DeltaRecord]:
        cursor = conn.execute(
            f"""
            SELECT id, value FROM {self._table}
            WHERE document_id = ? AND kind = ? AND id > ?
            ORDER BY id
            LIMIT ?
            """,
            (document_id, KIND_DELTA, last_seen, limit),
        )
        return [
            DeltaRecord(sequence=row[0], document_id=document_id, payload=bytes(row[1]))
            for row in cursor.fetchall()
        ]

    async def scan_deltas(
        self,
        document_id: str,
        visit: Callable[[list[DeltaRecord]], Any],
        page_size: int | None = None,
    ) -> int:
        """Hand every live delta of a document to ``visit``, one page at a time.

        Args:
            document_id: Document identifier
            visit: Called with each page, in sequence order
            page_size: Rows per page (defaults to the store's page size)

        Returns:
            Total number of records delivered
        """
        total = 0
        async for page in self.iter_deltas(document_id, page_size=page_size):
            visit(page)
            total += len(page)
        return total

    async def delete_range(
        self,
        document_id: str,
        from_sequence: int,
        to_sequence: int,
    ) -> int:
        """Delete deltas with ``from_sequence <= sequence < to_sequence``.

        Returns:
            Number of deltas removed
        """
        deleted = await self.pool.run(
            "delete_range", self._delete_range, document_id, from_sequence, to_sequence
        )
        logger.debug(
            "Deleted delta range",
            extra={
                "document_id": document_id,
                "from": from_sequence,
                "to": to_sequence,
                "deleted": deleted,
            },
        )
        return deleted

    def _delete_range(
        self,
        conn: sqlite3.Connection,
        document_id: str,
        from_sequence: int,
        to_sequence: int,
    ) -> int:
        cursor = conn.execute(
            f"""
            DELETE FROM {self._table}
            WHERE document_id = ? AND kind = ? AND id >= ? AND id < ?
            """,
            (document_id, KIND_DELTA, from_sequence, to_sequence),
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def get_checkpoint(self, document_id: str) -> Checkpoint | None:
        """Get a document's checkpoint.

        Returns:
            Checkpoint, or None if the document has no checkpoint row

        Raises:
            MalformedCheckpoint: If the stored value cannot be decoded
        """
        value = await self.pool.run("get_checkpoint", self._get_checkpoint_value, document_id)
        if value is None:
            return None
        return self._decode(document_id, value)

    def _get_checkpoint_value(self, conn: sqlite3.Connection, document_id: str) -> bytes | None:
        row = conn.execute(
            f"SELECT value FROM {self._table} WHERE document_id = ? AND kind = ? LIMIT 1",
            (document_id, KIND_CHECKPOINT),
        ).fetchone()
        return bytes(row[0]) if row else None

    @staticmethod
    def _decode(document_id: str, value: bytes) -> Checkpoint:
        try:
            high_watermark, state_vector = decode_checkpoint(value)
        except ValueError as e:
            raise MalformedCheckpoint(
                f"Checkpoint of {document_id!r} cannot be decoded: {e}", document_id
            ) from e
        return Checkpoint(document_id, state_vector, high_watermark)

    async def put_checkpoint(
        self,
        document_id: str,
        state_vector: bytes,
        high_watermark: int,
    ) -> Checkpoint:
        """Insert or update a document's checkpoint.

        Runs select-then-branch inside one BEGIN IMMEDIATE transaction, so
        concurrent writers are serialized. A checkpoint with a lower watermark
        than the stored one is not written; equal watermarks overwrite (last
        write wins). An undecodable stored row is replaced.

        Args:
            document_id: Document identifier
            state_vector: State-vector summary
            high_watermark: Highest sequence folded into the summary

        Returns:
            The checkpoint stored after the call
        """
        stored = await self.pool.run(
            "put_checkpoint",
            self._put_checkpoint,
            document_id,
            bytes(state_vector),
            high_watermark,
        )
        if stored.high_watermark != high_watermark:
            logger.info(
                "Kept newer checkpoint",
                extra={
                    "document_id": document_id,
                    "requested_watermark": high_watermark,
                    "stored_watermark": stored.high_watermark,
                },
            )
        return stored

    def _put_checkpoint(
        self,
        conn: sqlite3.Connection,
        document_id: str,
        state_vector: bytes,
        high_watermark: int,
    ) -> Checkpoint:
        value = encode_checkpoint(high_watermark, state_vector)
        requested = Checkpoint(document_id, state_vector, high_watermark)

        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                f"SELECT id, value FROM {self._table} WHERE document_id = ? AND kind = ? LIMIT 1",
                (document_id, KIND_CHECKPOINT),
            ).fetchone()

            if row is None:
                conn.execute(
                    f"INSERT INTO {self._table} (document_id, value, kind) VALUES (?, ?, ?)",
                    (document_id, value, KIND_CHECKPOINT),
                )
                stored = requested
            else:
                try:
                    current: Checkpoint | None = self._decode(document_id, bytes(row[1]))
                except MalformedCheckpoint:
                    logger.warning(
                        "Replacing malformed checkpoint",
                        extra={"document_id": document_id},
                    )
                    current = None

                if current is not None and current.high_watermark > high_watermark:
                    stored = current
                else:
                    conn.execute(
                        f"UPDATE {self._table} SET value = ? WHERE id = ?",
                        (value, row[0]),
                    )
                    stored = requested

            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        return stored

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def delete_document(self, document_id: str) -> int:
        """Delete every delta and the checkpoint of a document.

        Returns:
            Number of rows removed
        """
        deleted = await self.pool.run("delete_document", self._delete_document, document_id)
        logger.info("Deleted document", extra={"document_id": document_id, "rows": deleted})
        return deleted

    def _delete_document(self, conn: sqlite3.Connection, document_id: str) -> int:
        cursor = conn.execute(
            f"DELETE FROM {self._table} WHERE document_id = ?",
            (document_id,),
        )
        return cursor.rowcount

    async def document_exists(self, document_id: str) -> bool:
        """Whether any checkpoint or delta row exists for a document."""
        return await self.pool.run("document_exists", self._document_exists, document_id)

    def _document_exists(self, conn: sqlite3.Connection, document_id: str) -> bool:
        # Checkpoint lookup hits the unique index and avoids a delta scan
        row = conn.execute(
            f"SELECT 1 FROM {self._table} WHERE document_id = ? AND kind = ? LIMIT 1",
            (document_id, KIND_CHECKPOINT),
        ).fetchone()
        if row is not None:
            return True
        row = conn.execute(
            f"SELECT 1 FROM {self._table} WHERE document_id = ? LIMIT 1",
            (document_id,),
        ).fetchone()
        return row is not None

    async def list_documents(self) -> list[str]:
        """List all document ids with at least one row, sorted."""
        return await self.pool.run("list_documents", self._list_documents)

    def _list_documents(self, conn: sqlite3.Connection) -> list[str]:
        cursor = conn.execute(
            f"SELECT DISTINCT document_id FROM {self._table} ORDER BY document_id"
        )
        return [row[0] for row in cursor.fetchall()]

    async def get_stats(self, document_id: str) -> dict[str, Any]:
        """Get statistics for a document.

        Returns:
            Dictionary with delta count, delta bytes, latest sequence and
            checkpoint watermark (None without a checkpoint)

        Raises:
            MalformedCheckpoint: If the stored checkpoint cannot be decoded
        """
        stats, checkpoint_value = await self.pool.run(
            "get_stats", self._get_stats, document_id
        )
        if checkpoint_value is not None:
            stats["high_watermark"] = self._decode(document_id, checkpoint_value).high_watermark
        else:
            stats["high_watermark"] = None
        return stats

    def _get_stats(
        self, conn: sqlite3.Connection, document_id: str
    ) -> tuple[dict[str, Any], bytes | None]:
        row = conn.execute(
            f"""
            SELECT COUNT(*), COALESCE(SUM(LENGTH(value)), 0), COALESCE(MAX(id), -1)
            FROM {self._table}
            WHERE document_id = ? AND kind = ?
            """,
            (document_id, KIND_DELTA),
        ).fetchone()
        stats = {
            "deltas": row[0],
            "delta_bytes": row[1],
            "latest_sequence": row[2],
        }
        return stats, self._get_checkpoint_value(conn, document_id)
