"""
Bounded SQLite connection pool.

SQLite calls block, so every operation runs on a dedicated thread executor
and the event loop only awaits its completion. The pool is the only shared
mutable resource in the package.

Invariants:
    - At most ``size`` connections exist, each used by one thread at a time
    - A connection returns to the pool only after its worker thread is done
      with it, even when the awaiting caller was cancelled
    - sqlite3 and OS errors never escape; they are mapped to
      StorageUnavailable or IntegrityViolation

How to change safely:
    - Keep executor workers and semaphore permits equal to ``size``
    - Never share a cursor across operations
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, TypeVar

from ..errors import IntegrityViolation, StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionPool:
    """Pool of SQLite connections driven from asyncio.

    Example:
        >>> pool = ConnectionPool("/var/lib/ydocstore/docs.db", size=4)
        >>> rows = await pool.run("count", lambda conn: conn.execute("SELECT 1").fetchall())
        >>> await pool.close()
    """

    def __init__(
        self,
        db_path: str,
        size: int = 5,
        acquire_timeout: float = 30.0,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the pool. Connections are opened lazily.

        Args:
            db_path: SQLite database file
            size: Maximum number of connections (and worker threads)
            acquire_timeout: Seconds to wait for a free connection
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL mode
        """
        if size < 1:
            raise ValueError("Pool size must be at least 1")

        self.db_path = Path(db_path)
        self.size = size
        self.acquire_timeout = acquire_timeout
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode

        self._semaphore = asyncio.Semaphore(size)
        self._executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix="ydocstore-db")
        self._lock = threading.Lock()
        self._idle: list[sqlite3.Connection] = []
        self._all: list[sqlite3.Connection] = []
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
        except Exception:
            conn.close()
            raise

        logger.debug("Opened pooled connection", extra={"db_path": str(self.db_path)})
        return conn

    def _checkout(self) -> sqlite3.Connection:
        with self._lock:
            if self._idle:
                return self._idle.pop()
        conn = self._connect()
        with self._lock:
            self._all.append(conn)
        return conn

    def _checkin(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            # Left open by a failed statement
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error:
                logger.warning("Rollback of abandoned transaction failed", exc_info=True)
        with self._lock:
            self._idle.append(conn)

    def _call(self, operation: str, fn: Callable[..., T], args: tuple[Any, ...]) -> T:
        conn = None
        try:
            conn = self._checkout()
            return fn(conn, *args)
        except sqlite3.IntegrityError as e:
            raise IntegrityViolation(f"{operation} rejected by constraint: {e}", operation) from e
        except sqlite3.Error as e:
            raise StorageUnavailable(f"{operation} failed: {e}", operation) from e
        except OSError as e:
            # Database directory cannot be created or reached
            raise StorageUnavailable(f"{operation} failed: {e}", operation) from e
        finally:
            if conn is not None:
                self._checkin(conn)

    async def run(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(conn, *args)`` on a pooled connection.

        Args:
            operation: Name used in errors and logs
            fn: Blocking callable receiving the connection first
            *args: Extra arguments for ``fn``

        Returns:
            Whatever ``fn`` returns

        Raises:
            StorageUnavailable: Pool closed, acquire timed out, or query failed
            IntegrityViolation: A constraint rejected the write
        """
        if self._closed:
            raise StorageUnavailable("Connection pool is closed", operation)

        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError:
            raise StorageUnavailable(
                f"Timed out after {self.acquire_timeout}s waiting for a connection",
                operation,
            )

        loop = asyncio.get_running_loop()
        try:
            future: Future[T] = self._executor.submit(self._call, operation, fn, args)
        except RuntimeError as e:
            self._semaphore.release()
            raise StorageUnavailable("Connection pool is closed", operation) from e

        def _release(_: Future[T]) -> None:
            try:
                loop.call_soon_threadsafe(self._semaphore.release)
            except RuntimeError:
                # Loop already closed, nothing left to wake
                pass

        future.add_done_callback(_release)
        return await asyncio.wrap_future(future)

    async def close(self) -> None:
        """Wait for in-flight operations and close every connection."""
        if self._closed:
            return
        self._closed = True

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._executor.shutdown, True)

        with self._lock:
            conns = self._all
            self._all = []
            self._idle = []
        for conn in conns:
            conn.close()

        logger.debug(
            "Connection pool closed",
            extra={"db_path": str(self.db_path), "connections": len(conns)},
        )
