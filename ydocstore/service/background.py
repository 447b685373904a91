"""
Fire-and-forget task registry.

Work dispatched here never blocks and never fails the call that
dispatched it. Failures go to the log. The registry keeps a reference to
every pending task so the event loop cannot drop it, and lets shutdown
wait for them.

Tasks dispatched with a ``document_id`` are also indexed per document, so
an operation that must not interleave with a document's pending work (such
as deleting it) can wait for just that document.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from functools import partial
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Tracks dispatched background coroutines.

    Example:
        >>> tasks = BackgroundTasks()
        >>> tasks.dispatch("compact", service._flush(...), document_id="doc1")
        >>> await tasks.wait_for("doc1")
        >>> await tasks.wait()
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._by_document: dict[str, set[asyncio.Task]] = {}

    @property
    def pending(self) -> int:
        """Number of tasks not yet finished."""
        return len(self._tasks)

    def pending_for(self, document_id: str) -> int:
        """Number of unfinished tasks dispatched for ``document_id``."""
        return len(self._by_document.get(document_id, ()))

    def dispatch(self, name: str, coro: Coroutine[Any, Any, Any], **context: Any) -> None:
        """Schedule ``coro`` on the running loop.

        Args:
            name: Task name used in logs
            coro: Coroutine to run
            **context: Extra fields attached to the failure log record. A
                ``document_id`` entry also indexes the task per document.
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        document_id = context.get("document_id")
        if document_id is not None:
            self._by_document.setdefault(document_id, set()).add(task)
        task.add_done_callback(partial(self._on_done, context))

    def _on_done(self, context: dict[str, Any], task: asyncio.Task) -> None:
        self._tasks.discard(task)
        document_id = context.get("document_id")
        if document_id is not None:
            tasks = self._by_document.get(document_id)
            if tasks is not None:
                tasks.discard(task)
                if not tasks:
                    del self._by_document[document_id]

        if task.cancelled():
            logger.info(f"Background task {task.get_name()} cancelled", extra=context)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task {task.get_name()} failed: {exc}",
                exc_info=exc,
                extra={"background_task": task.get_name(), **context},
            )

    async def wait(self) -> None:
        """Wait until every dispatched task, including ones dispatched meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def wait_for(self, document_id: str) -> None:
        """Wait until no task dispatched for ``document_id`` is pending."""
        while self._by_document.get(document_id):
            await asyncio.gather(*list(self._by_document[document_id]), return_exceptions=True)
