"""
Document log service for ydocstore.

Checkpoint protocol, rehydration and compaction on top of the log store.
"""

from .background import BackgroundTasks
from .document_log import DocumentLogService

__all__ = [
    "DocumentLogService",
    "BackgroundTasks",
]
