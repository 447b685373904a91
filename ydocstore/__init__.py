"""
ydocstore - durable update log and compaction for conflict-free documents.

ydocstore persists the binary updates produced by a CRDT document model
(Yjs through pycrdt by default) into SQLite and rebuilds documents by
replaying them. The log is kept bounded by periodically folding it into
one full-state update plus a state-vector checkpoint.

Architecture:
    - store: LogStore over a pooled SQLite connection layer
    - document: DocumentAdapter protocol and its implementations
    - service: DocumentLogService (checkpoint protocol, rehydration, compaction)
    - tools: Maintenance CLI

Invariants:
    - Deltas of one document replay in append order
    - Every written document has exactly one checkpoint row
    - Checkpoint watermarks never decrease
    - Compaction never leaves the log unreplayable

How to change safely:
    - Store changes must keep keyset pagination and the checkpoint layout
    - Service changes must keep the append, checkpoint, delete order
    - Background work must stay tracked and logged
"""

from ._version import __version__
from .config import (
    CheckpointInitMode,
    CompactionConfig,
    CompactionMode,
    ObservabilityConfig,
    ServiceConfig,
    StorageConfig,
)
from .document import DocumentAdapter, InMemoryDocumentAdapter, YDocAdapter
from .errors import (
    DocStoreError,
    IntegrityViolation,
    MalformedCheckpoint,
    StorageUnavailable,
)
from .service import DocumentLogService
from .store import Checkpoint, DeltaRecord, LogStore

__all__ = [
    "__version__",
    # Service
    "DocumentLogService",
    # Store
    "LogStore",
    "Checkpoint",
    "DeltaRecord",
    # Documents
    "DocumentAdapter",
    "YDocAdapter",
    "InMemoryDocumentAdapter",
    # Configuration
    "ServiceConfig",
    "StorageConfig",
    "CompactionConfig",
    "CompactionMode",
    "CheckpointInitMode",
    "ObservabilityConfig",
    # Errors
    "DocStoreError",
    "StorageUnavailable",
    "IntegrityViolation",
    "MalformedCheckpoint",
]
