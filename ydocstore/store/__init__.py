"""
Store module for ydocstore - the update log on SQLite.

This module handles:
- The pooled, executor-backed SQLite connection layer
- Delta rows (append, keyset scan, range delete)
- Checkpoint rows (monotonic upsert, lookup)
- Schema and index provisioning

Invariants:
    - Delta order within a document is the append order
    - One checkpoint row per document
    - No operation spans more than one explicit transaction

How to change safely:
    - Test pagination across page boundaries after any query change
    - Keep checkpoint encoding backward compatible
"""

from .encoding import decode_checkpoint, encode_checkpoint
from .log_store import KIND_CHECKPOINT, KIND_DELTA, Checkpoint, DeltaRecord, LogStore
from .pool import ConnectionPool

__all__ = [
    "LogStore",
    "ConnectionPool",
    "Checkpoint",
    "DeltaRecord",
    "KIND_DELTA",
    "KIND_CHECKPOINT",
    "encode_checkpoint",
    "decode_checkpoint",
]
