"""
Document model adapters for ydocstore.

This module provides a pluggable document model interface supporting:
- Yjs documents through pycrdt (production)
- An in-memory grow-only model (testing)

The update log stores opaque bytes; adapters are the only code that
understands them.
"""

from .base import DocumentAdapter
from .memory import InMemoryDocumentAdapter, MemoryDocument, encode_entries
from .ydoc import YDocAdapter

__all__ = [
    # Protocol
    "DocumentAdapter",
    # Implementations
    "YDocAdapter",
    "InMemoryDocumentAdapter",
    # Testing helpers
    "MemoryDocument",
    "encode_entries",
]
