"""
Error types for ydocstore.

This module defines all exception types raised by the store and service:
- DocStoreError: Base exception
- StorageUnavailable: Database unreachable or a round-trip failed
- IntegrityViolation: A write was rejected by a constraint
- MalformedCheckpoint: A stored checkpoint value cannot be decoded

Invariants:
    - All errors inherit from DocStoreError
    - Errors name the operation or document they relate to when known
    - Every error carries a stable code for programmatic handling
"""

from __future__ import annotations

from typing import Any


class DocStoreError(Exception):
    """Base exception for all ydocstore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCSTORE_ERROR"
        self.details = details or {}


class StorageUnavailable(DocStoreError):
    """The store could not be reached or a query round-trip failed.

    Raised when:
    - No pooled connection became free within the acquire timeout
    - SQLite reports an operational error (locked, I/O, missing table)
    - The pool has been closed
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(
            message,
            code="STORAGE_UNAVAILABLE",
            details={"operation": operation},
        )
        self.operation = operation


class IntegrityViolation(DocStoreError):
    """A constraint rejected a write.

    Should not occur under correct sequencing. Indicates a bug or a
    schema that does not match the one this package provisions.
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(
            message,
            code="INTEGRITY_VIOLATION",
            details={"operation": operation},
        )
        self.operation = operation


class MalformedCheckpoint(DocStoreError):
    """A stored checkpoint value could not be decoded."""

    def __init__(self, message: str, document_id: str | None = None) -> None:
        super().__init__(
            message,
            code="MALFORMED_CHECKPOINT",
            details={"document_id": document_id},
        )
        self.document_id = document_id
