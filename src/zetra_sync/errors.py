"""Sync error taxonomy.

Per-operation failures (checksum mismatch, version ahead of the server) are
collected into the batch result; only request malformation and storage
outages abort a whole call.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for sync errors."""

    code: str = "sync_error"
    status_code: int = 400

    def __init__(self, message: str, *, details: object | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(SyncError):
    """Malformed batch or operation."""

    code = "validation_error"
    status_code = 422


class StaleVersionError(SyncError):
    """The entity moved past the expected version before commit.

    Raised by the compare-and-swap; the orchestrator routes it back through
    conflict detection instead of failing the operation.
    """

    code = "stale_version"
    status_code = 409

    def __init__(self, message: str, *, expected_version: int, current_version: int | None = None):
        super().__init__(
            message,
            details={"expected_version": expected_version, "current_version": current_version},
        )
        self.expected_version = expected_version
        self.current_version = current_version


class OperationAlreadyProcessedError(SyncError):
    """Another request recorded an outcome for the operation first.

    Internal: the orchestrator rolls back its own writes for the operation and
    reports the stored outcome instead.
    """

    code = "already_processed"
    status_code = 409


class ChecksumMismatchError(SyncError):
    """Payload does not hash to the declared checksum (corrupted transmission)."""

    code = "checksum_mismatch"
    status_code = 422

    def __init__(self, message: str, *, expected: str, actual: str) -> None:
        super().__init__(message, details={"expected": expected, "actual": actual})
        self.expected = expected
        self.actual = actual


class ConflictNotFoundError(SyncError):
    """Conflict does not exist or is already resolved."""

    code = "conflict_not_found"
    status_code = 404


class PersistenceError(SyncError):
    """Storage failure; the whole batch is safe to retry."""

    code = "persistence_error"
    status_code = 500
