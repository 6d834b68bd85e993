"""
Exceptions for draft synchronization.

Callers only ever need to handle the first-level classes; the subclasses
exist so stores and the engine can be precise about what went wrong.
"""


class DraftSyncError(Exception):
    """Base exception for draft sync operations."""


class ValidationError(DraftSyncError):
    """Raised when a draft or operation is malformed. Never retried."""


class PermissionError(DraftSyncError):
    """Raised when the remote store refuses the caller. Never retried or queued."""


class TransientError(DraftSyncError):
    """Raised for network-class failures that may succeed on retry."""


class RemoteTimeoutError(TransientError):
    """Raised when a remote call does not complete within the configured timeout."""


class ConflictError(DraftSyncError):
    """Raised when a version conflict could not be resolved within the retry budget."""


class VersionMismatchError(ConflictError):
    """Conditional write failed because the remote document moved on."""

    def __init__(self, message: str, current_version: int, expected_version: int):
        super().__init__(message)
        self.current_version = current_version
        self.expected_version = expected_version


class NotFoundError(DraftSyncError):
    """Raised when a document exists neither remotely nor in a local snapshot."""


class StorageError(DraftSyncError):
    """Raised when the local durable storage fails."""


class StorageQuotaError(StorageError):
    """Raised when a write would exceed the local storage capacity."""

    def __init__(self, message: str, capacity_bytes: int, requested_bytes: int):
        super().__init__(message)
        self.capacity_bytes = capacity_bytes
        self.requested_bytes = requested_bytes
