"""Offline-capable draft synchronization.

This package provides:
- SyncEngine: versioned save/load with conflict merge and offline fallback
- LocalDurableQueue: durable, bounded queue of writes awaiting delivery
- FieldMergeResolver: deterministic field-level conflict merge
- StatusPublisher: broadcast of sync status to subscribers
"""

from draftsync.config import SyncSettings, configure_logging
from draftsync.conflict_resolver import (
    ConflictResolver,
    FieldMergeResolver,
    MergePolicy,
)
from draftsync.engine import SyncEngine
from draftsync.exceptions import (
    ConflictError,
    DraftSyncError,
    NotFoundError,
    PermissionError,
    RemoteTimeoutError,
    StorageError,
    StorageQuotaError,
    TransientError,
    ValidationError,
    VersionMismatchError,
)
from draftsync.models import (
    ConflictMarker,
    Draft,
    OperationType,
    QueuedOperation,
    SaveResult,
    SyncState,
    SyncStatus,
)
from draftsync.queue import LocalDurableQueue
from draftsync.remote import (
    HttpDocumentStore,
    InMemoryDocumentStore,
    RemoteDocumentStore,
)
from draftsync.scheduling import AsyncioScheduler, ManualScheduler, Scheduler
from draftsync.status import StatusPublisher
from draftsync.storage import InMemoryStorage, KeyValueStorage, LocalDiskStorage

__all__ = [
    # Engine
    "SyncEngine",
    "SyncSettings",
    "configure_logging",
    # Queue and status
    "LocalDurableQueue",
    "StatusPublisher",
    # Conflict resolution
    "ConflictResolver",
    "FieldMergeResolver",
    "MergePolicy",
    # Models
    "ConflictMarker",
    "Draft",
    "OperationType",
    "QueuedOperation",
    "SaveResult",
    "SyncState",
    "SyncStatus",
    # Collaborators
    "HttpDocumentStore",
    "InMemoryDocumentStore",
    "RemoteDocumentStore",
    "InMemoryStorage",
    "KeyValueStorage",
    "LocalDiskStorage",
    "AsyncioScheduler",
    "ManualScheduler",
    "Scheduler",
    # Exceptions
    "DraftSyncError",
    "ValidationError",
    "PermissionError",
    "TransientError",
    "RemoteTimeoutError",
    "ConflictError",
    "VersionMismatchError",
    "NotFoundError",
    "StorageError",
    "StorageQuotaError",
]
