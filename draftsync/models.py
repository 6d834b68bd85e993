"""
Data models for draft synchronization.

Queued operations form a discriminated union on ``type`` so each operation
kind carries exactly the payload it needs. Persisted queue records use
camelCase field names, matching the web editor's local storage format;
Python code uses the snake_case attribute names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
)
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Queued operations
# =============================================================================


class OperationType(str, Enum):
    """Kinds of write that can be queued."""

    SAVE = "save"
    UPDATE = "update"
    DELETE = "delete"


class _QueuedOperationBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(..., description="Unique operation id")
    collection: str = Field(..., min_length=1)
    document_id: str = Field(..., min_length=1)
    timestamp: int = Field(..., description="Enqueue time, epoch milliseconds")
    retry_count: int = Field(0, ge=0)
    last_error: Optional[str] = None
    next_attempt_at: Optional[int] = Field(
        None, description="Earliest retry time after a failure, epoch milliseconds"
    )

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        """The (type, collection, document_id) triple used for duplicate suppression."""
        return (self.type, self.collection, self.document_id)


class SaveOperation(_QueuedOperationBase):
    """Full write of a document. ``data`` must be a complete draft record."""

    type: Literal["save"] = "save"
    data: Dict[str, Any]

    @field_validator("data")
    @classmethod
    def _data_is_draft(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        Draft.model_validate(value)
        return value


class UpdateOperation(_QueuedOperationBase):
    """Partial write merged onto the current remote document."""

    type: Literal["update"] = "update"
    data: Dict[str, Any]

    @field_validator("data")
    @classmethod
    def _data_is_partial_draft(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(value) - set(Draft.model_fields)
        if unknown:
            raise ValueError(f"Unknown draft fields: {sorted(unknown)}")
        if "content" in value and not isinstance(value["content"], dict):
            raise ValueError("content must be a mapping")
        return value


class DeleteOperation(_QueuedOperationBase):
    """Removal of a document."""

    type: Literal["delete"] = "delete"


QueuedOperation = Annotated[
    Union[SaveOperation, UpdateOperation, DeleteOperation],
    Field(discriminator="type"),
]

QUEUE_ADAPTER = TypeAdapter(List[QueuedOperation])


# =============================================================================
# Drafts
# =============================================================================


class ConflictMarker(BaseModel):
    """Records that a merge, not a plain write, produced a draft version."""

    merged_at: datetime
    local_version: int
    remote_version: int
    strategy: str = "field_merge"


class Draft(BaseModel):
    """A versioned schedule draft as stored in the remote document store."""

    document_id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    version: int = Field(0, ge=0)
    last_modified_at: datetime = Field(default_factory=utc_now)
    content: Dict[str, Any] = Field(default_factory=dict)
    conflict_marker: Optional[ConflictMarker] = None

    @field_validator("last_modified_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_record(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Draft":
        return cls.model_validate(record)


class SaveResult(BaseModel):
    """Outcome of ``SyncEngine.save``."""

    draft: Draft
    queued: bool = False
    merged: bool = False
    attempts: int = 1


# =============================================================================
# Status
# =============================================================================


class SyncState(str, Enum):
    """Display classification of a sync status."""

    SAVED = "saved"
    SAVING = "saving"
    SYNCING = "syncing"
    OFFLINE = "offline"
    ERROR = "error"


class SyncStatus(BaseModel):
    """Snapshot of synchronization state broadcast to subscribers."""

    model_config = ConfigDict(frozen=True)

    is_online: bool
    queue_size: int = 0
    processing: bool = False
    last_sync_time: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def state(self) -> SyncState:
        if not self.is_online:
            return SyncState.OFFLINE
        if self.last_error and self.queue_size > 0:
            return SyncState.ERROR
        if self.processing:
            return SyncState.SYNCING
        if self.queue_size > 0:
            return SyncState.SAVING
        return SyncState.SAVED

    @property
    def message(self) -> str:
        state = self.state
        if state is SyncState.OFFLINE:
            if self.queue_size:
                return f"Offline - {self.queue_size} changes pending"
            return "Offline"
        if state is SyncState.ERROR:
            return f"Sync failed - {self.last_error}"
        if state is SyncState.SYNCING:
            return "Syncing..."
        if state is SyncState.SAVING:
            if self.queue_size == 1:
                return "Saving..."
            return f"Saving {self.queue_size} items..."
        return "All changes saved"
