"""Sync engine for schedule drafts.

The engine performs versioned saves and loads against the remote document
store. Saves use optimistic concurrency: a conditional write that finds a
newer remote version triggers a field-level merge and another attempt.
Transient failures are retried with backoff and, once the budget is spent,
handed to the offline queue so the caller still sees success.

Components:
- SyncEngine: save/load/delete coordination, per-document locking, cache
- LocalDurableQueue: deferred writes (see draftsync.queue)
- FieldMergeResolver: conflict merge (see draftsync.conflict_resolver)
"""

import asyncio
import hashlib
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, Tuple, TypeVar

from pydantic import ValidationError as PydanticValidationError

from .config import SyncSettings
from .conflict_resolver import ConflictResolver, FieldMergeResolver
from .exceptions import (
    ConflictError,
    NotFoundError,
    RemoteTimeoutError,
    StorageError,
    TransientError,
    ValidationError,
    VersionMismatchError,
)
from .models import Draft, OperationType, SaveResult, SyncStatus
from .queue import LocalDurableQueue
from .remote import HttpDocumentStore, RemoteDocumentStore
from .retry import retry_async
from .scheduling import AsyncioScheduler, Scheduler
from .status import StatusListener, Unsubscribe
from .storage import KeyValueStorage, LocalDiskStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

SNAPSHOT_PREFIX = "draftsync_snapshot_"


@dataclass
class _CacheEntry:
    draft: Draft
    cached_at: float


@dataclass
class _DocumentLock:
    lock: asyncio.Lock
    users: int = 0


class SyncEngine:
    """Coordinate draft persistence between callers, the remote store and the queue.

    Construct one per application (see ``create``) and pass it to whatever
    needs it. ``start`` resumes delivery of operations a previous run left
    queued; ``close`` cancels timers and releases the remote client.
    """

    def __init__(
        self,
        remote: RemoteDocumentStore,
        storage: KeyValueStorage,
        queue: LocalDurableQueue | None = None,
        resolver: ConflictResolver | None = None,
        scheduler: Scheduler | None = None,
        *,
        collection: str = "workflow_drafts",
        save_max_retries: int = 3,
        save_base_delay: float = 1.0,
        max_backoff_seconds: float = 30.0,
        remote_timeout: float = 10.0,
        cache_ttl_seconds: float = 30.0,
        cache_max_entries: int = 100,
        startup_flush_delay: float = 2.0,
    ):
        """Initialize sync engine.

        Args:
            remote: Remote document store
            storage: Durable local storage for the queue and load snapshots
            queue: Offline queue (built on ``storage`` if omitted)
            resolver: Conflict resolver (defaults to FieldMergeResolver)
            scheduler: Timer facility shared with the queue
            collection: Remote collection holding drafts
            save_max_retries: Save attempts allowed beyond the first
            save_base_delay: Backoff delay after the first failed attempt
            max_backoff_seconds: Cap on any single backoff delay
            remote_timeout: Bound on each remote call, in seconds
            cache_ttl_seconds: How long a loaded draft is served from cache
            cache_max_entries: Maximum number of cached drafts
            startup_flush_delay: Delay before ``start`` flushes leftovers
        """
        if queue is not None:
            scheduler = queue.scheduler
        self.scheduler = scheduler or AsyncioScheduler()
        self.remote = remote
        self.storage = storage
        self.queue = queue or LocalDurableQueue(
            storage,
            remote,
            self.scheduler,
            max_backoff_seconds=max_backoff_seconds,
            remote_timeout=remote_timeout,
        )
        self.resolver = resolver or FieldMergeResolver()
        self.collection = collection
        self.save_max_retries = save_max_retries
        self.save_base_delay = save_base_delay
        self.max_backoff_seconds = max_backoff_seconds
        self.remote_timeout = remote_timeout
        self.cache_ttl_seconds = cache_ttl_seconds
        self.cache_max_entries = cache_max_entries
        self.startup_flush_delay = startup_flush_delay

        self._locks: Dict[str, _DocumentLock] = {}
        self._cache: Dict[Tuple[str, str], _CacheEntry] = {}

    @classmethod
    def create(
        cls,
        settings: SyncSettings | None = None,
        *,
        remote: RemoteDocumentStore | None = None,
        storage: KeyValueStorage | None = None,
        scheduler: Scheduler | None = None,
        resolver: ConflictResolver | None = None,
    ) -> "SyncEngine":
        """Build an engine and its collaborators from settings.

        Raises:
            ValidationError: If no remote store is given or configured
        """
        settings = settings or SyncSettings()

        if storage is None:
            storage = LocalDiskStorage(
                settings.storage_path / "storage",
                capacity_bytes=settings.storage_capacity_bytes,
            )
        if remote is None:
            if not settings.remote_url:
                raise ValidationError(
                    "No remote store configured; set DRAFTSYNC_REMOTE_URL"
                )
            remote = HttpDocumentStore(
                settings.remote_url,
                settings.auth_token,
                timeout=settings.remote_timeout,
                verify_ssl=settings.verify_ssl,
            )

        scheduler = scheduler or AsyncioScheduler()
        queue = LocalDurableQueue(
            storage,
            remote,
            scheduler,
            max_queue_size=settings.max_queue_size,
            max_retry_count=settings.max_retry_count,
            max_backoff_seconds=settings.max_backoff_seconds,
            expiry_hours=settings.expiry_hours,
            remote_timeout=settings.remote_timeout,
        )
        return cls(
            remote,
            storage,
            queue=queue,
            resolver=resolver,
            collection=settings.collection,
            save_max_retries=settings.save_max_retries,
            save_base_delay=settings.save_base_delay,
            max_backoff_seconds=settings.max_backoff_seconds,
            remote_timeout=settings.remote_timeout,
            cache_ttl_seconds=settings.cache_ttl_seconds,
            startup_flush_delay=settings.startup_flush_delay,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.queue.start(delay=self.startup_flush_delay)
        logger.info(
            f"Sync engine started ({self.queue.size()} queued operations pending)"
        )

    async def close(self) -> None:
        self.queue.close()
        self._cache.clear()
        await self.remote.close()
        logger.debug("Sync engine closed")

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    async def save(self, draft: Draft, user_id: str) -> SaveResult:
        """Save a draft, merging with concurrent remote edits if needed.

        ``draft.version`` is the version the caller's edit is based on. The
        stored draft comes back with its new version.

        Args:
            draft: Draft to save
            user_id: User performing the save

        Returns:
            SaveResult; ``queued`` is True when the write was deferred to the
            offline queue and will land later

        Raises:
            ValidationError: Malformed draft or user id
            PermissionError: The remote store refused the write
            ConflictError: Merge-and-retry did not converge within the budget
            TransientError: The remote is unreachable and the queue is full
        """
        self._validate(draft, user_id)
        async with self._document_lock(draft.document_id):
            return await self._save_locked(draft, user_id)

    async def _save_locked(self, draft: Draft, user_id: str) -> SaveResult:
        pending = draft.model_copy(update={"last_modified_at": self._now()}, deep=True)
        state: Dict[str, Any] = {
            "draft": pending,
            "expected": draft.version,
            "merged": False,
            "attempts": 0,
        }

        if not self.queue.is_online:
            logger.info(f"Offline; queuing save of {draft.document_id}")
            return self._queue_save(state, user_id)

        async def attempt(attempt_number: int) -> Draft:
            state["attempts"] = attempt_number + 1
            current: Draft = state["draft"]
            try:
                return await self._call(
                    self.remote.write(
                        self.collection,
                        current.document_id,
                        current,
                        expected_version=state["expected"],
                    )
                )
            except VersionMismatchError as e:
                logger.info(
                    f"Version conflict saving {current.document_id}: "
                    f"remote v{e.current_version}, expected v{state['expected']}; merging"
                )
                remote_draft = await self._call(
                    self.remote.read(self.collection, current.document_id)
                )
                state["draft"] = self.resolver.merge(current, remote_draft)
                state["expected"] = remote_draft.version
                state["merged"] = True
                raise

        try:
            stored = await retry_async(
                attempt,
                max_retries=self.save_max_retries,
                base_delay=self.save_base_delay,
                max_delay=self.max_backoff_seconds,
                retry_on=(TransientError, ConflictError),
                sleep=self.scheduler.sleep,
                description=f"Save of {draft.document_id}",
            )
        except ConflictError as e:
            raise ConflictError(
                f"Could not resolve conflicting edits to {draft.document_id} "
                f"after {state['attempts']} attempts"
            ) from e
        except TransientError as e:
            logger.warning(
                f"Remote unavailable saving {draft.document_id} ({e}); "
                f"deferring to offline queue"
            )
            return self._queue_save(state, user_id)

        self._remember(user_id, stored)
        logger.info(
            f"Saved {stored.document_id} v{stored.version} for {user_id}"
            + (" (merged)" if state["merged"] else "")
        )
        return SaveResult(
            draft=stored, merged=state["merged"], attempts=state["attempts"]
        )

    def _queue_save(self, state: Dict[str, Any], user_id: str) -> SaveResult:
        pending: Draft = state["draft"]
        queued = pending.model_copy(update={"version": state["expected"] + 1})
        accepted = self.queue.enqueue(
            OperationType.SAVE,
            self.collection,
            queued.document_id,
            queued.to_record(),
        )
        if not accepted:
            raise TransientError(
                f"Remote store unreachable and offline queue rejected {queued.document_id}"
            )

        self._remember(user_id, queued)
        return SaveResult(
            draft=queued,
            queued=True,
            merged=state["merged"],
            attempts=state["attempts"],
        )

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load(self, document_id: str, user_id: str) -> Draft:
        """Load a draft, preferring the remote copy.

        Reads within the cache TTL are served from memory. When the remote is
        unreachable the last cached or persisted snapshot is returned.

        Raises:
            NotFoundError: If the draft exists neither remotely nor locally
            PermissionError: The remote store refused the read
        """
        self._validate_ids(document_id, user_id)
        key = (user_id, document_id)
        entry = self._cache.get(key)
        if entry and self.scheduler.clock.now() - entry.cached_at < self.cache_ttl_seconds:
            logger.debug(f"Cache hit for {document_id}")
            return entry.draft.model_copy(deep=True)

        try:
            draft = await self._call(self.remote.read(self.collection, document_id))
        except TransientError as e:
            fallback = entry.draft if entry else self._read_snapshot(user_id, document_id)
            if fallback is None:
                raise NotFoundError(
                    f"Draft {document_id} unavailable: remote unreachable and no local copy"
                ) from e
            logger.warning(f"Remote unavailable loading {document_id}; using local snapshot")
            return fallback.model_copy(deep=True)

        self._remember(user_id, draft)
        return draft

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, document_id: str, user_id: str) -> bool:
        """Delete a draft.

        Returns:
            True if the delete was deferred to the offline queue

        Raises:
            PermissionError: The remote store refused the delete
            TransientError: The remote is unreachable and the queue is full
        """
        self._validate_ids(document_id, user_id)
        async with self._document_lock(document_id):
            self._forget(user_id, document_id)

            if self.queue.is_online:
                try:
                    await retry_async(
                        lambda _: self._call(
                            self.remote.delete(self.collection, document_id)
                        ),
                        max_retries=self.save_max_retries,
                        base_delay=self.save_base_delay,
                        max_delay=self.max_backoff_seconds,
                        sleep=self.scheduler.sleep,
                        description=f"Delete of {document_id}",
                    )
                    logger.info(f"Deleted {document_id}")
                    return False
                except TransientError as e:
                    logger.warning(f"Remote unavailable deleting {document_id} ({e})")

            if not self.queue.enqueue(OperationType.DELETE, self.collection, document_id):
                raise TransientError(
                    f"Remote store unreachable and offline queue rejected delete of {document_id}"
                )
            return True

    # ------------------------------------------------------------------
    # Status and connectivity
    # ------------------------------------------------------------------

    def get_status(self) -> SyncStatus:
        return self.queue.get_status()

    def subscribe(self, listener: StatusListener) -> Unsubscribe:
        return self.queue.subscribe(listener)

    def set_online(self, online: bool) -> None:
        self.queue.set_online(online)

    async def force_retry(self) -> None:
        await self.queue.force_retry()

    def invalidate(self, document_id: str, user_id: Optional[str] = None) -> None:
        """Drop cached copies of a draft so the next load goes to the remote."""
        for key in list(self._cache):
            if key[1] == document_id and (user_id is None or key[0] == user_id):
                del self._cache[key]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        """Serialize writers of one document; the entry lives only while in use."""
        entry = self._locks.get(document_id)
        if entry is None:
            entry = self._locks[document_id] = _DocumentLock(asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[document_id]

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.remote_timeout)
        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError(
                f"Remote call timed out after {self.remote_timeout}s"
            ) from e

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.scheduler.clock.now(), tz=timezone.utc)

    def _validate_ids(self, document_id: str, user_id: str) -> None:
        if not isinstance(document_id, str) or not document_id.strip():
            raise ValidationError("document_id is required")
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id is required")

    def _validate(self, draft: Draft, user_id: str) -> None:
        if not isinstance(draft, Draft):
            raise ValidationError(f"Expected a Draft, got {type(draft).__name__}")
        self._validate_ids(draft.document_id, user_id)
        try:
            Draft.model_validate(draft.model_dump())
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid draft {draft.document_id}: {e}") from e

    def _snapshot_key(self, user_id: str, document_id: str) -> str:
        digest = hashlib.md5(f"{user_id}:{document_id}".encode()).hexdigest()
        return f"{SNAPSHOT_PREFIX}{digest}"

    def _remember(self, user_id: str, draft: Draft) -> None:
        key = (user_id, draft.document_id)
        self._cache.pop(key, None)
        self._cache[key] = _CacheEntry(draft.model_copy(deep=True), self.scheduler.clock.now())
        while len(self._cache) > self.cache_max_entries:
            oldest = next(iter(self._cache))
            del self._cache[oldest]

        try:
            self.storage.set(
                self._snapshot_key(user_id, draft.document_id),
                json.dumps(draft.to_record()),
            )
        except StorageError as e:
            logger.warning(f"Could not persist snapshot of {draft.document_id}: {e}")

    def _forget(self, user_id: str, document_id: str) -> None:
        self._cache.pop((user_id, document_id), None)
        try:
            self.storage.remove(self._snapshot_key(user_id, document_id))
        except StorageError as e:
            logger.warning(f"Could not remove snapshot of {document_id}: {e}")

    def _read_snapshot(self, user_id: str, document_id: str) -> Draft | None:
        try:
            raw = self.storage.get(self._snapshot_key(user_id, document_id))
        except StorageError as e:
            logger.warning(f"Could not read snapshot of {document_id}: {e}")
            return None
        if not raw:
            return None
        try:
            return Draft.from_record(json.loads(raw))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning(f"Discarding unreadable snapshot of {document_id}: {e}")
            return None
