"""Durable queue of writes that could not reach the remote store.

The queue lives in a KeyValueStorage under a single key and is re-read on
every call, so interleaved callers always modify the latest persisted
snapshot. Operations are retried with bounded exponential backoff and are
dropped, with a warning, once their retry budget is spent. Anything older
than the expiry window is purged on read and never retried.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pydantic import TypeAdapter

from .exceptions import (
    DraftSyncError,
    StorageError,
    TransientError,
    RemoteTimeoutError,
    ValidationError,
)
from .models import (
    QUEUE_ADAPTER,
    Draft,
    OperationType,
    QueuedOperation,
    SyncStatus,
)
from .remote import RemoteDocumentStore
from .retry import backoff_delay
from .sanitize import sanitize_error_message, sanitize_payload
from .scheduling import AsyncioScheduler, Scheduler
from .status import StatusListener, StatusPublisher, Unsubscribe

logger = logging.getLogger(__name__)

QUEUE_KEY = "draftsync_offline_queue"
LAST_SYNC_KEY = "draftsync_last_sync_time"

_OPERATION_ADAPTER = TypeAdapter(QueuedOperation)


class LocalDurableQueue:
    """Persist pending write operations and replay them when online."""

    TIMER_PREFIX = "draftsync-queue:"

    def __init__(
        self,
        storage,
        remote: RemoteDocumentStore | None,
        scheduler: Scheduler | None = None,
        *,
        max_queue_size: int = 100,
        max_retry_count: int = 3,
        max_backoff_seconds: float = 30.0,
        expiry_hours: float = 24.0,
        remote_timeout: float = 10.0,
        is_online: bool = True,
    ):
        """Initialize the queue.

        Args:
            storage: KeyValueStorage holding the persisted queue
            remote: Store that queued operations are applied to, or None for a
                queue that is only inspected and never flushed
            scheduler: Timer facility for retries (defaults to asyncio)
            max_queue_size: Enqueues beyond this many pending ops are rejected
            max_retry_count: Retries allowed per operation before it is dropped
            max_backoff_seconds: Cap on the delay between retries
            expiry_hours: Operations older than this are purged
            remote_timeout: Bound on each remote call, in seconds
            is_online: Initial connectivity
        """
        self.storage = storage
        self.remote = remote
        self.scheduler = scheduler or AsyncioScheduler()
        self.max_queue_size = max_queue_size
        self.max_retry_count = max_retry_count
        self.max_backoff_seconds = max_backoff_seconds
        self.expiry_ms = int(expiry_hours * 60 * 60 * 1000)
        self.remote_timeout = remote_timeout

        self._is_online = is_online
        self._is_processing = False
        self._flush_requested = False
        self._last_error: Optional[str] = None
        self.publisher = StatusPublisher(self._compute_status)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _read_queue(self) -> List[QueuedOperation]:
        """Load the active queue, dropping expired and unreadable entries."""
        try:
            raw = self.storage.get(QUEUE_KEY)
        except StorageError as e:
            logger.error(f"Failed to load offline queue: {e}")
            return []

        if not raw:
            return []

        try:
            queue = QUEUE_ADAPTER.validate_json(raw)
        except PydanticValidationError as e:
            logger.error(f"Discarding unreadable offline queue: {e}")
            return []

        cutoff = self.scheduler.clock.now_ms() - self.expiry_ms
        active = [op for op in queue if op.timestamp > cutoff]
        if len(active) < len(queue):
            logger.info(f"Purged {len(queue) - len(active)} expired queued operations")
        return active

    def _write_queue(self, queue: List[QueuedOperation]) -> None:
        """Persist the queue. Raises StorageError on failure."""
        if not queue:
            self.storage.remove(QUEUE_KEY)
            return
        payload = QUEUE_ADAPTER.dump_json(queue, by_alias=True, exclude_none=True)
        self.storage.set(QUEUE_KEY, payload.decode("utf-8"))

    def _last_sync_time(self) -> Optional[int]:
        try:
            value = self.storage.get(LAST_SYNC_KEY)
        except StorageError:
            return None
        return int(value) if value and value.isdigit() else None

    def _record_sync_time(self) -> None:
        try:
            self.storage.set(LAST_SYNC_KEY, str(self.scheduler.clock.now_ms()))
        except StorageError as e:
            logger.warning(f"Failed to record last sync time: {e}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    def enqueue(
        self,
        op_type: OperationType | str,
        collection: str,
        document_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Queue a write for later delivery.

        Args:
            op_type: "save", "update" or "delete"
            collection: Remote collection name
            document_id: Remote document id
            data: Payload for save/update operations

        Returns:
            True if the operation is queued (or an identical one already is),
            False if the queue is full or storage rejected the write

        Raises:
            ValidationError: If the operation is malformed
        """
        try:
            op_type = OperationType(op_type).value
        except ValueError as e:
            raise ValidationError(f"Unknown operation type: {op_type!r}") from e
        now_ms = self.scheduler.clock.now_ms()
        record: Dict[str, Any] = {
            "id": f"op_{now_ms}_{uuid.uuid4().hex[:9]}",
            "type": op_type,
            "collection": collection,
            "document_id": document_id,
            "timestamp": now_ms,
            "retry_count": 0,
        }
        if data is not None:
            record["data"] = sanitize_payload(data)

        try:
            operation = _OPERATION_ADAPTER.validate_python(record)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid {op_type} operation: {e}") from e

        queue = self._read_queue()

        if len(queue) >= self.max_queue_size:
            logger.error(
                f"Offline queue is full ({self.max_queue_size}); "
                f"rejecting {op_type} for {document_id}"
            )
            return False

        duplicate = next(
            (
                op
                for op in queue
                if op.dedup_key == operation.dedup_key
                and op.retry_count < self.max_retry_count
            ),
            None,
        )
        if duplicate is not None:
            logger.info(f"Duplicate operation already queued: {op_type} {document_id}")
            if getattr(operation, "data", None) not in (None, duplicate.data):
                # Pending entry keeps its id and retry count but carries the newest payload
                duplicate.data = operation.data
                try:
                    self._write_queue(queue)
                except StorageError as e:
                    logger.error(f"Failed to refresh queued {op_type} for {document_id}: {e}")
                    return False
            return True

        if operation.type == OperationType.DELETE.value:
            queue = self._supersede_writes(queue, collection, document_id)

        queue.append(operation)
        try:
            self._write_queue(queue)
        except StorageError as e:
            logger.error(f"Failed to persist queued {op_type} for {document_id}: {e}")
            return False

        logger.info(f"Queued {op_type} operation for {document_id}")
        self.publisher.publish()

        if self._is_online:
            self._schedule_flush()

        return True

    def _supersede_writes(
        self, queue: List[QueuedOperation], collection: str, document_id: str
    ) -> List[QueuedOperation]:
        """Drop pending save/update ops that a delete of the same document makes moot."""
        kept = []
        for op in queue:
            if (
                op.collection == collection
                and op.document_id == document_id
                and op.type != OperationType.DELETE.value
            ):
                logger.info(f"Delete supersedes queued {op.type} for {document_id}")
                self.scheduler.cancel(self._retry_key(op.id))
                continue
            kept.append(op)
        return kept

    async def flush(self, force: bool = False) -> None:
        """Apply every due queued operation to the remote store.

        Single-flight: returns immediately when offline. A call made while
        another flush is running is remembered and served by a follow-up
        pass. Operations still inside their backoff window are skipped
        unless ``force`` is set.
        """
        if not self._is_online:
            return
        if self._is_processing:
            self._flush_requested = True
            return
        if self.remote is None:
            logger.warning("No remote store attached; queued operations stay pending")
            return

        self._is_processing = True
        self._flush_requested = False
        self.publisher.publish()

        finished: set[str] = set()
        failed: Dict[str, QueuedOperation] = {}
        succeeded = 0
        try:
            queue = self._read_queue()
            if not queue:
                return

            logger.info(f"Processing {len(queue)} queued operations")
            now_ms = self.scheduler.clock.now_ms()
            deferred = 0

            for operation in queue:
                if not self._is_online:
                    logger.info("Connection lost during flush; stopping")
                    break

                if not force and (operation.next_attempt_at or 0) > now_ms:
                    deferred += 1
                    self._schedule_retry(operation, now_ms)
                    continue

                try:
                    await self._apply(operation)
                except TransientError as e:
                    if self._record_failure(operation, e):
                        failed[operation.id] = operation
                    else:
                        finished.add(operation.id)
                    continue
                except DraftSyncError as e:
                    self._last_error = sanitize_error_message(e)
                    logger.warning(
                        f"Dropping {operation.type} for {operation.document_id}: {e}"
                    )
                    finished.add(operation.id)
                    continue

                finished.add(operation.id)
                succeeded += 1
                logger.info(f"Processed {operation.type} for {operation.document_id}")

            if not failed and not deferred:
                self._last_error = None
            if failed:
                logger.warning(f"{len(failed)} operations failed and will be retried")

        finally:
            if finished or failed:
                self._store_remaining(finished, failed)
            if succeeded > 0:
                self._record_sync_time()
            self._is_processing = False
            self.publisher.publish()
            if self._flush_requested and self._is_online:
                self._flush_requested = False
                self._schedule_flush()

    async def _apply(self, operation: QueuedOperation) -> None:
        if operation.type == OperationType.SAVE.value:
            call = self.remote.write(
                operation.collection,
                operation.document_id,
                Draft.from_record(operation.data),
            )
        elif operation.type == OperationType.UPDATE.value:
            call = self.remote.update(
                operation.collection, operation.document_id, operation.data
            )
        else:
            call = self.remote.delete(operation.collection, operation.document_id)

        try:
            await asyncio.wait_for(call, timeout=self.remote_timeout)
        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError(
                f"Remote {operation.type} timed out after {self.remote_timeout}s"
            ) from e

    def _record_failure(self, operation: QueuedOperation, error: Exception) -> bool:
        """Update retry bookkeeping. Returns True if the operation stays queued."""
        operation.last_error = sanitize_error_message(error)
        self._last_error = operation.last_error
        logger.error(
            f"Failed to process {operation.type} for {operation.document_id}: {error}"
        )

        if operation.retry_count >= self.max_retry_count:
            logger.warning(
                f"Dropping operation after {self.max_retry_count} retries: "
                f"{operation.type} {operation.document_id}"
            )
            return False

        operation.retry_count += 1
        delay = backoff_delay(
            operation.retry_count, base_delay=1.0, max_delay=self.max_backoff_seconds
        )
        now_ms = self.scheduler.clock.now_ms()
        operation.next_attempt_at = now_ms + int(delay * 1000)
        logger.info(f"Scheduling retry for {operation.document_id} in {delay:.0f}s")
        self._schedule_retry(operation, now_ms)
        return True

    def _schedule_retry(self, operation: QueuedOperation, now_ms: int) -> None:
        delay = max(0, (operation.next_attempt_at or now_ms) - now_ms) / 1000
        self.scheduler.call_later(
            delay, self._on_retry_timer, key=self._retry_key(operation.id)
        )

    def _store_remaining(
        self, finished: set[str], failed: Dict[str, QueuedOperation]
    ) -> None:
        """Re-read the queue and write back what is still pending.

        Operations enqueued while the flush was running are kept; operations
        removed meanwhile (clear, superseding delete) are not resurrected.
        """
        remaining = []
        for op in self._read_queue():
            if op.id in failed:
                remaining.append(failed[op.id])
            elif op.id not in finished:
                remaining.append(op)

        try:
            self._write_queue(remaining)
        except StorageError as e:
            logger.error(f"Failed to save offline queue: {e}")

    def _on_retry_timer(self):
        if self._is_online:
            return self.flush()
        return None

    def _retry_key(self, op_id: str) -> str:
        return f"{self.TIMER_PREFIX}retry:{op_id}"

    def _schedule_flush(self, delay: float = 0.0) -> None:
        try:
            self.scheduler.call_later(
                delay, self.flush, key=f"{self.TIMER_PREFIX}flush"
            )
        except RuntimeError:
            logger.debug("No running event loop; queued operations will flush later")

    def set_online(self, online: bool) -> None:
        """Record a connectivity transition. Coming online triggers a flush."""
        if online == self._is_online:
            return

        self._is_online = online
        if online:
            logger.info("Connection restored - processing offline queue")
        else:
            logger.info("Connection lost - queuing operations")
        self.publisher.publish()

        if online:
            self._schedule_flush()

    async def force_retry(self) -> None:
        """Flush now if online and idle, ignoring backoff windows."""
        if self._is_online and not self._is_processing:
            logger.info("Force retrying all queued operations")
            await self.flush(force=True)

    def start(self, delay: float = 2.0) -> None:
        """Begin processing: flush whatever a previous run left behind."""
        if self._is_online and self.size() > 0:
            self._schedule_flush(delay)

    def clear(self) -> None:
        """Drop every queued operation and cancel pending retries."""
        try:
            self._write_queue([])
        except StorageError as e:
            logger.error(f"Failed to clear offline queue: {e}")
        self._cancel_timers()
        self._last_error = None
        self.publisher.publish()
        logger.info("Offline queue cleared")

    def close(self) -> None:
        """Cancel timers and detach subscribers. Queued data stays persisted."""
        self._cancel_timers()
        self.publisher.clear()

    def _cancel_timers(self) -> None:
        for key in self.scheduler.pending_keys():
            if key.startswith(self.TIMER_PREFIX):
                self.scheduler.cancel(key)

    def operations(self) -> List[QueuedOperation]:
        """Active (unexpired) queued operations, oldest first."""
        return self._read_queue()

    def size(self) -> int:
        return len(self._read_queue())

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _compute_status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self._is_online,
            queue_size=self.size(),
            processing=self._is_processing,
            last_sync_time=self._last_sync_time(),
            last_error=self._last_error,
        )

    def get_status(self) -> SyncStatus:
        return self.publisher.get_status()

    def subscribe(self, listener: StatusListener) -> Unsubscribe:
        return self.publisher.subscribe(listener)
