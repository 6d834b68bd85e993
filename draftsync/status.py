"""Publish/subscribe broadcaster for sync status."""

import itertools
import logging
from typing import Callable, Dict

from .models import SyncStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[SyncStatus], None]
Unsubscribe = Callable[[], None]


class StatusPublisher:
    """Single authoritative view of sync state for external consumers.

    The status itself is not stored here: ``status_provider`` recomputes it
    from the queue and connectivity on every read, so a snapshot can never
    drift from the state it describes.
    """

    def __init__(self, status_provider: Callable[[], SyncStatus]):
        self._status_provider = status_provider
        self._listeners: Dict[int, StatusListener] = {}
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def get_status(self) -> SyncStatus:
        return self._status_provider()

    def subscribe(self, listener: StatusListener) -> Unsubscribe:
        """Register ``listener`` and immediately send it the current status.

        Returns:
            A function that removes the listener. Calling it more than once
            is harmless.
        """
        subscriber_id = next(self._ids)
        self._listeners[subscriber_id] = listener
        self._deliver(subscriber_id, listener, self.get_status())

        def unsubscribe() -> None:
            self._listeners.pop(subscriber_id, None)

        return unsubscribe

    def publish(self) -> SyncStatus:
        """Recompute the status and send it to every subscriber."""
        status = self.get_status()
        for subscriber_id, listener in list(self._listeners.items()):
            self._deliver(subscriber_id, listener, status)
        return status

    def clear(self) -> None:
        self._listeners.clear()

    def _deliver(
        self, subscriber_id: int, listener: StatusListener, status: SyncStatus
    ) -> None:
        try:
            listener(status)
        except Exception as e:
            logger.error(f"Status listener {subscriber_id} failed: {e}")
