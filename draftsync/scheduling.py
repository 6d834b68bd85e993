"""Clocks and timer scheduling.

Every delay in the package (queue retry timers, save backoff sleeps, cache
expiry) goes through one Scheduler so tests can swap in ManualScheduler and
step virtual time deterministically.
"""

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


class Clock(ABC):
    """Source of wall-clock time in seconds since the epoch."""

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""

    def now_ms(self) -> int:
        return int(self.now() * 1000)


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    def set(self, value: float) -> None:
        self._now = value


class Scheduler(ABC):
    """Single timer facility with keyed, cancellable callbacks."""

    clock: Clock

    @abstractmethod
    def call_later(
        self, delay: float, callback: TimerCallback, key: Optional[str] = None
    ) -> None:
        """Run ``callback`` after ``delay`` seconds.

        Coroutine functions are awaited as tasks. Scheduling with a ``key``
        that already has a pending timer replaces that timer.
        """

    @abstractmethod
    def cancel(self, key: str) -> bool:
        """Cancel the pending timer for ``key``. Returns True if one existed."""

    @abstractmethod
    def cancel_all(self) -> None:
        """Cancel every pending timer."""

    @abstractmethod
    def pending_keys(self) -> List[str]:
        """Keys of timers that have not fired yet."""

    @abstractmethod
    async def sleep(self, delay: float) -> None:
        """Suspend the caller for ``delay`` seconds."""


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._anonymous = itertools.count()

    def call_later(
        self, delay: float, callback: TimerCallback, key: Optional[str] = None
    ) -> None:
        loop = asyncio.get_running_loop()
        key = key or f"_anon_{next(self._anonymous)}"
        self.cancel(key)

        def fire() -> None:
            self._handles.pop(key, None)
            result = callback()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

        self._handles[key] = loop.call_later(max(delay, 0.0), fire)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Scheduled task failed: {task.exception()!r}")

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()

    def pending_keys(self) -> List[str]:
        return list(self._handles)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


@dataclass(order=True)
class _Timer:
    due: float
    seq: int
    key: str = field(compare=False)
    callback: TimerCallback = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class ManualScheduler(Scheduler):
    """Virtual-time scheduler for deterministic tests.

    Nothing fires until ``advance`` or ``run_pending`` is awaited. ``sleep``
    records the requested delay and advances virtual time by it.
    """

    def __init__(self, clock: ManualClock | None = None):
        self.clock = clock or ManualClock()
        self._timers: List[_Timer] = []
        self._by_key: Dict[str, _Timer] = {}
        self._seq = itertools.count()
        self.sleeps: List[float] = []
        self.fired: List[tuple[str, float]] = []

    def call_later(
        self, delay: float, callback: TimerCallback, key: Optional[str] = None
    ) -> None:
        seq = next(self._seq)
        key = key or f"_anon_{seq}"
        self.cancel(key)
        timer = _Timer(self.clock.now() + max(delay, 0.0), seq, key, callback)
        heapq.heappush(self._timers, timer)
        self._by_key[key] = timer

    def cancel(self, key: str) -> bool:
        timer = self._by_key.pop(key, None)
        if timer is None:
            return False
        timer.cancelled = True
        return True

    def cancel_all(self) -> None:
        for timer in self._by_key.values():
            timer.cancelled = True
        self._by_key.clear()
        self._timers.clear()

    def pending_keys(self) -> List[str]:
        return list(self._by_key)

    def next_due(self) -> float | None:
        """Virtual time at which the earliest pending timer fires."""
        self._discard_cancelled()
        return self._timers[0].due if self._timers else None

    def _discard_cancelled(self) -> None:
        while self._timers and self._timers[0].cancelled:
            heapq.heappop(self._timers)

    async def advance(self, seconds: float) -> None:
        """Move virtual time forward, firing due timers in order."""
        target = self.clock.now() + seconds
        while True:
            self._discard_cancelled()
            if not self._timers or self._timers[0].due > target:
                break
            timer = heapq.heappop(self._timers)
            self._by_key.pop(timer.key, None)
            if timer.due > self.clock.now():
                self.clock.set(timer.due)
            self.fired.append((timer.key, timer.due))
            result = timer.callback()
            if inspect.isawaitable(result):
                await result
        self.clock.set(target)

    async def run_pending(self) -> None:
        """Fire every timer that is already due without moving time."""
        await self.advance(0)

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        await self.advance(delay)
