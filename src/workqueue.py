"""
Work queue and retry backoff.

The queue guarantees that a key is never handed to two workers at once:
re-adding a key while it is being processed defers it until the worker
calls ``done``.
"""

import asyncio
import logging
import random
from collections import deque
from typing import Callable, Deque, Hashable, Optional, Set

logger = logging.getLogger(__name__)

MAX_BACKOFF_EXPONENT = 30


def backoff_delay(
    retry_count: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retrying after ``retry_count`` consecutive failures.

    Doubles from ``base_delay`` and is capped at ``max_delay``. Jitter only
    ever lengthens the delay and never past the cap, so successive delays
    never shrink.
    """
    exponent = min(max(retry_count - 1, 0), MAX_BACKOFF_EXPONENT)
    delay = min(base_delay * (2**exponent), max_delay)
    if jitter_factor > 0:
        delay = min(delay * (1 + rand() * jitter_factor), max_delay)
    return delay


class WorkQueue:
    """
    Deduplicating FIFO of keys for a pool of workers.

    A key is in at most one of three states: queued, processing, or
    processing with a pending re-run (dirty).
    """

    def __init__(self):
        self._queue: Deque[Hashable] = deque()
        self._queued: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._dirty: Set[Hashable] = set()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._cond = asyncio.Condition()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, key: Hashable) -> bool:
        return key in self._processing

    def add(self, key: Hashable) -> None:
        """Queue ``key`` unless it is already queued."""
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        asyncio.ensure_future(self._notify())

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()

        def fire():
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    async def get(self) -> Optional[Hashable]:
        """
        Wait for the next key and mark it as processing.

        Returns:
            The key, or None once the queue is shut down.
        """
        async with self._cond:
            while not self._queue and not self._shutting_down:
                await self._cond.wait()
            if self._shutting_down:
                return None
            key = self._queue.popleft()
            self._queued.discard(key)
            self._processing.add(key)
            return key

    def done(self, key: Hashable) -> None:
        """Mark ``key`` as processed, re-queueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    async def shutdown(self) -> None:
        """Release all waiting workers and drop pending timers."""
        self._shutting_down = True
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        await self._notify(all_waiters=True)

    async def _notify(self, all_waiters: bool = False) -> None:
        async with self._cond:
            if all_waiters:
                self._cond.notify_all()
            else:
                self._cond.notify()
