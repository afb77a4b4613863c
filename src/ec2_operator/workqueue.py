"""asyncio work queue with per-key serialization and backoff.

Semantics:
- A key waiting in the queue is never queued twice (notifications coalesce).
- A key being processed is never handed to a second worker; if it is added
  meanwhile it is marked dirty and re-queued when the worker calls done().
- Delayed adds keep only the earliest pending deadline per key.
- Rate-limited adds back off exponentially per key until forget().
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from collections.abc import Hashable
from typing import Generic, TypeVar

from .config import DEFAULT_RETRY_BACKOFF_BASE_SECONDS, DEFAULT_RETRY_BACKOFF_MAX_SECONDS

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)

# Fraction of the backoff added as random jitter
BACKOFF_JITTER_FRACTION = 0.2


class WorkQueue(Generic[K]):
    """De-duplicating, per-key serialized queue of object keys.

    Must be used from a single event loop. Blocking producers in other
    threads hand keys over with loop.call_soon_threadsafe(queue.add, key).
    """

    def __init__(
        self,
        *,
        backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS,
        jitter: bool = True,
    ) -> None:
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._jitter = jitter

        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._failures: dict[K, int] = {}
        self._timers: dict[K, asyncio.TimerHandle] = {}
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._shutting_down = False

    def __len__(self) -> int:
        """Number of keys ready to be handed out."""
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, key: K) -> bool:
        return key in self._processing

    def add(self, key: K) -> None:
        """Mark key as needing processing."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._wake_one()

    def add_after(self, key: K, delay: float) -> None:
        """Add key once delay seconds have elapsed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= deadline:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(deadline, self._fire_timer, key)

    def add_rate_limited(self, key: K) -> float:
        """Add key after its per-key backoff delay. Returns the delay used."""
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = self.backoff_delay(failures)
        logger.debug(
            "Requeueing with backoff",
            extra={"key": str(key), "failures": failures, "delay_seconds": delay},
        )
        self.add_after(key, delay)
        return delay

    def backoff_delay(self, failures: int) -> float:
        """Exponential backoff for the given failure count, capped, with jitter."""
        exponent = max(failures - 1, 0)
        # Cap the exponent to avoid float overflow on long failure streaks
        backoff = min(self._backoff_base * (2 ** min(exponent, 62)), self._backoff_max)
        if self._jitter:
            backoff += random.uniform(0, backoff * BACKOFF_JITTER_FRACTION)
        return backoff

    def forget(self, key: K) -> None:
        """Reset the backoff of key after a successful pass."""
        self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> K | None:
        """Wait for the next key. Returns None once the queue is shut down."""
        while not self._queue:
            if self._shutting_down:
                return None
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                elif self._queue:
                    # Woken but cancelled before running: pass the wakeup on
                    self._wake_one()
                raise

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: K) -> None:
        """Release key after processing; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._wake_one()

    def shut_down(self) -> None:
        """Stop handing out keys and wake every waiting consumer."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.clear()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    def _fire_timer(self, key: K) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def _wake_one(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
