"""Deduplicating, rate-limited work queue keyed by object identity.

Processing rules (single-flight):
- A key is held at most once in the queue.
- A key being processed is never handed to a second worker. Adding it again
  marks it dirty; it is re-queued exactly once when ``done`` is called, no
  matter how many times it was added meanwhile.
- Failed keys come back through ``add_rate_limited`` after an exponential
  backoff, so failing objects neither starve healthy ones nor hot-loop
  against a degraded automation server.

The queue is asyncio-native: all state lives on the event loop thread.
Other threads must use ``add_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

from .config import (
    DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS,
    DEFAULT_RATE_LIMIT_BURST,
    DEFAULT_RATE_LIMIT_MAX_DELAY_SECONDS,
    DEFAULT_RATE_LIMIT_QPS,
)

logger = logging.getLogger(__name__)

DRAIN_POLL_INTERVAL_SECONDS = 0.01

# 2**exp overflows float long before this; the cap applies anyway
MAX_BACKOFF_EXPONENT = 62


# =============================================================================
# Rate limiters
# =============================================================================


class RateLimiter(Protocol):
    """Decides how long a key waits before it is retried."""

    def when(self, item: str) -> float:
        """Record a failure for ``item`` and return the delay in seconds."""
        ...

    def forget(self, item: str) -> None:
        """Reset the failure history of ``item``."""
        ...

    def num_requeues(self, item: str) -> int:
        ...


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base * 2**failures``, capped.

    The number of retries is unbounded.
    """

    def __init__(
        self,
        base_delay: float = DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_RATE_LIMIT_MAX_DELAY_SECONDS,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if max_delay < base_delay:
            raise ValueError("max_delay must not be lower than base_delay")
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: dict[str, int] = {}

    def when(self, item: str) -> float:
        exp = self._failures.get(item, 0)
        self._failures[item] = exp + 1
        if exp > MAX_BACKOFF_EXPONENT:
            return self._max_delay
        return min(self._base_delay * (2**exp), self._max_delay)

    def forget(self, item: str) -> None:
        self._failures.pop(item, None)

    def num_requeues(self, item: str) -> int:
        return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by all keys.

    Each call reserves one token; when the bucket is empty the returned delay
    is the time until the reserved token becomes available.
    """

    def __init__(
        self,
        qps: float = DEFAULT_RATE_LIMIT_QPS,
        burst: int = DEFAULT_RATE_LIMIT_BURST,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0 or burst < 1:
            raise ValueError("qps must be positive and burst at least 1")
        self._qps = qps
        self._burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item: str) -> float:
        now = self._clock()
        self._tokens = min(float(self._burst), self._tokens + (now - self._last) * self._qps)
        self._last = now
        self._tokens -= 1.0
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self._qps

    def forget(self, item: str) -> None:
        pass

    def num_requeues(self, item: str) -> int:
        return 0


class MaxOfRateLimiter:
    """Combines limiters by taking the longest delay."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self._limiters = limiters

    def when(self, item: str) -> float:
        return max(limiter.when(item) for limiter in self._limiters)

    def forget(self, item: str) -> None:
        for limiter in self._limiters:
            limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return max(limiter.num_requeues(item) for limiter in self._limiters)


def default_controller_rate_limiter(
    base_delay: float = DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_RATE_LIMIT_MAX_DELAY_SECONDS,
) -> MaxOfRateLimiter:
    """Per-key exponential backoff combined with an overall token bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(DEFAULT_RATE_LIMIT_QPS, DEFAULT_RATE_LIMIT_BURST),
    )


# =============================================================================
# Queue
# =============================================================================


class RateLimitingQueue:
    """Single-flight work queue with delayed and rate-limited adds."""

    def __init__(self, rate_limiter: RateLimiter | None = None, name: str = "jobsync") -> None:
        self.name = name
        self._rate_limiter: RateLimiter = rate_limiter or default_controller_rate_limiter()

        self._queue: deque[str] = deque()
        # Keys that need processing: queued, or re-added while processing
        self._dirty: set[str] = set()
        self._processing: set[str] = set()

        self._waiters: deque[asyncio.Future[None]] = deque()
        self._delayed: dict[str, tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False
        self._loop: asyncio.AbstractEventLoop | None = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, item: str) -> bool:
        return item in self._processing

    def is_dirty(self, item: str) -> bool:
        return item in self._dirty

    @property
    def delayed_count(self) -> int:
        return len(self._delayed)

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the queue to the loop that owns it."""
        self._loop = loop

    def add(self, item: str) -> None:
        """Mark ``item`` as needing processing."""
        self._capture_loop()
        if self._shutting_down:
            return
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            # Re-delivered once by done()
            return
        self._queue.append(item)
        self._wake_one()

    def add_threadsafe(self, item: str) -> None:
        """``add`` from a thread other than the queue's event loop."""
        if self._loop is None:
            raise RuntimeError(f"Queue '{self.name}' is not bound to an event loop")
        self._loop.call_soon_threadsafe(self.add, item)

    async def get(self) -> tuple[str | None, bool]:
        """Block until a key is available.

        Returns:
            ``(key, False)``, or ``(None, True)`` once the queue is shut down.
        """
        loop = self._capture_loop()
        assert loop is not None
        while not self._queue and not self._shutting_down:
            waiter: asyncio.Future[None] = loop.create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                elif self._queue:
                    # We consumed a wake-up we will not act on; pass it on
                    self._wake_one()
                raise

        if self._shutting_down:
            return None, True

        item = self._queue.popleft()
        self._processing.add(item)
        self._dirty.discard(item)
        return item, False

    def done(self, item: str) -> None:
        """Finish processing ``item``; re-queue it if it was added meanwhile."""
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.append(item)
            self._wake_one()

    # -------------------------------------------------------------------------
    # Delays and rate limiting
    # -------------------------------------------------------------------------

    def add_after(self, item: str, delay: float) -> None:
        """Add ``item`` once ``delay`` seconds have passed.

        Only the earliest pending delay per key is kept.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        loop = self._capture_loop()
        if loop is None:
            raise RuntimeError(f"Queue '{self.name}' is not bound to an event loop")

        ready_at = loop.time() + delay
        pending = self._delayed.get(item)
        if pending is not None:
            if pending[0] <= ready_at:
                return
            pending[1].cancel()

        handle = loop.call_later(delay, self._fire_delayed, item)
        self._delayed[item] = (ready_at, handle)

    def add_rate_limited(self, item: str) -> None:
        """Add ``item`` after the rate limiter says it may be retried."""
        delay = self._rate_limiter.when(item)
        logger.debug(
            "Requeueing with backoff",
            extra={"queue": self.name, "key": item, "delay_seconds": delay},
        )
        self.add_after(item, delay)

    def forget(self, item: str) -> None:
        """Stop tracking failures for ``item``."""
        self._rate_limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return self._rate_limiter.num_requeues(item)

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def shut_down(self) -> None:
        """Stop handing out keys; blocked and future ``get`` calls return at once."""
        if self._shutting_down:
            return
        self._shutting_down = True
        for _, handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    async def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        """Shut down and wait for in-flight keys to be marked done.

        Returns:
            True if drained, False if the timeout expired first.
        """
        self.shut_down()
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._processing:
            if deadline is not None and loop.time() >= deadline:
                logger.warning(
                    "Queue drain timed out",
                    extra={"queue": self.name, "in_flight": sorted(self._processing)},
                )
                return False
            await asyncio.sleep(DRAIN_POLL_INTERVAL_SECONDS)
        return True

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _capture_loop(self) -> asyncio.AbstractEventLoop | None:
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                return None
        return self._loop

    def _wake_one(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def _fire_delayed(self, item: str) -> None:
        self._delayed.pop(item, None)
        self.add(item)
