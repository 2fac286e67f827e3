from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable

from tagger.src.metrics import METRICS

# Past this exponent the delay is always the cap; larger powers overflow the float product.
_MAX_BACKOFF_EXPONENT = 62


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base * 2**failures`` capped at ``max_delay``.

    Every call to :meth:`when` counts as one more failure for the key, so
    consecutive calls without an intervening :meth:`forget` never return a
    shorter delay than the previous one.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: float = 60.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        if exponent > _MAX_BACKOFF_EXPONENT:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**exponent))

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: str) -> None:
        with self._lock:
            self._failures.pop(item, None)


class RateLimitingQueue:
    """Deduplicating FIFO of string keys with delayed and rate-limited adds.

    Bookkeeping mirrors the classic controller work queue:

    ``_queue``
        Keys ready for :meth:`get`, in insertion order.
    ``_dirty``
        Keys that need processing.  A key is never queued twice while dirty.
    ``_processing``
        Keys handed out by :meth:`get` and not yet marked :meth:`done`.  A
        dirty key that is also processing stays out of ``_queue`` until
        ``done`` so two workers never hold the same key.
    ``_waiting``
        Delayed keys mapped to the monotonic time they become ready.  Delayed
        keys are promoted lazily by :meth:`get`, which sleeps no longer than
        the earliest ready time.
    """

    def __init__(
        self,
        rate_limiter: ItemExponentialFailureRateLimiter | None = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self.name = name
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: dict[str, float] = {}
        self._shutting_down = False
        METRICS.queue_depth.labels(name=name).set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, item: str) -> None:
        with self._cond:
            self._add_locked(item)

    def _add_locked(self, item: str) -> None:
        if self._shutting_down or item in self._dirty:
            return
        METRICS.queue_adds_total.labels(name=self.name).inc()
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        METRICS.queue_depth.labels(name=self.name).set(len(self._queue))
        self._cond.notify()

    def add_after(self, item: str, delay: float) -> None:
        """Add *item* once *delay* seconds have passed.

        If the key is already waiting, the earlier of the two ready times is
        kept so repeated delayed adds collapse into one pending entry.
        """
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(item)
                return
            ready_at = self._clock() + delay
            existing = self._waiting.get(item)
            if existing is None or ready_at < existing:
                self._waiting[item] = ready_at
            self._cond.notify_all()

    def add_rate_limited(self, item: str) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: str) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return self.rate_limiter.num_requeues(item)

    def _promote_ready_locked(self) -> float | None:
        """Move due waiting keys into the queue; return seconds until the next one."""
        if not self._waiting:
            return None
        now = self._clock()
        next_ready: float | None = None
        for item, ready_at in list(self._waiting.items()):
            if ready_at <= now:
                del self._waiting[item]
                self._add_locked(item)
            elif next_ready is None or ready_at < next_ready:
                next_ready = ready_at
        return None if next_ready is None else next_ready - now

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is ready; return ``(key, shutting_down)``.

        Once :meth:`shut_down` is called every pending and future call
        returns ``(None, True)`` immediately.
        """
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                wait_for = self._promote_ready_locked()
                if self._queue:
                    break
                self._cond.wait(timeout=wait_for)

            item = self._queue.popleft()
            METRICS.queue_depth.labels(name=self.name).set(len(self._queue))
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: str) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                METRICS.queue_depth.labels(name=self.name).set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._cond.notify_all()
