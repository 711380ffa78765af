from __future__ import annotations

from collections import deque
import threading
from typing import Generic, Hashable, TypeVar

DEFAULT_BASE_DELAY_SECONDS = 0.005
DEFAULT_MAX_DELAY_SECONDS = 1000.0
K = TypeVar("K", bound=Hashable)


class ItemExponentialFailureRateLimiter(Generic[K]):
    """Per-item exponential backoff: ``base * 2**failures`` capped at ``max_delay``."""

    def __init__(
        self,
        *,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    ) -> None:
        if base_delay_seconds < 0 or max_delay_seconds < 0:
            raise ValueError("backoff delays must be >= 0")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._failures: dict[K, int] = {}
        self._lock = threading.Lock()

    def when(self, item: K) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        if exponent > 64:
            return self.max_delay_seconds
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)

    def num_requeues(self, item: K) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: K) -> None:
        with self._lock:
            self._failures.pop(item, None)


class RateLimitingQueue(Generic[K]):
    """Deduplicating work queue with delayed and rate-limited adds.

    An item is handed to at most one consumer at a time: adding an item that is being
    processed marks it dirty and it is queued again once ``done`` is called.
    """

    def __init__(self, rate_limiter: ItemExponentialFailureRateLimiter[K] | None = None) -> None:
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self._condition = threading.Condition()
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._timers: set[threading.Timer] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._condition:
            return len(self._queue)

    def add(self, item: K) -> None:
        with self._condition:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._condition.notify()

    def get(self, timeout: float | None = None) -> tuple[K | None, bool]:
        """Block until an item is available; the flag is True once the queue shut down."""
        with self._condition:
            if not self._queue and not self._shutting_down:
                self._condition.wait_for(lambda: self._queue or self._shutting_down, timeout=timeout)
            if not self._queue:
                return None, self._shutting_down
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: K) -> None:
        with self._condition:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._condition.notify()

    def add_after(self, item: K, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(item)
            return

        with self._condition:
            if self._shutting_down:
                return
            timer = threading.Timer(delay_seconds, self._fire_timer, args=(item,))
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def add_rate_limited(self, item: K) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: K) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: K) -> int:
        return self.rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        with self._condition:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._condition.notify_all()
        for timer in timers:
            timer.cancel()

    def shutting_down(self) -> bool:
        with self._condition:
            return self._shutting_down

    def _fire_timer(self, item: K) -> None:
        with self._condition:
            self._timers = {timer for timer in self._timers if timer.is_alive() and timer is not threading.current_thread()}
        self.add(item)
