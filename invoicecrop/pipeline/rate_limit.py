"""
Call limiter for the vision model.

The upstream model has its own quota, unrelated to how many pages we are
willing to process at once, so model calls pass through a limiter that
bounds in-flight calls and optionally spaces call starts apart.
"""

import threading
import time
from typing import Callable, Optional


class RateLimiter:
    """
    Bound concurrent calls and enforce a minimum interval between starts.

    Usage::

        limiter = RateLimiter(max_concurrent=2, min_interval=0.5)
        with limiter:
            text = model.call(image, prompt)
    """

    def __init__(
        self,
        max_concurrent: int = 1,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        if min_interval < 0:
            raise ValueError(f"min_interval must be >= 0, got {min_interval}")

        self.max_concurrent = max_concurrent
        self.min_interval = min_interval
        self._semaphore = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._next_start: Optional[float] = None
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(cls, config) -> "RateLimiter":
        return cls(
            max_concurrent=config.max_concurrent_calls,
            min_interval=config.min_interval_seconds,
        )

    def acquire(self) -> None:
        self._semaphore.acquire()
        if self.min_interval <= 0:
            return

        # Reserve a start slot under the lock, then sleep outside it
        with self._lock:
            now = self._clock()
            start = now if self._next_start is None else max(now, self._next_start)
            self._next_start = start + self.min_interval
        delay = start - now
        if delay > 0:
            self._sleep(delay)

    def release(self) -> None:
        self._semaphore.release()

    def __enter__(self) -> "RateLimiter":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
