from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from autopilot.crm.errors import MutationBudgetExceededError
from autopilot.timeutils import day_key

READ_METHODS = frozenset({"GET"})


class DispatchLimiter:
    """Caps in-flight CRM calls and spaces consecutive dispatches.

    Shared by every caller in the process; a slot is held for the full
    lifetime of one logical call, retries included.
    """

    def __init__(
        self,
        max_concurrent: int,
        min_time_ms: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_concurrent <= 0:
            raise ValueError(f"max_concurrent must be positive, got {max_concurrent}")
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._admission = threading.Lock()
        self._min_interval = max(0, min_time_ms) / 1000.0
        self._next_dispatch_at = 0.0
        self._clock = clock
        self._sleep = sleep

    @contextmanager
    def slot(self) -> Iterator[None]:
        self._slots.acquire()
        try:
            with self._admission:
                now = self._clock()
                wait = self._next_dispatch_at - now
                if wait > 0:
                    self._sleep(wait)
                    now += wait
                self._next_dispatch_at = now + self._min_interval
            yield
        finally:
            self._slots.release()


class MutationBudget:
    """Per-UTC-day counter of non-read CRM calls."""

    def __init__(self, daily_limit: int, *, today: Callable[[], str] = day_key) -> None:
        self.daily_limit = daily_limit
        self._today = today
        self._lock = threading.Lock()
        self._usage: dict[str, int] = {}

    def consume(self, method: str, path: str) -> None:
        if method.upper() in READ_METHODS:
            return

        key = self._today()
        with self._lock:
            for stale_key in [existing for existing in self._usage if existing != key]:
                del self._usage[stale_key]
            current = self._usage.get(key, 0)
            if current >= self.daily_limit:
                raise MutationBudgetExceededError(method, path, self.daily_limit)
            self._usage[key] = current + 1

    def used(self) -> int:
        with self._lock:
            return self._usage.get(self._today(), 0)

    def reset(self) -> None:
        with self._lock:
            self._usage.clear()
