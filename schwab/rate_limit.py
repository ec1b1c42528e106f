from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from schwab.errors import Cancelled

RATE_CAPACITY = int(os.getenv("SCHWAB_RATE_CAPACITY", "120"))
RATE_REFILL = int(os.getenv("SCHWAB_RATE_REFILL", "1"))
RATE_INTERVAL = float(os.getenv("SCHWAB_RATE_INTERVAL", "0.5"))  # seconds
CANCEL_POLL_S = 0.1

log = logging.getLogger("schwab.rate_limit")


class RateLimiter:
    """Token bucket shared by every outbound API call.

    ``refill_amount`` tokens are added every ``refill_interval`` seconds, up
    to ``capacity``. Callers never get rejected; they queue and are admitted
    strictly in arrival order. Thread-safe.
    """

    def __init__(self,
                 capacity: int = RATE_CAPACITY,
                 refill_amount: int = RATE_REFILL,
                 refill_interval: float = RATE_INTERVAL,
                 clock: Callable[[], float] = time.monotonic):
        if capacity < 1 or refill_amount < 1 or refill_interval <= 0:
            raise ValueError("capacity and refill_amount must be >= 1 and refill_interval > 0")
        self.capacity = capacity
        self.refill_amount = refill_amount
        self.refill_interval = refill_interval
        self._clock = clock
        self._tokens = capacity
        self._last_refill = clock()
        self._cond = threading.Condition()
        self._queue: Deque[object] = deque()

    @property
    def available(self) -> int:
        """Tokens currently in the bucket (after applying any pending refill)."""
        with self._cond:
            self._refill(self._clock())
            return self._tokens

    @property
    def waiting(self) -> int:
        with self._cond:
            return len(self._queue)

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed < self.refill_interval:
            return
        ticks = int(elapsed // self.refill_interval)
        self._tokens = min(self.capacity, self._tokens + ticks * self.refill_amount)
        self._last_refill += ticks * self.refill_interval

    def acquire(self, n: int = 1, cancel: Optional[threading.Event] = None) -> None:
        """Block until ``n`` tokens are taken, or raise ``Cancelled`` once ``cancel`` is set."""
        if n < 1 or n > self.capacity:
            raise ValueError(f"n must be between 1 and capacity ({self.capacity}), got {n}")

        ticket = object()
        with self._cond:
            self._queue.append(ticket)
            try:
                waited = False
                while True:
                    if cancel is not None and cancel.is_set():
                        raise Cancelled("rate limiter wait cancelled")
                    now = self._clock()
                    self._refill(now)
                    at_head = self._queue[0] is ticket
                    if at_head and self._tokens >= n:
                        self._tokens -= n
                        if waited:
                            log.debug("Rate limiter admitted request after waiting (%d left)", self._tokens)
                        return
                    waited = True
                    timeout = CANCEL_POLL_S
                    if at_head:
                        timeout = min(timeout, max(0.0, self._last_refill + self.refill_interval - now))
                    self._cond.wait(timeout=timeout)
            finally:
                self._queue.remove(ticket)
                self._cond.notify_all()


__all__ = ["RateLimiter", "RATE_CAPACITY", "RATE_REFILL", "RATE_INTERVAL"]
