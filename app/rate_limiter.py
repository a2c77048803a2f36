"""Per-client fixed-window admission control.

Window Lifecycle
================
::
    allow(ip)
        │
        ▼
    ┌──────────────────────┐   no / elapsed   ┌────────────────────────┐
    │ visitor in table and │ ───────────────▶ │ new window, count = 1  │──▶ admit
    │ window still open?   │                  └────────────────────────┘
    └──────────┬───────────┘
               │ yes
               ▼
    ┌──────────────────────┐   yes   ┌───────────────┐
    │ count < rate ?       │ ──────▶ │ count += 1    │──▶ admit
    └──────────┬───────────┘         └───────────────┘
               │ no
               ▼
            reject

Key Behaviours
===============
- State lives only in process memory and is lost on restart.
- One lock covers both ``allow`` and ``sweep``.
- ``sweep`` drops visitors whose window has elapsed, so memory is bounded by the
  number of clients active within one window.
- Callers depend on ``RateLimitBackend`` only. Running several instances behind a
  load balancer makes limits per instance; to share them, implement ``allow`` as an
  atomic ``INCR`` + ``EXPIRE`` on a ``(client, window)`` key in Redis and pass that
  object to ``add_rate_limit_middleware`` instead.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

__all__ = ["InMemoryRateLimiter", "RateLimitBackend"]

logger = logging.getLogger("shortcode")


class RateLimitBackend(Protocol):
    def allow(self, client: str) -> bool: ...


@dataclass
class _Visitor:
    requests: int
    reset_at: float


class InMemoryRateLimiter:
    """Allow ``rate`` requests per ``window`` seconds for each client key."""

    def __init__(self, rate: int, window: float, clock: Callable[[], float] = time.monotonic):
        if rate < 1:
            raise ValueError(f"rate must be positive, got {rate!r}")
        if window <= 0:
            raise ValueError(f"window must be positive, got {window!r}")
        self.rate = rate
        self.window = window
        self._clock = clock
        self._visitors: dict[str, _Visitor] = {}
        self._lock = threading.Lock()

    def allow(self, client: str) -> bool:
        with self._lock:
            now = self._clock()
            visitor = self._visitors.get(client)

            if visitor is None or now > visitor.reset_at:
                self._visitors[client] = _Visitor(requests=1, reset_at=now + self.window)
                return True

            if visitor.requests < self.rate:
                visitor.requests += 1
                return True

            return False

    def sweep(self) -> int:
        """Remove visitors whose window has elapsed; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [client for client, visitor in self._visitors.items() if now > visitor.reset_at]
            for client in expired:
                del self._visitors[client]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._visitors)

    async def run_sweeper(self, interval: float = 60.0) -> None:
        """Sweep forever every ``interval`` seconds; cancel the task to stop it."""
        while True:
            await asyncio.sleep(interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Rate limiter swept {removed} idle visitors")
