"""
Fixed-window request throttling per caller and route.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import RateLimited
from ..storage.store import MemoryStore, Store


@dataclass(frozen=True)
class RateDecision:
    """Result of counting one request."""
    allowed: bool
    count: int
    reset_at: float
    retry_after_seconds: int = 0


class RateLimiter:
    """Counts requests in fixed windows keyed by (caller, route).

    Counters default to an in-process store; window state is kept as an
    absolute ``reset_at`` timestamp so a window restarts on the first
    request at or after it.
    """

    def __init__(self, store: Optional[Store] = None, clock: Callable[[], float] = time.time):
        self.store = store or MemoryStore(clock)
        self._clock = clock

    def hit(self, caller: str, route: str, max_requests: int, window_seconds: float) -> RateDecision:
        """Count one request and decide whether it may proceed."""
        now = self._clock()

        def _count(current):
            if current is None or now >= current["reset_at"]:
                return {"count": 1, "reset_at": now + window_seconds}
            return {"count": current["count"] + 1, "reset_at": current["reset_at"]}

        ttl = int(math.ceil(window_seconds)) + 1
        entry = self.store.update(f"rate:{caller}:{route}", _count, ttl)
        if entry["count"] > max_requests:
            retry_after = max(1, int(math.ceil(entry["reset_at"] - now)))
            return RateDecision(False, entry["count"], entry["reset_at"], retry_after)
        return RateDecision(True, entry["count"], entry["reset_at"])

    def check(self, caller: str, route: str, max_requests: int, window_seconds: float) -> RateDecision:
        """Like ``hit`` but raises when the request is over the limit.

        Raises:
            RateLimited: Carrying the retry-after hint in seconds
        """
        decision = self.hit(caller, route, max_requests, window_seconds)
        if not decision.allowed:
            raise RateLimited(
                f"Too many requests, retry in {decision.retry_after_seconds}s",
                retry_after_seconds=decision.retry_after_seconds,
            )
        return decision
