"""
auth/ratelimit.py -- Per-identifier attempt limiter for sensitive endpoints.

Built on the `limits` library, the same engine slowapi uses for the
per-address limit in api/limiter.py. slowapi only keys on request attributes;
the login path needs to key on a value from the request body (the submitted
username), and needs an explicit clear() for successful logins and admin
unblocks, so the strategy is driven directly here.

Strategy: MovingWindowRateLimiter. Each hit is timestamped; a hit is accepted
only if fewer than max_attempts hits fall inside the trailing window. At the
cap, hit() returns False without recording, so the count can never exceed
max_attempts inside one window.

Concurrency: the storage performs the window test and the append as one
operation per key (MemoryStorage holds a per-key lock; Redis uses a Lua
script), so two concurrent checks can never both read count=4 and both
record the fifth hit.

Lifecycle: construct once per process and inject into the Guard. Nothing in
this module is global.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

logger = logging.getLogger("church.ratelimit")


@dataclass(frozen=True)
class RateLimitStatus:
    identifier: str
    remaining: int
    reset_at: float  # epoch seconds when the oldest counted hit leaves the window


class RateLimiter:
    """Moving-window limiter keyed by arbitrary identifier strings.

    Usage:
        limiter = RateLimiter(max_attempts=5, window_seconds=900)
        if not limiter.check("alice"):
            ...  # throttled
        limiter.clear("alice")
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        storage_uri: str = "memory://",
        namespace: str = "auth_attempts",
    ) -> None:
        if max_attempts < 1 or window_seconds < 1:
            raise ValueError("max_attempts and window_seconds must be positive")
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._storage = storage_from_string(storage_uri)
        self._strategy = MovingWindowRateLimiter(self._storage)
        self._item = RateLimitItemPerSecond(max_attempts, window_seconds, namespace=namespace)

    def check(self, identifier: str | None) -> bool:
        """Record an attempt for identifier and report whether it was allowed.

        An empty or missing identifier is refused outright.
        """
        if not identifier:
            return False
        allowed = self._strategy.hit(self._item, identifier)
        if not allowed:
            logger.info("Rate limit reached (%d per %ds)", self.max_attempts, self.window_seconds)
        return allowed

    def clear(self, identifier: str | None) -> None:
        """Forget every recorded attempt for identifier."""
        if identifier:
            self._strategy.clear(self._item, identifier)

    def status(self, identifier: str) -> RateLimitStatus:
        """Remaining attempts and reset time, without recording a hit."""
        stats = self._strategy.get_window_stats(self._item, identifier)
        return RateLimitStatus(identifier=identifier, remaining=stats.remaining, reset_at=stats.reset_time)

    def reset(self) -> None:
        """Drop every bucket. Used by tests and on administrative resets."""
        self._storage.reset()
