"""Per-channel delivery rate limiting (hourly cap plus cooldown)."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable

from src.core.config import RateLimitPolicy

_HOUR_SECS = 3600.0


class ChannelRateLimiter:
    """Sliding one-hour window capped at ``max_alerts_per_hour``.

    An attempt that would exceed the cap mutes the channel for
    ``cooldown_minutes``; while muted every attempt is refused. A cap of 0
    means no hourly limit. Counters are guarded by the limiter's own lock.
    """

    def __init__(self, policy: RateLimitPolicy, clock: Callable[[], float] = time.time) -> None:
        self._policy = policy
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sent: deque[float] = deque()
        self._muted_until = 0.0

    async def acquire(self) -> bool:
        """Consume one delivery slot. Returns False when rate-limited."""
        if not self._policy.enabled or self._policy.max_alerts_per_hour == 0:
            return True
        async with self._lock:
            now = self._clock()
            if now < self._muted_until:
                return False
            cutoff = now - _HOUR_SECS
            while self._sent and self._sent[0] <= cutoff:
                self._sent.popleft()
            if len(self._sent) >= self._policy.max_alerts_per_hour:
                self._muted_until = now + self._policy.cooldown_minutes * 60.0
                return False
            self._sent.append(now)
            return True

    @property
    def muted_until(self) -> float:
        return self._muted_until

    def sent_in_window(self) -> int:
        cutoff = self._clock() - _HOUR_SECS
        return sum(1 for t in self._sent if t > cutoff)


class RateLimiterRegistry:
    """Hands out one ChannelRateLimiter per channel id."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._limiters: dict[str, ChannelRateLimiter] = {}

    def get(self, channel_id: str, policy: RateLimitPolicy) -> ChannelRateLimiter:
        limiter = self._limiters.get(channel_id)
        if limiter is None:
            limiter = ChannelRateLimiter(policy, self._clock)
            self._limiters[channel_id] = limiter
        return limiter
