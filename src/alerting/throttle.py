"""ThrottleGate — per-rule rolling counters that cap alert creation."""

from __future__ import annotations

from collections import deque

from src.core.types import AlertRule


class ThrottleGate:
    """Caps how many alerts one rule may create inside its throttle period.

    Each rule keeps a deque of recent creation timestamps; ``admit`` prunes
    expired entries and checks-and-records in one synchronous call, so no
    other coroutine can interleave between the check and the record.
    """

    def __init__(self) -> None:
        self._recent: dict[str, deque[float]] = {}

    def _prune(self, rule: AlertRule, now: float) -> deque[float]:
        recent = self._recent.setdefault(rule.id, deque())
        cutoff = now - rule.throttling.period_minutes * 60.0
        while recent and recent[0] <= cutoff:
            recent.popleft()
        return recent

    def is_throttled(self, rule: AlertRule, now: float) -> bool:
        """True if the rule has reached its quota (does not record anything)."""
        if not rule.throttling.enabled:
            return False
        return len(self._prune(rule, now)) >= rule.throttling.max_alerts

    def admit(self, rule: AlertRule, now: float) -> bool:
        """Record a creation for *rule* unless it is over quota.

        Returns True if the caller may create a new alert.
        """
        if not rule.throttling.enabled:
            return True
        recent = self._prune(rule, now)
        if len(recent) >= rule.throttling.max_alerts:
            return False
        recent.append(now)
        return True

    def count(self, rule: AlertRule, now: float) -> int:
        """Alerts created by *rule* inside its current window."""
        return len(self._prune(rule, now))

    def reset(self, rule_id: str | None = None) -> None:
        if rule_id is None:
            self._recent.clear()
        else:
            self._recent.pop(rule_id, None)
