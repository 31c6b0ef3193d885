"""Escalation policy applicability (pure functions)."""

from __future__ import annotations

import datetime
from collections.abc import Iterable

from src.core.types import EscalationPolicy, PolicyConditions, TimeWindow


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def in_time_window(window: TimeWindow, now: datetime.datetime) -> bool:
    """True if *now* (UTC) falls inside *window*; ``start > end`` wraps midnight."""
    current = now.hour * 60 + now.minute
    start, end = _minutes(window.start), _minutes(window.end)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def day_of_week(now: datetime.datetime) -> int:
    """0 = Sunday .. 6 = Saturday."""
    return (now.weekday() + 1) % 7


def matches_conditions(
    conditions: PolicyConditions,
    severity: str,
    tags: Iterable[str] = (),
    services: Iterable[str] = (),
    now: float | None = None,
) -> bool:
    """Whether a subject with these attributes falls under *conditions*.

    An empty severity list matches every severity; tag and service lists
    only constrain when non-empty (any overlap is enough).
    """
    if conditions.severity and severity not in conditions.severity:
        return False
    if conditions.tags and not set(conditions.tags) & set(tags):
        return False
    if conditions.services and not set(conditions.services) & set(services):
        return False

    if conditions.time_of_day is None and conditions.days_of_week is None:
        return True

    moment = (
        datetime.datetime.now(datetime.UTC)
        if now is None
        else datetime.datetime.fromtimestamp(now, tz=datetime.UTC)
    )
    if conditions.time_of_day is not None and not in_time_window(conditions.time_of_day, moment):
        return False
    if conditions.days_of_week is not None and day_of_week(moment) not in conditions.days_of_week:
        return False
    return True


def find_policy(
    policies: Iterable[EscalationPolicy],
    severity: str,
    tags: Iterable[str] = (),
    services: Iterable[str] = (),
    now: float | None = None,
) -> EscalationPolicy | None:
    """First enabled policy whose conditions match, in configuration order."""
    tags, services = list(tags), list(services)
    for policy in policies:
        if policy.enabled and matches_conditions(policy.conditions, severity, tags, services, now):
            return policy
    return None
