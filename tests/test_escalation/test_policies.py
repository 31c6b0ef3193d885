"""Tests for src/escalation/policies.py — applicability of escalation policies."""

from __future__ import annotations

import datetime

import pytest
from pydantic import ValidationError

from src.core.types import EscalationPolicy, PolicyConditions, TimeWindow
from src.escalation.policies import (
    day_of_week,
    find_policy,
    in_time_window,
    matches_conditions,
)

# 2024-01-07 was a Sunday.
_SUNDAY_NOON = datetime.datetime(2024, 1, 7, 12, 0, tzinfo=datetime.UTC)
_MONDAY_0230 = datetime.datetime(2024, 1, 8, 2, 30, tzinfo=datetime.UTC)


def _policy(pid: str = "p1", **conditions: object) -> EscalationPolicy:
    return EscalationPolicy(
        id=pid,
        name=pid,
        levels=[{"level": 1, "delay_minutes": 0}],  # type: ignore[list-item]
        conditions=PolicyConditions(**conditions),  # type: ignore[arg-type]
    )


class TestTimeWindow:
    def test_inside_simple_window(self) -> None:
        assert in_time_window(TimeWindow(start="09:00", end="17:00"), _SUNDAY_NOON) is True

    def test_outside_simple_window(self) -> None:
        assert in_time_window(TimeWindow(start="09:00", end="11:59"), _SUNDAY_NOON) is False

    def test_bounds_inclusive(self) -> None:
        assert in_time_window(TimeWindow(start="12:00", end="12:00"), _SUNDAY_NOON) is True

    def test_wraps_midnight(self) -> None:
        night = TimeWindow(start="22:00", end="06:00")
        assert in_time_window(night, _MONDAY_0230) is True
        assert in_time_window(night, _SUNDAY_NOON) is False

    def test_rejects_bad_format(self) -> None:
        with pytest.raises(ValidationError):
            TimeWindow(start="25:00")


class TestDayOfWeek:
    def test_sunday_is_zero(self) -> None:
        assert day_of_week(_SUNDAY_NOON) == 0

    def test_monday_is_one(self) -> None:
        assert day_of_week(_MONDAY_0230) == 1


class TestMatchesConditions:
    def test_empty_conditions_match_everything(self) -> None:
        assert matches_conditions(PolicyConditions(), "info") is True

    def test_severity(self) -> None:
        cond = PolicyConditions(severity=["critical", "error"])
        assert matches_conditions(cond, "error") is True
        assert matches_conditions(cond, "warning") is False
        assert matches_conditions(cond, "high") is False

    def test_tags_any_overlap(self) -> None:
        cond = PolicyConditions(tags=["production"])
        assert matches_conditions(cond, "error", tags=["performance", "production"]) is True
        assert matches_conditions(cond, "error", tags=["staging"]) is False
        assert matches_conditions(cond, "error") is False

    def test_services(self) -> None:
        cond = PolicyConditions(services=["api"])
        assert matches_conditions(cond, "error", services=["api", "db"]) is True
        assert matches_conditions(cond, "error", services=["web"]) is False

    def test_days_of_week(self) -> None:
        cond = PolicyConditions(days_of_week=[1, 2, 3, 4, 5])
        assert matches_conditions(cond, "error", now=_SUNDAY_NOON.timestamp()) is False
        assert matches_conditions(cond, "error", now=_MONDAY_0230.timestamp()) is True

    def test_time_of_day(self) -> None:
        cond = PolicyConditions(time_of_day=TimeWindow(start="00:00", end="06:00"))
        assert matches_conditions(cond, "error", now=_MONDAY_0230.timestamp()) is True
        assert matches_conditions(cond, "error", now=_SUNDAY_NOON.timestamp()) is False


class TestFindPolicy:
    def test_first_match_wins(self) -> None:
        policies = [
            _policy("crit", severity=["critical"]),
            _policy("any"),
            _policy("later"),
        ]
        assert find_policy(policies, "critical").id == "crit"  # type: ignore[union-attr]
        assert find_policy(policies, "warning").id == "any"  # type: ignore[union-attr]

    def test_disabled_skipped(self) -> None:
        off = _policy("off")
        off.enabled = False
        assert find_policy([off, _policy("on")], "error").id == "on"  # type: ignore[union-attr]

    def test_none_when_nothing_matches(self) -> None:
        assert find_policy([_policy(severity=["critical"])], "info") is None
        assert find_policy([], "info") is None
