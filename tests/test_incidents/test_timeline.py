"""Tests for src/incidents/timeline.py — append-only, non-decreasing timestamps."""

from __future__ import annotations

from src.core.types import Incident, IncidentEventType
from src.incidents.timeline import Timeline


def _incident() -> Incident:
    return Incident(title="t", severity="low")  # type: ignore[arg-type]


class TestTimeline:
    def test_append(self) -> None:
        incident = _incident()
        tl = Timeline(incident)
        event = tl.append(IncidentEventType.CREATED, "alice", "opened", 10.0, {"k": 1})
        assert incident.timeline == [event]
        assert event.metadata == {"k": 1}
        assert tl.last() is event

    def test_earlier_timestamp_clamped(self) -> None:
        incident = _incident()
        tl = Timeline(incident)
        tl.append(IncidentEventType.CREATED, "system", "opened", 100.0)
        late = tl.append(IncidentEventType.UPDATED, "system", "skewed", 50.0)
        assert late.timestamp == 100.0
        stamps = [e.timestamp for e in incident.timeline]
        assert stamps == sorted(stamps)

    def test_of_type(self) -> None:
        incident = _incident()
        tl = Timeline(incident)
        tl.append(IncidentEventType.CREATED, "system", "opened", 1.0)
        tl.append(IncidentEventType.ESCALATED, "system", "level 1", 2.0)
        tl.append(IncidentEventType.ESCALATED, "system", "level 2", 3.0)
        assert [e.description for e in tl.of_type(IncidentEventType.ESCALATED)] == [
            "level 1", "level 2",
        ]

    def test_empty(self) -> None:
        assert Timeline(_incident()).last() is None
