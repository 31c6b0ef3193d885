"""Tests for PostMortemGenerator — eligibility, derived sections, status flow."""

from __future__ import annotations

import datetime

import pytest

from src.core.config import PostMortemConfig
from src.core.types import (
    ActionItemCategory,
    ActionItemPriority,
    Incident,
    IncidentEvent,
    IncidentEventType,
    IncidentStatus,
    PostMortemStatus,
)
from src.postmortem.exceptions import (
    IncidentNotResolvedError,
    InvalidStatusTransitionError,
    PostMortemExistsError,
)
from src.postmortem.generator import PostMortemGenerator, business_impact

_CREATED = datetime.datetime(2024, 3, 5, 10, 0, tzinfo=datetime.UTC).timestamp()


def _incident(**kw: object) -> Incident:
    defaults: dict[str, object] = {
        "id": "inc_1",
        "title": "HIGH: High Error Rate",
        "severity": "high",
        "status": IncidentStatus.RESOLVED,
        "created_at": _CREATED,
        "affected_services": ["api"],
    }
    defaults.update(kw)
    return Incident(**defaults)  # type: ignore[arg-type]


def _event(kind: IncidentEventType, ts: float = _CREATED, actor: str = "system") -> IncidentEvent:
    return IncidentEvent(timestamp=ts, type=kind, actor=actor, description=kind.value)


class TestBusinessImpact:
    @pytest.mark.parametrize(
        ("users", "expected"),
        [(0, "low"), (100, "low"), (101, "medium"), (1000, "medium"), (1001, "high")],
    )
    def test_buckets(self, users: int, expected: str) -> None:
        assert business_impact(users) == expected


class TestShouldGenerate:
    def test_high_severity_always(self) -> None:
        assert PostMortemGenerator().should_generate(_incident()) is True

    def test_low_severity_needs_long_resolution(self) -> None:
        gen = PostMortemGenerator()
        short = _incident(severity="low")
        short.metrics.resolution_time = 30
        long = _incident(severity="medium")
        long.metrics.resolution_time = 61
        assert gen.should_generate(short) is False
        assert gen.should_generate(long) is True

    def test_open_incident(self) -> None:
        assert PostMortemGenerator().should_generate(_incident(status="monitoring")) is False

    def test_disabled(self) -> None:
        gen = PostMortemGenerator(PostMortemConfig(enabled=False))
        assert gen.should_generate(_incident()) is False


class TestGenerate:
    def test_basic_fields(self) -> None:
        incident = _incident(root_cause="bad deploy")
        incident.metrics.resolution_time = 47
        incident.metrics.customer_impact.users_affected = 250
        incident.timeline.append(_event(IncidentEventType.CREATED, actor="alice"))

        pm = PostMortemGenerator().generate(incident, now=_CREATED + 3600)

        assert pm.incident_id == "inc_1"
        assert pm.title == "Post-Mortem: HIGH: High Error Rate"
        assert pm.summary == "Analysis of incident inc_1 that occurred on 2024-03-05"
        assert pm.root_cause_primary == "bad deploy"
        assert pm.impact.duration_minutes == 47
        assert pm.impact.users_affected == 250
        assert pm.impact.business_impact == "medium"
        assert pm.impact.services_affected == ["api"]
        assert pm.timeline[0].source == "alice"
        assert pm.status == PostMortemStatus.DRAFT
        assert pm.created_at == _CREATED + 3600

    def test_seeded_action_item(self) -> None:
        now = _CREATED
        pm = PostMortemGenerator().generate(_incident(), now=now)
        assert len(pm.action_items) == 1
        item = pm.action_items[0]
        assert item.description == "Improve monitoring alerting for similar issues"
        assert item.assignee == "platform-team"
        assert item.priority == ActionItemPriority.HIGH
        assert item.category == ActionItemCategory.PREVENTION
        assert item.due_at == now + 14 * 86400

    def test_no_seed_when_disabled(self) -> None:
        gen = PostMortemGenerator(PostMortemConfig(seed_action_items=False))
        assert gen.generate(_incident(), now=0.0).action_items == []

    def test_root_cause_placeholder(self) -> None:
        pm = PostMortemGenerator().generate(_incident(), now=0.0)
        assert pm.root_cause_primary == "To be determined"
        assert "Root cause was not identified during the incident" in pm.what_went_poorly

    def test_went_well(self) -> None:
        incident = _incident(alert_ids=["alert_1"], acknowledged_at=_CREATED + 300)
        incident.metrics.response_time = 5
        incident.automation.runbooks_executed = ["rb-1"]
        pm = PostMortemGenerator().generate(incident, now=0.0)
        assert pm.what_went_well == [
            "Incident was detected automatically",
            "Response team was notified promptly",
            "Automated runbooks executed successfully",
        ]
        assert pm.lessons_learned == []

    def test_went_poorly(self) -> None:
        incident = _incident(acknowledged_at=_CREATED + 3000)
        incident.metrics.response_time = 50
        incident.automation.runbooks_executed = ["rb-1"]
        incident.automation.rollbacks_performed = ["rb-1"]
        incident.timeline.extend([
            _event(IncidentEventType.ESCALATED),
            _event(IncidentEventType.ESCALATED),
        ])
        pm = PostMortemGenerator().generate(incident, now=0.0)

        assert "Time to acknowledge exceeded expectations" in pm.what_went_poorly
        assert "Automated remediation required rollback" in pm.what_went_poorly
        assert "Incident escalated 2 times before resolution" in pm.what_went_poorly
        assert "Automated runbooks executed successfully" not in pm.what_went_well
        assert pm.lessons_learned == [
            "Need better monitoring for early detection",
            "Improve runbook documentation",
        ]
        assert pm.contributing_factors[0].startswith("Automated remediation failed")

    def test_never_acknowledged(self) -> None:
        pm = PostMortemGenerator().generate(_incident(), now=0.0)
        assert "Incident was never acknowledged by a responder" in pm.what_went_poorly

    def test_requires_resolution(self) -> None:
        with pytest.raises(IncidentNotResolvedError):
            PostMortemGenerator().generate(_incident(status="identified"), now=0.0)

    def test_only_once(self) -> None:
        gen = PostMortemGenerator()
        incident = _incident()
        incident.post_mortem = gen.generate(incident, now=0.0)
        with pytest.raises(PostMortemExistsError):
            gen.generate(incident, now=0.0)


class TestAdvanceStatus:
    def test_forward(self) -> None:
        gen = PostMortemGenerator()
        pm = gen.generate(_incident(), now=0.0)
        gen.advance_status(pm, PostMortemStatus.REVIEW)
        gen.advance_status(pm, PostMortemStatus.PUBLISHED)
        assert pm.status == PostMortemStatus.PUBLISHED

    def test_backward_rejected(self) -> None:
        gen = PostMortemGenerator()
        pm = gen.generate(_incident(), now=0.0)
        gen.advance_status(pm, PostMortemStatus.APPROVED)
        with pytest.raises(InvalidStatusTransitionError):
            gen.advance_status(pm, PostMortemStatus.REVIEW)
        with pytest.raises(InvalidStatusTransitionError):
            gen.advance_status(pm, PostMortemStatus.APPROVED)
