"""Tests for src/notify/formatters.py — template selection and rendering."""

from __future__ import annotations

from src.core.config import FormattingConfig, MessageTemplate, SlackChannelConfig
from src.core.types import Alert, Incident, NotificationEvent
from src.notify.formatters import (
    DEFAULT_ALERT_TEMPLATE,
    render_alert,
    render_incident,
    render_template,
    select_template,
)


def _alert(**kw: object) -> Alert:
    defaults: dict[str, object] = {
        "id": "alert_1",
        "rule_id": "high-error-rate",
        "rule_name": "High Error Rate",
        "severity": "error",
        "category": "performance",
        "triggered_at": 0.0,
        "message": "error_rate avg 8 > 5",
        "metrics": {"error_rate": 8.0},
        "runbook_url": "https://runbooks.example.com/high-error-rate",
    }
    defaults.update(kw)
    return Alert(**defaults)  # type: ignore[arg-type]


def _incident(**kw: object) -> Incident:
    defaults: dict[str, object] = {
        "id": "inc_1",
        "title": "HIGH: High Error Rate",
        "description": "error_rate avg 8 > 5",
        "severity": "high",
        "commander": "oncall-engineer",
        "affected_services": ["api"],
    }
    defaults.update(kw)
    return Incident(**defaults)  # type: ignore[arg-type]


def _channel(**formatting: object) -> SlackChannelConfig:
    return SlackChannelConfig(
        id="slack-alerts",
        formatting=FormattingConfig(**formatting),  # type: ignore[arg-type]
    )


class TestRenderTemplate:
    def test_substitutes(self) -> None:
        assert render_template("{a}-{b}", {"a": "1", "b": "2"}) == "1-2"

    def test_unknown_placeholder_kept(self) -> None:
        assert render_template("{a} {missing}", {"a": "x"}) == "x {missing}"

    def test_malformed_template_returned_raw(self) -> None:
        assert render_template("oops {", {}) == "oops {"


class TestSelectTemplate:
    def test_channel_event_template_first(self) -> None:
        channel = _channel(
            template="channel default",
            templates={NotificationEvent.ALERT_TRIGGERED: "channel event"},
        )
        templates = {NotificationEvent.ALERT_TRIGGERED: MessageTemplate(template="global")}
        got = select_template(NotificationEvent.ALERT_TRIGGERED, channel, templates)
        assert got == "channel event"

    def test_global_before_channel_default(self) -> None:
        channel = _channel(template="channel default")
        templates = {NotificationEvent.ALERT_TRIGGERED: MessageTemplate(template="global")}
        got = select_template(NotificationEvent.ALERT_TRIGGERED, channel, templates)
        assert got == "global"

    def test_global_without_text_falls_through(self) -> None:
        channel = _channel(template="channel default")
        templates = {NotificationEvent.ALERT_TRIGGERED: MessageTemplate(channels=["x"])}
        got = select_template(NotificationEvent.ALERT_TRIGGERED, channel, templates)
        assert got == "channel default"

    def test_builtin_default(self) -> None:
        got = select_template(NotificationEvent.ALERT_TRIGGERED, _channel(), {})
        assert got == DEFAULT_ALERT_TEMPLATE

    def test_channel_default_skipped_for_incidents(self) -> None:
        channel = _channel(template="alert-shaped {message}")
        got = select_template(
            NotificationEvent.INCIDENT_CREATED, channel, {}, use_channel_default=False,
        )
        assert "INCIDENT" in got


class TestRenderAlert:
    def test_default_template(self) -> None:
        msg = render_alert(
            _alert(), _channel(), NotificationEvent.ALERT_TRIGGERED,
            environment="production", service="api",
        )
        assert msg.title == "[ERROR] High Error Rate"
        assert msg.severity == "error"
        assert msg.subject_id == "alert_1"
        assert "ERROR ALERT: High Error Rate" in msg.body
        assert "Service: api" in msg.body
        assert "Environment: production" in msg.body
        assert "1970-01-01T00:00:00+00:00" in msg.body

    def test_alert_context_overrides_defaults(self) -> None:
        alert = _alert(context={"service": "billing"})
        msg = render_alert(alert, _channel(), NotificationEvent.ALERT_TRIGGERED, service="api")
        assert msg.fields["service"] == "billing"

    def test_metrics_included(self) -> None:
        msg = render_alert(_alert(), _channel(), NotificationEvent.ALERT_TRIGGERED)
        assert msg.fields["error_rate"] == "8"

    def test_metrics_excluded(self) -> None:
        msg = render_alert(
            _alert(), _channel(include_metrics=False), NotificationEvent.ALERT_TRIGGERED,
        )
        assert "error_rate" not in msg.fields

    def test_runbook_appended_when_enabled(self) -> None:
        msg = render_alert(
            _alert(), _channel(include_runbook=True), NotificationEvent.ALERT_TRIGGERED,
        )
        assert msg.body.endswith("Runbook: https://runbooks.example.com/high-error-rate")
        assert msg.fields["runbook"] == "https://runbooks.example.com/high-error-rate"

    def test_runbook_omitted_by_default(self) -> None:
        msg = render_alert(_alert(), _channel(), NotificationEvent.ALERT_TRIGGERED)
        assert "Runbook:" not in msg.body

    def test_escalated_template_has_level(self) -> None:
        alert = _alert()
        alert.escalation.level = 2
        msg = render_alert(alert, _channel(), NotificationEvent.ALERT_ESCALATED)
        assert "level 2" in msg.body

    def test_channel_template(self) -> None:
        channel = _channel(template="*{severity}* Alert: {title}\n{message}")
        msg = render_alert(_alert(), channel, NotificationEvent.ALERT_TRIGGERED)
        assert msg.body == "*ERROR* Alert: High Error Rate\nerror_rate avg 8 > 5"


class TestRenderIncident:
    def test_created(self) -> None:
        msg = render_incident(_incident(), _channel(), NotificationEvent.INCIDENT_CREATED)
        assert msg.title == "[HIGH] HIGH: High Error Rate"
        assert msg.severity == "high"
        assert "Commander: oncall-engineer" in msg.body
        assert msg.fields["services"] == "api"

    def test_resolved_shows_minutes(self) -> None:
        incident = _incident(resolution="rolled back")
        incident.metrics.resolution_time = 47
        msg = render_incident(incident, _channel(), NotificationEvent.INCIDENT_RESOLVED)
        assert "rolled back" in msg.body
        assert "Resolution time: 47 min" in msg.body

    def test_global_template(self) -> None:
        templates = {
            NotificationEvent.STATUS_UPDATE: MessageTemplate(template="{incident_id} is {status}"),
        }
        msg = render_incident(
            _incident(), _channel(), NotificationEvent.STATUS_UPDATE, templates,
        )
        assert msg.body == "inc_1 is investigating"
