"""Pure functions that render alerts and incidents into RenderedMessage objects."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from src.core.config import ChannelConfig, MessageTemplate
from src.core.types import Alert, Incident, NotificationEvent
from src.notify.types import RenderedMessage

logger = structlog.get_logger(__name__)

# ── Built-in templates ──────────────────────────────────────────

DEFAULT_ALERT_TEMPLATE = (
    "🚨 {severity} ALERT: {title}\n\n{message}\n\n"
    "Service: {service}\nEnvironment: {environment}\nTime: {timestamp}"
)

_DEFAULT_TEMPLATES: dict[NotificationEvent, str] = {
    NotificationEvent.ALERT_TRIGGERED: DEFAULT_ALERT_TEMPLATE,
    NotificationEvent.ALERT_ESCALATED: (
        "⬆️ ESCALATED (level {level}) {severity} ALERT: {title}\n\n{message}\n\n"
        "Service: {service}\nTriggered: {timestamp}"
    ),
    NotificationEvent.ALERT_ACKNOWLEDGED: "👀 Alert acknowledged by {acknowledged_by}: {title}",
    NotificationEvent.ALERT_RESOLVED: "✅ Alert resolved by {resolved_by}: {title}",
    NotificationEvent.INCIDENT_CREATED: (
        "🔥 INCIDENT {incident_id} [{severity}]: {title}\n\n{description}\n\n"
        "Commander: {commander}\nServices: {services}"
    ),
    NotificationEvent.INCIDENT_UPDATED: (
        "📝 Incident {incident_id} updated: {title}\nStatus: {status}\nSeverity: {severity}"
    ),
    NotificationEvent.INCIDENT_ESCALATED: (
        "⬆️ Incident {incident_id} escalated [{severity}]: {title}\nCommander: {commander}"
    ),
    NotificationEvent.INCIDENT_RESOLVED: (
        "✅ Incident {incident_id} resolved: {title}\n\n{resolution}\n\n"
        "Resolution time: {resolution_time} min"
    ),
    NotificationEvent.STATUS_UPDATE: (
        "ℹ️ Status update for incident {incident_id} [{severity}]: {title}\nStatus: {status}"
    ),
    NotificationEvent.MANUAL_ACTION: "🛠 Manual action required for incident {incident_id}: {title}",
    NotificationEvent.APPROVAL_REQUEST: "✋ Approval requested for incident {incident_id}: {title}",
}


class _SafeDict(dict):
    """format_map mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(template: str, values: dict[str, str]) -> str:
    """Substitute ``{name}`` placeholders; unknown names are kept verbatim."""
    try:
        return template.format_map(_SafeDict(values))
    except (ValueError, IndexError, AttributeError):
        logger.warning("template_render_failed", template=template[:80])
        return template


def _iso(ts: float | None) -> str:
    if ts is None:
        return ""
    return datetime.fromtimestamp(ts, tz=UTC).isoformat()


def select_template(
    event: NotificationEvent,
    channel: ChannelConfig,
    templates: dict[NotificationEvent, MessageTemplate],
    use_channel_default: bool = True,
) -> str:
    """Template lookup: channel per-event, global per-event, channel default, built-in."""
    per_channel = channel.formatting.templates.get(event)
    if per_channel:
        return per_channel
    glob = templates.get(event)
    if glob is not None and glob.template:
        return glob.template
    if use_channel_default and channel.formatting.template:
        return channel.formatting.template
    return _DEFAULT_TEMPLATES.get(event, DEFAULT_ALERT_TEMPLATE)


# ── Alerts ──────────────────────────────────────────────────────


def alert_values(
    alert: Alert,
    environment: str = "",
    service: str = "",
) -> dict[str, str]:
    return {
        "alert_id": alert.id,
        "rule_id": alert.rule_id,
        "title": alert.rule_name,
        "rule_name": alert.rule_name,
        "severity": alert.severity.value.upper(),
        "category": alert.category.value,
        "status": alert.status.value,
        "message": alert.message,
        "description": alert.description,
        "service": alert.context.get("service", service),
        "environment": alert.context.get("environment", environment),
        "timestamp": _iso(alert.triggered_at),
        "level": str(alert.escalation.level),
        "acknowledged_by": alert.acknowledged_by or "",
        "resolved_by": alert.resolved_by or "",
        "runbook_url": alert.runbook_url,
        "tags": ", ".join(alert.tags),
    }


def render_alert(
    alert: Alert,
    channel: ChannelConfig,
    event: NotificationEvent,
    templates: dict[NotificationEvent, MessageTemplate] | None = None,
    environment: str = "",
    service: str = "",
) -> RenderedMessage:
    """Render *alert* for *channel* according to its formatting flags."""
    values = alert_values(alert, environment, service)
    template = select_template(event, channel, templates or {})
    body = render_template(template, values)

    fields: dict[str, str] = {
        "alert_id": alert.id,
        "rule": alert.rule_id,
        "service": values["service"],
    }
    if channel.formatting.include_metrics:
        for name, value in alert.metrics.items():
            fields[name] = f"{value:g}"
    if channel.formatting.include_runbook and alert.runbook_url:
        body = f"{body}\n\nRunbook: {alert.runbook_url}"
        fields["runbook"] = alert.runbook_url

    return RenderedMessage(
        event=event,
        severity=alert.severity.value,
        title=f"[{values['severity']}] {alert.rule_name}",
        body=body,
        fields=fields,
        subject_id=alert.id,
    )


# ── Incidents ───────────────────────────────────────────────────


def incident_values(incident: Incident) -> dict[str, str]:
    resolution_time = incident.metrics.resolution_time
    return {
        "incident_id": incident.id,
        "title": incident.title,
        "description": incident.description,
        "severity": incident.severity.value.upper(),
        "status": incident.status.value,
        "commander": incident.commander,
        "responders": ", ".join(incident.responders),
        "services": ", ".join(incident.affected_services) or "n/a",
        "resolution": incident.resolution or "",
        "resolution_time": "" if resolution_time is None else str(resolution_time),
        "root_cause": incident.root_cause or "",
        "timestamp": _iso(incident.detected_at),
        "tags": ", ".join(incident.tags),
    }


def render_incident(
    incident: Incident,
    channel: ChannelConfig,
    event: NotificationEvent,
    templates: dict[NotificationEvent, MessageTemplate] | None = None,
) -> RenderedMessage:
    values = incident_values(incident)
    template = select_template(event, channel, templates or {}, use_channel_default=False)
    fields = {
        "incident_id": incident.id,
        "status": incident.status.value,
        "commander": incident.commander,
    }
    if incident.affected_services:
        fields["services"] = values["services"]
    return RenderedMessage(
        event=event,
        severity=incident.severity.value,
        title=f"[{values['severity']}] {incident.title}",
        body=render_template(template, values),
        fields=fields,
        subject_id=incident.id,
    )
