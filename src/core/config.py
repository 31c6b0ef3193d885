"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, Field, SecretStr

from src.core.types import (
    AlertRule,
    AlertSeverity,
    AutomatedRunbook,
    EscalationPolicy,
    ExecuteRunbookAction,
    IncidentSeverity,
    NotificationEvent,
    NotifyAction,
)

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


class ConfigValidationError(ValueError):
    """Static configuration is inconsistent (raised at load time)."""


# ── Channels ────────────────────────────────────────────────────


class RateLimitPolicy(BaseModel):
    """Per-channel delivery budget."""

    enabled: bool = False
    max_alerts_per_hour: int = Field(default=0, ge=0)
    cooldown_minutes: float = Field(default=0.0, ge=0)


class FormattingConfig(BaseModel):
    """How messages are rendered for one channel."""

    template: str = ""
    templates: dict[NotificationEvent, str] = Field(default_factory=dict)
    include_metrics: bool = True
    include_runbook: bool = False


class _ChannelBase(BaseModel):
    id: str
    name: str = ""
    enabled: bool = True
    priority: int = 1
    rate_limiting: RateLimitPolicy = RateLimitPolicy()
    formatting: FormattingConfig = FormattingConfig()


class EmailChannelConfig(_ChannelBase):
    """SMTP delivery."""

    type: Literal["email"] = "email"
    to: list[str] = Field(default_factory=list)
    from_addr: str = "noreply@localhost"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    use_tls: bool = True
    username: str = ""
    password: SecretStr = SecretStr("")


class SlackChannelConfig(_ChannelBase):
    """Slack incoming webhook."""

    type: Literal["slack"] = "slack"
    webhook_url: SecretStr = SecretStr("")
    channel: str = ""


class SmsChannelConfig(_ChannelBase):
    """HTTP SMS gateway (form-encoded POST, basic auth)."""

    type: Literal["sms"] = "sms"
    gateway_url: str = ""
    account_sid: str = ""
    auth_token: SecretStr = SecretStr("")
    from_number: str = ""
    to_numbers: list[str] = Field(default_factory=list)


class WebhookChannelConfig(_ChannelBase):
    """Generic JSON webhook."""

    type: Literal["webhook"] = "webhook"
    url: SecretStr = SecretStr("")
    headers: dict[str, str] = Field(default_factory=dict)


class PagerDutyChannelConfig(_ChannelBase):
    """PagerDuty Events API v2."""

    type: Literal["pagerduty"] = "pagerduty"
    integration_key: SecretStr = SecretStr("")
    events_url: str = "https://events.pagerduty.com/v2/enqueue"
    severity: str | None = None


class TeamsChannelConfig(_ChannelBase):
    """Microsoft Teams incoming webhook."""

    type: Literal["teams"] = "teams"
    webhook_url: SecretStr = SecretStr("")


class DiscordChannelConfig(_ChannelBase):
    """Discord webhook."""

    type: Literal["discord"] = "discord"
    webhook_url: SecretStr = SecretStr("")


ChannelConfig = Annotated[
    EmailChannelConfig
    | SlackChannelConfig
    | SmsChannelConfig
    | WebhookChannelConfig
    | PagerDutyChannelConfig
    | TeamsChannelConfig
    | DiscordChannelConfig,
    Field(discriminator="type"),
]


# ── Engine sections ─────────────────────────────────────────────


class EngineConfig(BaseModel):
    """Runtime knobs of the engine itself."""

    minute_secs: float = Field(default=60.0, gt=0)
    sweep_interval_secs: float = Field(default=60.0, gt=0)
    stale_incident_minutes: float = Field(default=60.0, gt=0)
    metric_buffer_size: int = Field(default=1000, ge=1)
    send_timeout_secs: float = Field(default=10.0, gt=0)
    environment: str = "development"
    service: str = "platform"
    runbook_base_url: str = ""


class AssignmentRule(BaseModel):
    """Picks the incident commander for alerts of a severity / tag."""

    severity: AlertSeverity | None = None
    tag: str | None = None
    assign_to: str
    team: str = ""


class StatusUpdatesConfig(BaseModel):
    enabled: bool = False
    frequency_minutes: float = Field(default=30.0, gt=0)


def _default_severity_mapping() -> dict[AlertSeverity, IncidentSeverity]:
    return {
        AlertSeverity.CRITICAL: IncidentSeverity.CRITICAL,
        AlertSeverity.ERROR: IncidentSeverity.HIGH,
        AlertSeverity.WARNING: IncidentSeverity.MEDIUM,
        AlertSeverity.INFO: IncidentSeverity.LOW,
    }


class IncidentManagementConfig(BaseModel):
    enabled: bool = True
    auto_create_incidents: bool = True
    severity_mapping: dict[AlertSeverity, IncidentSeverity] = Field(
        default_factory=_default_severity_mapping,
    )
    assignment_rules: list[AssignmentRule] = Field(default_factory=list)
    default_commander: str = "on-call-engineer"
    status_updates: StatusUpdatesConfig = StatusUpdatesConfig()


class AutomationConfig(BaseModel):
    enabled: bool = True
    approval_required: bool = False


class MessageTemplate(BaseModel):
    """Template and fan-out channel set for one notification event."""

    template: str = ""
    channels: list[str] = Field(default_factory=list)


class StatusPageConfig(BaseModel):
    enabled: bool = False
    url: str = ""
    api_key: SecretStr = SecretStr("")
    auto_update: bool = True
    components: dict[str, list[str]] = Field(default_factory=dict)


class PostMortemConfig(BaseModel):
    enabled: bool = True
    seed_action_items: bool = True
    action_item_due_days: int = Field(default=14, ge=0)
    default_assignee: str = "platform-team"
    min_duration_minutes: int = 60


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    # Decision records are additionally written here as JSON lines when set.
    decision_log_file: str | None = None
    library_levels: dict[str, str] = Field(
        default_factory=lambda: {"aiohttp": "WARNING", "httpx": "WARNING"},
    )


class Settings(BaseModel):
    """Root settings container."""

    engine: EngineConfig = EngineConfig()
    channels: list[ChannelConfig] = Field(default_factory=list)
    escalation_policies: list[EscalationPolicy] = Field(default_factory=list)
    alert_rules: list[AlertRule] = Field(default_factory=list)
    incident_management: IncidentManagementConfig = IncidentManagementConfig()
    automation: AutomationConfig = AutomationConfig()
    runbooks: list[AutomatedRunbook] = Field(default_factory=list)
    templates: dict[NotificationEvent, MessageTemplate] = Field(default_factory=dict)
    status_page: StatusPageConfig = StatusPageConfig()
    post_mortem: PostMortemConfig = PostMortemConfig()
    logging: LoggingConfig = LoggingConfig()


def _duplicates(ids: list[str]) -> list[str]:
    seen: set[str] = set()
    dupes: list[str] = []
    for i in ids:
        if i in seen:
            dupes.append(i)
        seen.add(i)
    return dupes


def validate_settings(settings: Settings) -> Settings:
    """Cross-reference checks pydantic cannot express on a single model.

    Raises:
        ConfigValidationError: listing every problem found.
    """
    problems: list[str] = []

    channel_ids = [c.id for c in settings.channels]
    policy_ids = [p.id for p in settings.escalation_policies]
    rule_ids = [r.id for r in settings.alert_rules]
    runbook_ids = [r.id for r in settings.runbooks]

    for kind, ids in (
        ("channel", channel_ids),
        ("escalation policy", policy_ids),
        ("alert rule", rule_ids),
        ("runbook", runbook_ids),
    ):
        for dupe in _duplicates(ids):
            problems.append(f"duplicate {kind} id {dupe!r}")

    known_channels = set(channel_ids)
    known_runbooks = set(runbook_ids)

    for rule in settings.alert_rules:
        for ch in rule.channels:
            if ch not in known_channels:
                problems.append(f"rule {rule.id!r} references unknown channel {ch!r}")
        if rule.escalation_policy and rule.escalation_policy not in policy_ids:
            problems.append(
                f"rule {rule.id!r} references unknown escalation policy"
                f" {rule.escalation_policy!r}"
            )

    for policy in settings.escalation_policies:
        for level in policy.levels:
            refs = list(level.channels)
            refs.extend(cm.channel for r in level.responders for cm in r.contact_methods)
            for action in level.actions:
                if isinstance(action, NotifyAction):
                    refs.extend(action.channels)
                elif isinstance(action, ExecuteRunbookAction):
                    if action.runbook_id not in known_runbooks:
                        problems.append(
                            f"policy {policy.id!r} level {level.level} references"
                            f" unknown runbook {action.runbook_id!r}"
                        )
            for ch in refs:
                if ch not in known_channels:
                    problems.append(
                        f"policy {policy.id!r} level {level.level} references"
                        f" unknown channel {ch!r}"
                    )

    for event, tmpl in settings.templates.items():
        for ch in tmpl.channels:
            if ch not in known_channels:
                problems.append(f"template {event.value!r} references unknown channel {ch!r}")

    if problems:
        raise ConfigValidationError("; ".join(problems))
    return settings


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed and cross-validated Settings instance.

    Raises:
        pydantic.ValidationError: malformed fields.
        ConfigValidationError: dangling references between sections.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = validate_settings(Settings(**data))
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
