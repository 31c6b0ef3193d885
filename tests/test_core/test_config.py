"""Tests for src/core/config.py — YAML loading, defaults, cross-references, SecretStr."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from src.core.config import (
    ConfigValidationError,
    EmailChannelConfig,
    EngineConfig,
    LoggingConfig,
    PagerDutyChannelConfig,
    Settings,
    SlackChannelConfig,
    get_settings,
    load_settings,
    reset_settings,
    validate_settings,
)
from src.core.types import (
    AlertSeverity,
    IncidentSeverity,
    NotificationEvent,
    NotifyAction,
)


@pytest.fixture(autouse=True)
def _clean_settings() -> None:
    """Reset the global settings cache before each test."""
    reset_settings()


def _rule(**kw: object) -> dict[str, object]:
    defaults: dict[str, object] = {
        "id": "high-error-rate",
        "name": "High Error Rate",
        "severity": "error",
        "conditions": [
            {"metric": "error_rate", "operator": "gt", "threshold": 5},
        ],
        "channels": ["slack-alerts"],
    }
    defaults.update(kw)
    return defaults


def _policy(**kw: object) -> dict[str, object]:
    defaults: dict[str, object] = {
        "id": "critical-escalation",
        "name": "Critical",
        "levels": [{"level": 1, "delay_minutes": 0, "channels": ["slack-alerts"]}],
    }
    defaults.update(kw)
    return defaults


_SLACK = {"id": "slack-alerts", "type": "slack", "webhook_url": "https://hooks.example/x"}


class TestDefaults:
    """Settings should have sensible defaults when no YAML is provided."""

    def test_default_engine_config(self) -> None:
        cfg = EngineConfig()
        assert cfg.minute_secs == 60.0
        assert cfg.metric_buffer_size == 1000
        assert cfg.send_timeout_secs == 10.0

    def test_default_logging_config(self) -> None:
        cfg = LoggingConfig()
        assert cfg.level == "INFO"
        assert cfg.format == "json"

    def test_default_settings(self) -> None:
        s = Settings()
        assert s.channels == []
        assert s.alert_rules == []
        assert s.incident_management.enabled is True
        assert s.post_mortem.action_item_due_days == 14
        assert s.status_page.enabled is False

    def test_default_severity_mapping(self) -> None:
        mapping = Settings().incident_management.severity_mapping
        assert mapping[AlertSeverity.CRITICAL] == IncidentSeverity.CRITICAL
        assert mapping[AlertSeverity.ERROR] == IncidentSeverity.HIGH
        assert mapping[AlertSeverity.WARNING] == IncidentSeverity.MEDIUM
        assert mapping[AlertSeverity.INFO] == IncidentSeverity.LOW

    def test_rate_limiting_disabled_by_default(self) -> None:
        ch = SlackChannelConfig(id="s")
        assert ch.rate_limiting.enabled is False
        assert ch.enabled is True


class TestYamlLoading:
    """Settings should load correctly from YAML files."""

    def test_load_from_yaml(self, tmp_path: Path) -> None:
        config_data = {
            "engine": {"minute_secs": 0.5, "environment": "staging"},
            "channels": [
                _SLACK,
                {"id": "pd", "type": "pagerduty", "integration_key": "pd-key"},
                {"id": "mail", "type": "email", "to": ["oncall@example.com"]},
            ],
            "escalation_policies": [_policy()],
            "alert_rules": [_rule(escalation_policy="critical-escalation")],
            "templates": {"status_update": {"channels": ["slack-alerts"]}},
            "logging": {"level": "DEBUG", "format": "console"},
        }
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump(config_data))

        settings = load_settings(config_file)

        assert settings.engine.minute_secs == 0.5
        assert settings.engine.environment == "staging"
        assert isinstance(settings.channels[0], SlackChannelConfig)
        assert isinstance(settings.channels[1], PagerDutyChannelConfig)
        assert isinstance(settings.channels[2], EmailChannelConfig)
        assert settings.channels[1].integration_key.get_secret_value() == "pd-key"
        assert settings.alert_rules[0].escalation_policy == "critical-escalation"
        assert settings.templates[NotificationEvent.STATUS_UPDATE].channels == ["slack-alerts"]
        assert settings.logging.level == "DEBUG"

    def test_load_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        settings = load_settings(tmp_path / "nonexistent.yaml")
        assert settings.engine.minute_secs == 60.0
        assert settings.channels == []

    def test_load_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        settings = load_settings(config_file)
        assert settings.engine.minute_secs == 60.0

    def test_get_settings_caches(self, tmp_path: Path) -> None:
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"engine": {"service": "api"}}))
        loaded = load_settings(config_file)
        assert get_settings() is loaded

    def test_escalation_actions_parse_by_type(self, tmp_path: Path) -> None:
        policy = _policy(levels=[{
            "level": 1,
            "actions": [
                {"type": "notify", "channels": ["slack-alerts"]},
                {"type": "create_incident", "retries": 1},
                {"type": "scale_service", "service": "api", "instances": 4},
            ],
        }])
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"channels": [_SLACK], "escalation_policies": [policy]}))

        settings = load_settings(config_file)
        actions = settings.escalation_policies[0].levels[0].actions
        assert isinstance(actions[0], NotifyAction)
        assert actions[1].type == "create_incident"
        assert actions[1].retries == 1
        assert actions[2].type == "scale_service"

    def test_shipped_config_loads(self) -> None:
        path = Path(__file__).resolve().parents[2] / "config" / "settings.yaml"
        settings = load_settings(path)
        assert {c.id for c in settings.channels} == {
            "email-critical", "slack-alerts", "pagerduty-critical",
        }
        policy = settings.escalation_policies[0]
        assert [lvl.delay_minutes for lvl in policy.levels] == [0, 5, 15]


class TestCrossReferences:
    """Dangling references are rejected at load time."""

    def test_unknown_rule_channel(self) -> None:
        s = Settings(channels=[_SLACK], alert_rules=[_rule(channels=["nope"])])
        with pytest.raises(ConfigValidationError, match="unknown channel 'nope'"):
            validate_settings(s)

    def test_unknown_escalation_policy(self) -> None:
        s = Settings(channels=[_SLACK], alert_rules=[_rule(escalation_policy="missing")])
        with pytest.raises(ConfigValidationError, match="unknown escalation policy"):
            validate_settings(s)

    def test_unknown_level_channel(self) -> None:
        policy = _policy(levels=[{"level": 1, "channels": ["ghost"]}])
        s = Settings(channels=[_SLACK], escalation_policies=[policy])
        with pytest.raises(ConfigValidationError, match="ghost"):
            validate_settings(s)

    def test_unknown_runbook_action(self) -> None:
        policy = _policy(levels=[{
            "level": 1,
            "actions": [{"type": "execute_runbook", "runbook_id": "restart"}],
        }])
        s = Settings(channels=[_SLACK], escalation_policies=[policy])
        with pytest.raises(ConfigValidationError, match="unknown runbook 'restart'"):
            validate_settings(s)

    def test_unknown_template_channel(self) -> None:
        s = Settings(
            channels=[_SLACK],
            templates={"incident_created": {"channels": ["mail"]}},
        )
        with pytest.raises(ConfigValidationError, match="template 'incident_created'"):
            validate_settings(s)

    def test_duplicate_ids(self) -> None:
        s = Settings(channels=[_SLACK, _SLACK])
        with pytest.raises(ConfigValidationError, match="duplicate channel id"):
            validate_settings(s)

    def test_reports_every_problem(self) -> None:
        s = Settings(alert_rules=[_rule(channels=["a", "b"])])
        with pytest.raises(ConfigValidationError) as exc_info:
            validate_settings(s)
        assert "'a'" in str(exc_info.value)
        assert "'b'" in str(exc_info.value)

    def test_load_raises_on_dangling_reference(self, tmp_path: Path) -> None:
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"alert_rules": [_rule()]}))
        with pytest.raises(ConfigValidationError):
            load_settings(config_file)

    def test_valid_settings_returned(self) -> None:
        s = Settings(channels=[_SLACK], alert_rules=[_rule()])
        assert validate_settings(s) is s


class TestSecretStr:
    """Sensitive fields should use SecretStr to prevent leaking."""

    def test_secret_str_repr_does_not_leak(self) -> None:
        cfg = SlackChannelConfig(
            id="s",
            webhook_url="https://hooks.slack.com/services/secret-token",  # type: ignore[arg-type]
        )
        repr_str = repr(cfg)
        assert "secret-token" not in repr_str
        assert "**********" in repr_str

    def test_secret_str_get_value(self) -> None:
        cfg = PagerDutyChannelConfig(id="pd", integration_key="my-key")  # type: ignore[arg-type]
        assert cfg.integration_key.get_secret_value() == "my-key"
