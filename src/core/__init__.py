"""Core module — config, types, logging."""

from src.core.config import (
    ConfigValidationError,
    Settings,
    get_settings,
    load_settings,
    reset_settings,
    validate_settings,
)
from src.core.logging import setup_logging
from src.core.types import (
    Alert,
    AlertRule,
    AlertSeverity,
    AlertStatus,
    AutomatedRunbook,
    EscalationPolicy,
    Incident,
    IncidentSeverity,
    IncidentStatus,
    NotificationEvent,
    PostMortem,
    RunbookResult,
)

__all__ = [
    "Alert",
    "AlertRule",
    "AlertSeverity",
    "AlertStatus",
    "AutomatedRunbook",
    "ConfigValidationError",
    "EscalationPolicy",
    "Incident",
    "IncidentSeverity",
    "IncidentStatus",
    "NotificationEvent",
    "PostMortem",
    "RunbookResult",
    "Settings",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
    "validate_settings",
]
