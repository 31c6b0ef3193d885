"""Alerting exceptions."""

from __future__ import annotations


class AlertingError(Exception):
    """Base exception for alert intake and storage errors."""


class UnknownRuleError(AlertingError):
    """An alert was triggered for a rule id that is not configured."""


class RuleDisabledError(AlertingError):
    """An alert was triggered for a rule that is disabled."""
