"""Escalation policies, timers and infrastructure actions."""

from src.escalation.actions import InfrastructureOperator, LoggingOperator
from src.escalation.policies import find_policy, in_time_window, matches_conditions
from src.escalation.scheduler import EscalationHandler, EscalationScheduler

__all__ = [
    "EscalationHandler",
    "EscalationScheduler",
    "InfrastructureOperator",
    "LoggingOperator",
    "find_policy",
    "in_time_window",
    "matches_conditions",
]
