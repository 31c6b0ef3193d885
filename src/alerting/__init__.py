"""Signal intake, throttling and alert storage."""

from src.alerting.conditions import MetricBuffer, aggregate, compare, evaluate_condition
from src.alerting.exceptions import AlertingError, RuleDisabledError, UnknownRuleError
from src.alerting.intake import RuleFiring, SignalIntake
from src.alerting.store import AlertStore
from src.alerting.throttle import ThrottleGate

__all__ = [
    "AlertStore",
    "AlertingError",
    "MetricBuffer",
    "RuleDisabledError",
    "RuleFiring",
    "SignalIntake",
    "ThrottleGate",
    "UnknownRuleError",
    "aggregate",
    "compare",
    "evaluate_condition",
]
