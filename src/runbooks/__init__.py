"""Automated runbook execution."""

from src.runbooks.exceptions import RunbookError, StepFailedError, UnknownStepTypeError
from src.runbooks.executor import RunbookExecutor
from src.runbooks.steps import DefaultStepRunner, StepRunner, substitute

__all__ = [
    "DefaultStepRunner",
    "RunbookError",
    "RunbookExecutor",
    "StepFailedError",
    "StepRunner",
    "UnknownStepTypeError",
    "substitute",
]
