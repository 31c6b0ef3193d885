"""Runbook exceptions."""

from __future__ import annotations


class RunbookError(Exception):
    """Base exception for runbook execution errors."""


class StepFailedError(RunbookError):
    """A runbook step did not complete successfully."""


class UnknownStepTypeError(RunbookError):
    """A step carries an action type no runner handles."""
