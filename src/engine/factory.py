"""Convenience factory for wiring the engine from settings."""

from __future__ import annotations

import time
from collections.abc import Callable

from src.core.config import Settings, get_settings
from src.engine.engine import IncidentResponseEngine
from src.escalation.actions import InfrastructureOperator
from src.notify.channels import Notifier, default_notifiers
from src.notify.exceptions import UnsupportedChannelError
from src.notify.statuspage import HttpStatusPage, NullStatusPage, StatusPage
from src.runbooks.steps import StepRunner


def create_engine(
    settings: Settings | None = None,
    notifiers: dict[str, Notifier] | None = None,
    step_runner: StepRunner | None = None,
    status_page: StatusPage | None = None,
    operator: InfrastructureOperator | None = None,
    clock: Callable[[], float] = time.time,
) -> IncidentResponseEngine:
    """Build an engine with default collaborators for anything not supplied.

    Raises:
        UnsupportedChannelError: a configured channel type has no notifier.
    """
    settings = settings or get_settings()
    notifiers = notifiers if notifiers is not None else default_notifiers()

    missing = sorted({c.type for c in settings.channels} - set(notifiers))
    if missing:
        raise UnsupportedChannelError(f"no notifier for channel types: {missing}")

    if status_page is None:
        page = settings.status_page
        status_page = HttpStatusPage(page) if page.enabled and page.url else NullStatusPage()

    return IncidentResponseEngine(
        settings,
        notifiers,
        step_runner=step_runner,
        status_page=status_page,
        operator=operator,
        clock=clock,
    )
