"""Step runners — how script, API, manual and approval steps are carried out."""

from __future__ import annotations

import abc
import asyncio
import os
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog

from src.core.types import (
    ApiCallStepAction,
    Incident,
    NotificationEvent,
    RunbookStep,
    ScriptStepAction,
)
from src.runbooks.exceptions import StepFailedError

logger = structlog.get_logger(__name__)

# (incident, event, text) -> delivered to humans (manual / approval requests).
NotifyCallback = Callable[[Incident, NotificationEvent, str], Awaitable[None]]

_OUTPUT_LIMIT = 4000


class _SafeParams(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def substitute(value: Any, params: dict[str, Any]) -> Any:
    """Replace ``{name}`` placeholders in strings nested inside *value*."""
    if isinstance(value, str):
        try:
            return value.format_map(_SafeParams(params))
        except (ValueError, IndexError, AttributeError):
            return value
    if isinstance(value, list):
        return [substitute(v, params) for v in value]
    if isinstance(value, dict):
        return {k: substitute(v, params) for k, v in value.items()}
    return value


class StepRunner(abc.ABC):
    """Pluggable executor for individual runbook step kinds.

    Each method returns an output mapping on success and raises
    ``StepFailedError`` (or any exception) on failure.
    """

    @abc.abstractmethod
    async def execute_script(
        self, action: ScriptStepAction, params: dict[str, Any],
    ) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def make_api_call(
        self, action: ApiCallStepAction, params: dict[str, Any],
    ) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def request_manual_action(
        self, step: RunbookStep, incident: Incident, params: dict[str, Any],
    ) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def request_approval(
        self, step: RunbookStep, incident: Incident, params: dict[str, Any],
    ) -> dict[str, Any]: ...

    async def close(self) -> None:
        """Release resources."""


class DefaultStepRunner(StepRunner):
    """Runs scripts as subprocesses and API calls through httpx."""

    def __init__(
        self,
        notify: NotifyCallback | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._notify = notify
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self._client

    async def execute_script(
        self, action: ScriptStepAction, params: dict[str, Any],
    ) -> dict[str, Any]:
        argv = [str(a) for a in substitute(action.command, params)]
        env = {**os.environ, **substitute(action.env, params)} if action.env else None
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=action.cwd,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Step timed out: do not leave the child running.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        out = stdout.decode(errors="replace")[-_OUTPUT_LIMIT:]
        err = stderr.decode(errors="replace")[-_OUTPUT_LIMIT:]
        if proc.returncode != 0:
            raise StepFailedError(f"{argv[0]} exited with {proc.returncode}: {err.strip()}")
        return {"exit_code": proc.returncode, "stdout": out, "stderr": err}

    async def make_api_call(
        self, action: ApiCallStepAction, params: dict[str, Any],
    ) -> dict[str, Any]:
        url = substitute(action.url, params)
        body = substitute(action.body, params) if action.body is not None else None
        resp = await self._get_client().request(
            action.method.upper(),
            url,
            headers=substitute(action.headers, params),
            json=body,
        )
        if resp.status_code not in action.expected_status:
            raise StepFailedError(
                f"{action.method.upper()} {url} returned {resp.status_code}"
            )
        return {"status_code": resp.status_code, "body": resp.text[:_OUTPUT_LIMIT]}

    async def request_manual_action(
        self, step: RunbookStep, incident: Incident, params: dict[str, Any],
    ) -> dict[str, Any]:
        text = substitute(getattr(step.action, "instructions", "") or step.description, params)
        logger.info("manual_action_requested", incident_id=incident.id, step_id=step.id)
        if self._notify is not None:
            await self._notify(incident, NotificationEvent.MANUAL_ACTION, text)
        return {"status": "manual_action_requested", "instructions": text}

    async def request_approval(
        self, step: RunbookStep, incident: Incident, params: dict[str, Any],
    ) -> dict[str, Any]:
        text = substitute(getattr(step.action, "prompt", "") or step.description, params)
        logger.info("approval_requested", incident_id=incident.id, step_id=step.id)
        if self._notify is not None:
            await self._notify(incident, NotificationEvent.APPROVAL_REQUEST, text)
        return {"status": "approval_requested", "prompt": text}

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
