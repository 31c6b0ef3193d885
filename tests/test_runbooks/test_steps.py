"""Tests for DefaultStepRunner — subprocess scripts, httpx calls, human requests."""

from __future__ import annotations

import sys

import httpx
import pytest

from src.core.types import (
    ApiCallStepAction,
    Incident,
    NotificationEvent,
    RunbookStep,
    ScriptStepAction,
)
from src.runbooks.exceptions import StepFailedError
from src.runbooks.steps import DefaultStepRunner, substitute


def _incident() -> Incident:
    return Incident(id="inc_1", title="t", severity="high")  # type: ignore[arg-type]


class TestSubstitute:
    def test_nested(self) -> None:
        value = {"url": "/svc/{service}", "args": ["{incident_id}", 3], "n": 1}
        got = substitute(value, {"service": "api", "incident_id": "inc_1"})
        assert got == {"url": "/svc/api", "args": ["inc_1", 3], "n": 1}

    def test_unknown_placeholder_kept(self) -> None:
        assert substitute("{missing}", {}) == "{missing}"


class TestExecuteScript:
    async def test_success_captures_output(self) -> None:
        runner = DefaultStepRunner()
        action = ScriptStepAction(command=[sys.executable, "-c", "print('{incident_id}')"])
        out = await runner.execute_script(action, {"incident_id": "inc_1"})
        assert out["exit_code"] == 0
        assert out["stdout"].strip() == "inc_1"

    async def test_env_passed(self) -> None:
        runner = DefaultStepRunner()
        action = ScriptStepAction(
            command=[sys.executable, "-c", "import os; print(os.environ['TARGET'])"],
            env={"TARGET": "{service}"},
        )
        out = await runner.execute_script(action, {"service": "billing"})
        assert out["stdout"].strip() == "billing"

    async def test_nonzero_exit_raises(self) -> None:
        runner = DefaultStepRunner()
        action = ScriptStepAction(
            command=[sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"],
        )
        with pytest.raises(StepFailedError, match="exited with 3: bad"):
            await runner.execute_script(action, {})


class TestMakeApiCall:
    async def test_substitutes_and_succeeds(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(202, text="accepted")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        runner = DefaultStepRunner(client=client)
        action = ApiCallStepAction(
            url="https://deploy.example.com/services/{service}/restart",
            headers={"X-Incident": "{incident_id}"},
            body={"reason": "incident {incident_id}"},
        )

        out = await runner.make_api_call(action, {"service": "api", "incident_id": "inc_1"})
        await client.aclose()

        assert out == {"status_code": 202, "body": "accepted"}
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == "https://deploy.example.com/services/api/restart"
        assert request.headers["X-Incident"] == "inc_1"
        assert b"incident inc_1" in request.content

    async def test_unexpected_status_raises(self) -> None:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        runner = DefaultStepRunner(client=client)
        with pytest.raises(StepFailedError, match="returned 500"):
            await runner.make_api_call(ApiCallStepAction(method="get", url="https://x/health"), {})
        await client.aclose()

    async def test_close_leaves_injected_client_open(self) -> None:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200)),
        )
        runner = DefaultStepRunner(client=client)
        await runner.close()
        assert client.is_closed is False
        await client.aclose()


class TestHumanSteps:
    async def test_manual_action_notifies(self) -> None:
        sent: list[tuple[str, NotificationEvent, str]] = []

        async def notify(incident: Incident, event: NotificationEvent, text: str) -> None:
            sent.append((incident.id, event, text))

        runner = DefaultStepRunner(notify=notify)
        step = RunbookStep(
            id="m",
            name="Check",
            action={"type": "manual", "instructions": "Inspect {service} logs"},  # type: ignore[arg-type]
        )
        out = await runner.request_manual_action(step, _incident(), {"service": "api"})

        assert out["status"] == "manual_action_requested"
        assert sent == [("inc_1", NotificationEvent.MANUAL_ACTION, "Inspect api logs")]

    async def test_approval_falls_back_to_description(self) -> None:
        sent: list[str] = []

        async def notify(incident: Incident, event: NotificationEvent, text: str) -> None:
            sent.append(text)

        runner = DefaultStepRunner(notify=notify)
        step = RunbookStep(
            id="a",
            name="Approve",
            description="Approve failover",
            action={"type": "approval", "approvers": ["lead"]},  # type: ignore[arg-type]
        )
        out = await runner.request_approval(step, _incident(), {})
        assert out == {"status": "approval_requested", "prompt": "Approve failover"}
        assert sent == ["Approve failover"]

    async def test_without_notify_callback(self) -> None:
        step = RunbookStep(id="m", name="Check", action={"type": "manual"})  # type: ignore[arg-type]
        out = await DefaultStepRunner().request_manual_action(step, _incident(), {})
        assert out["status"] == "manual_action_requested"
