"""RunbookExecutor — ordered steps with retries, timeouts and rollback."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import structlog

from src.core.types import (
    ApiCallStepAction,
    ApprovalStepAction,
    AutomatedRunbook,
    Incident,
    ManualStepAction,
    RunbookResult,
    RunbookStep,
    ScriptStepAction,
    StepResult,
    StepStatus,
    WaitStepAction,
)
from src.runbooks.exceptions import UnknownStepTypeError
from src.runbooks.steps import StepRunner

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger("decision_log")

logger = structlog.get_logger(__name__)


class RunbookExecutor:
    """Executes an AutomatedRunbook against an incident.

    Steps run in order. Each step gets ``retries + 1`` attempts, each bounded
    by the step timeout. A failed step with ``continue_on_failure`` is
    recorded and execution proceeds; any other failure aborts the run,
    marks the remaining steps skipped and, when the step or the runbook
    asks for it, runs every rollback step in order regardless of their
    individual outcomes.

    The executor never touches the incident; the caller records results.
    """

    def __init__(self, step_runner: StepRunner, clock: Callable[[], float] = time.time) -> None:
        self._runner = step_runner
        self._clock = clock

    async def run(
        self,
        runbook: AutomatedRunbook,
        incident: Incident,
        parameters: dict[str, Any] | None = None,
    ) -> RunbookResult:
        params = {"incident_id": incident.id, **(parameters or {})}
        result = RunbookResult(
            runbook_id=runbook.id,
            incident_id=incident.id,
            success=True,
            started_at=self._clock(),
        )
        logger.info("runbook_started", runbook_id=runbook.id, incident_id=incident.id)

        for position, step in enumerate(runbook.steps):
            step_result = await self._run_step(step, incident, params)
            result.step_results.append(step_result)
            if step_result.status == StepStatus.SUCCEEDED:
                continue

            result.errors.append(f"Step failed: {step.name} - {step_result.error}")
            decision_logger.info(
                "runbook_step_failed",
                runbook_id=runbook.id,
                incident_id=incident.id,
                step_id=step.id,
                error=step_result.error,
                continue_on_failure=step.continue_on_failure,
            )
            if step.continue_on_failure:
                continue

            result.success = False
            for skipped in runbook.steps[position + 1:]:
                result.step_results.append(
                    StepResult(step_id=skipped.id, name=skipped.name, status=StepStatus.SKIPPED)
                )
            if step.rollback_on_failure or runbook.rollback_on_failure:
                result.rollback_results = await self._rollback(runbook, incident, params)
                result.rolled_back = True
            break

        result.finished_at = self._clock()
        logger.info(
            "runbook_finished",
            runbook_id=runbook.id,
            incident_id=incident.id,
            success=result.success,
            rolled_back=result.rolled_back,
            errors=len(result.errors),
        )
        return result

    # ── Internal ────────────────────────────────────────────────

    async def _rollback(
        self, runbook: AutomatedRunbook, incident: Incident, params: dict[str, Any],
    ) -> list[StepResult]:
        decision_logger.info(
            "runbook_rollback",
            runbook_id=runbook.id,
            incident_id=incident.id,
            steps=len(runbook.rollback_steps),
        )
        results: list[StepResult] = []
        for step in runbook.rollback_steps:
            step_result = await self._run_step(step, incident, params)
            results.append(step_result)
            logger.info(
                "rollback_step_finished",
                runbook_id=runbook.id,
                step_id=step.id,
                status=step_result.status.value,
                error=step_result.error,
            )
        return results

    async def _run_step(
        self, step: RunbookStep, incident: Incident, params: dict[str, Any],
    ) -> StepResult:
        started = self._clock()
        error: str | None = None
        attempts = 0
        for attempts in range(1, step.retries + 2):
            try:
                output = await asyncio.wait_for(
                    self._attempt(step, incident, params), timeout=step.timeout_secs,
                )
            except TimeoutError:
                error = f"timed out after {step.timeout_secs}s"
            except Exception as exc:
                error = str(exc) or type(exc).__name__
            else:
                return StepResult(
                    step_id=step.id,
                    name=step.name,
                    status=StepStatus.SUCCEEDED,
                    attempts=attempts,
                    output=output,
                    started_at=started,
                    finished_at=self._clock(),
                )
            logger.warning(
                "runbook_step_attempt_failed",
                step_id=step.id,
                attempt=attempts,
                max_attempts=step.retries + 1,
                error=error,
            )
        return StepResult(
            step_id=step.id,
            name=step.name,
            status=StepStatus.FAILED,
            attempts=attempts,
            error=error,
            started_at=started,
            finished_at=self._clock(),
        )

    async def _attempt(
        self, step: RunbookStep, incident: Incident, params: dict[str, Any],
    ) -> dict[str, Any]:
        action = step.action
        if isinstance(action, ScriptStepAction):
            return await self._runner.execute_script(action, params)
        if isinstance(action, ApiCallStepAction):
            return await self._runner.make_api_call(action, params)
        if isinstance(action, ManualStepAction):
            return await self._runner.request_manual_action(step, incident, params)
        if isinstance(action, ApprovalStepAction):
            return await self._runner.request_approval(step, incident, params)
        if isinstance(action, WaitStepAction):
            await asyncio.sleep(action.duration_secs)
            return {"waited": action.duration_secs}
        raise UnknownStepTypeError(f"unsupported step type: {step.action.type}")
