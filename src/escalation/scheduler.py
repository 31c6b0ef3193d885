"""Cancellable, per-entity escalation timers."""

from __future__ import annotations

import abc
import asyncio
import itertools
import time
from collections.abc import Callable

import structlog

from src.core.types import EscalationPolicy

logger = structlog.get_logger(__name__)


class EscalationHandler(abc.ABC):
    """Owner of the escalated entities (the engine implements this)."""

    @abc.abstractmethod
    async def execute_level(self, key: str, policy: EscalationPolicy, index: int) -> bool:
        """Run level *index* for *key*.

        Must re-check the entity's status under its lock and return False,
        without acting, if the entity is no longer escalatable.
        """

    @abc.abstractmethod
    def is_active(self, key: str) -> bool:
        """Whether *key* should keep escalating."""

    def on_scheduled(
        self, key: str, policy: EscalationPolicy, index: int, fire_at: float,
    ) -> None:
        """A level was scheduled to fire at *fire_at* (epoch seconds)."""

    async def on_finished(self, key: str, policy: EscalationPolicy, reason: str) -> None:
        """Escalation of *key* stopped (``completed`` or ``inactive``)."""


class EscalationScheduler:
    """Runs escalation levels on delayed asyncio tasks, one chain per key.

    Keys identify entities (``alert:<id>`` / ``incident:<id>``). Every
    scheduled level gets a fresh generation; a task whose generation is no
    longer current does nothing when it wakes and schedules nothing after
    its level. Only sleeping tasks are ever cancelled: a level that is
    already executing runs to completion (runbooks finish and roll back,
    incidents finish opening) and the stale generation ends the chain.
    """

    def __init__(
        self,
        handler: EscalationHandler,
        minute_secs: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._handler = handler
        self._minute_secs = minute_secs
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}
        # Generations of live chains only; cancelled or finished keys are dropped.
        self._generations: dict[str, int] = {}
        self._counter = itertools.count(1)
        self._executing: set[asyncio.Task[None]] = set()

    def start(self, key: str, policy: EscalationPolicy) -> None:
        """(Re)start escalation of *key* from the first level of *policy*."""
        self._schedule(key, policy, 0)

    def cancel(self, key: str) -> bool:
        """Invalidate *key*'s chain and cancel its timer if still sleeping.

        Returns True if a sleeping task was cancelled.
        """
        self._generations.pop(key, None)
        task = self._tasks.pop(key, None)
        if task is None or task.done() or task in self._executing:
            return False
        task.cancel()
        return True

    def pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def pending_keys(self) -> list[str]:
        return [k for k, t in self._tasks.items() if not t.done()]

    async def shutdown(self) -> None:
        """Cancel every pending level and running level, and wait for the tasks."""
        tasks = set(self._tasks.values()) | self._executing
        self._tasks.clear()
        self._generations.clear()
        current = asyncio.current_task()
        tasks.discard(current)  # type: ignore[arg-type]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Internal ────────────────────────────────────────────────

    def _schedule(self, key: str, policy: EscalationPolicy, index: int) -> None:
        generation = next(self._counter)
        self._generations[key] = generation

        previous = self._tasks.get(key)
        if (
            previous is not None
            and not previous.done()
            and previous is not asyncio.current_task()
            and previous not in self._executing
        ):
            previous.cancel()

        delay = policy.levels[index].delay_minutes * self._minute_secs
        self._handler.on_scheduled(key, policy, index, self._clock() + delay)
        task = asyncio.create_task(
            self._fire(key, policy, index, generation, delay),
            name=f"escalation:{key}:{index}",
        )
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        logger.debug("escalation_scheduled", key=key, policy_id=policy.id, level=index, delay=delay)

    def _forget(self, key: str, task: asyncio.Task[None]) -> None:
        self._executing.discard(task)
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def _is_current(self, key: str, generation: int) -> bool:
        return self._generations.get(key) == generation

    async def _fire(
        self,
        key: str,
        policy: EscalationPolicy,
        index: int,
        generation: int,
        delay: float,
    ) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        if not self._is_current(key, generation):
            return

        # Current generation, so the key still maps to this task.
        task = self._tasks[key]
        self._executing.add(task)
        try:
            executed = await self._handler.execute_level(key, policy, index)
        except Exception:
            logger.exception("escalation_level_error", key=key, policy_id=policy.id, level=index)
            executed = True
        finally:
            self._executing.discard(task)

        # Restarted or cancelled while the level ran.
        if not self._is_current(key, generation):
            return

        if executed and index + 1 < len(policy.levels) and self._handler.is_active(key):
            self._schedule(key, policy, index + 1)
            return

        del self._generations[key]
        reason = "completed" if executed and index + 1 >= len(policy.levels) else "inactive"
        try:
            await self._handler.on_finished(key, policy, reason)
        except Exception:
            logger.exception("escalation_finish_error", key=key, policy_id=policy.id)
