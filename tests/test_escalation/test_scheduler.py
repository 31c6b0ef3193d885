"""Tests for src/escalation/scheduler.py — timed levels, cancellation, generations."""

from __future__ import annotations

import asyncio

from src.core.types import EscalationPolicy
from src.escalation.scheduler import EscalationHandler, EscalationScheduler

# Delays are expressed in minutes; tests shrink a "minute" to 10ms.
_MINUTE = 0.01


def _policy(*delays: float) -> EscalationPolicy:
    return EscalationPolicy(
        id="p1",
        name="Policy",
        levels=[
            {"level": i + 1, "delay_minutes": d}  # type: ignore[misc]
            for i, d in enumerate(delays)
        ],
    )


class FakeHandler(EscalationHandler):
    def __init__(self) -> None:
        self.executed: list[tuple[str, int]] = []
        self.scheduled: list[tuple[str, int, float]] = []
        self.finished: list[tuple[str, str]] = []
        self.active = True
        self.result = True
        self.fail_on: set[int] = set()
        self.done = asyncio.Event()
        self.level_ran = asyncio.Event()
        # When set, levels block on it so tests can act mid-level.
        self.gate: asyncio.Event | None = None
        self.completed: list[int] = []
        self.cancelled: list[int] = []

    async def execute_level(self, key: str, policy: EscalationPolicy, index: int) -> bool:
        self.executed.append((key, index))
        self.level_ran.set()
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled.append(index)
                raise
        if index in self.fail_on:
            raise RuntimeError("level blew up")
        self.completed.append(index)
        return self.result

    def is_active(self, key: str) -> bool:
        return self.active

    def on_scheduled(self, key: str, policy: EscalationPolicy, index: int, fire_at: float) -> None:
        self.scheduled.append((key, index, fire_at))

    async def on_finished(self, key: str, policy: EscalationPolicy, reason: str) -> None:
        self.finished.append((key, reason))
        self.done.set()


def _scheduler(handler: FakeHandler) -> EscalationScheduler:
    return EscalationScheduler(handler, minute_secs=_MINUTE, clock=lambda: 1000.0)


class TestEscalationScheduler:
    async def test_runs_all_levels_in_order(self) -> None:
        handler = FakeHandler()
        sched = _scheduler(handler)
        sched.start("alert:a1", _policy(0, 1, 2))
        await asyncio.wait_for(handler.done.wait(), timeout=2)

        assert handler.executed == [("alert:a1", 0), ("alert:a1", 1), ("alert:a1", 2)]
        assert handler.finished == [("alert:a1", "completed")]
        assert sched.pending("alert:a1") is False

    async def test_on_scheduled_reports_fire_time(self) -> None:
        handler = FakeHandler()
        sched = _scheduler(handler)
        sched.start("alert:a1", _policy(5))
        assert handler.scheduled == [("alert:a1", 0, 1000.0 + 5 * _MINUTE)]
        await sched.shutdown()

    async def test_cancel_stops_future_levels(self) -> None:
        handler = FakeHandler()
        sched = _scheduler(handler)
        sched.start("alert:a1", _policy(0, 100))
        await asyncio.wait_for(handler.level_ran.wait(), timeout=2)
        await asyncio.sleep(0.02)
        assert sched.pending("alert:a1") is True

        assert sched.cancel("alert:a1") is True
        await asyncio.sleep(0.02)
        assert handler.executed == [("alert:a1", 0)]
        assert handler.finished == []
        assert sched.pending_keys() == []

    async def test_cancel_unknown_key(self) -> None:
        sched = _scheduler(FakeHandler())
        assert sched.cancel("alert:missing") is False

    async def test_inactive_entity_stops(self) -> None:
        handler = FakeHandler()
        handler.active = False
        sched = _scheduler(handler)
        sched.start("incident:i1", _policy(0, 0, 0))
        await asyncio.wait_for(handler.done.wait(), timeout=2)
        assert handler.executed == [("incident:i1", 0)]
        assert handler.finished == [("incident:i1", "inactive")]

    async def test_level_refusal_stops(self) -> None:
        handler = FakeHandler()
        handler.result = False
        sched = _scheduler(handler)
        sched.start("alert:a1", _policy(0, 0))
        await asyncio.wait_for(handler.done.wait(), timeout=2)
        assert handler.executed == [("alert:a1", 0)]
        assert handler.finished == [("alert:a1", "inactive")]

    async def test_level_error_does_not_break_chain(self) -> None:
        handler = FakeHandler()
        handler.fail_on = {0}
        sched = _scheduler(handler)
        sched.start("alert:a1", _policy(0, 0))
        await asyncio.wait_for(handler.done.wait(), timeout=2)
        assert handler.executed == [("alert:a1", 0), ("alert:a1", 1)]
        assert handler.finished == [("alert:a1", "completed")]

    async def test_restart_supersedes_pending_level(self) -> None:
        handler = FakeHandler()
        sched = _scheduler(handler)
        policy = _policy(2)
        sched.start("alert:a1", policy)
        sched.start("alert:a1", policy)
        await asyncio.wait_for(handler.done.wait(), timeout=2)
        await asyncio.sleep(0.05)
        assert handler.executed == [("alert:a1", 0)]
        assert handler.finished == [("alert:a1", "completed")]

    async def test_keys_are_independent(self) -> None:
        handler = FakeHandler()
        sched = _scheduler(handler)
        sched.start("alert:a1", _policy(100))
        sched.start("alert:a2", _policy(100))
        sched.cancel("alert:a1")
        assert sched.pending("alert:a1") is False
        assert sched.pending("alert:a2") is True
        await sched.shutdown()

    async def test_shutdown_cancels_everything(self) -> None:
        handler = FakeHandler()
        sched = _scheduler(handler)
        sched.start("alert:a1", _policy(100))
        sched.start("incident:i1", _policy(100))
        assert sorted(sched.pending_keys()) == ["alert:a1", "incident:i1"]
        await sched.shutdown()
        assert sched.pending_keys() == []
        assert handler.executed == []


class TestRunningLevels:
    async def test_cancel_lets_running_level_finish(self) -> None:
        handler = FakeHandler()
        handler.gate = asyncio.Event()
        sched = _scheduler(handler)
        sched.start("incident:i1", _policy(0, 0))
        await asyncio.wait_for(handler.level_ran.wait(), timeout=2)

        assert sched.cancel("incident:i1") is False
        assert sched.pending_keys() == []
        handler.gate.set()
        await asyncio.sleep(0.05)

        assert handler.completed == [0]
        assert handler.cancelled == []
        assert handler.executed == [("incident:i1", 0)]
        assert handler.finished == []

    async def test_restart_does_not_kill_running_level(self) -> None:
        handler = FakeHandler()
        handler.gate = asyncio.Event()
        sched = _scheduler(handler)
        policy = _policy(0, 100)
        sched.start("alert:a1", policy)
        await asyncio.wait_for(handler.level_ran.wait(), timeout=2)

        sched.start("alert:a1", policy)
        handler.gate.set()
        await asyncio.sleep(0.05)

        assert handler.cancelled == []
        assert handler.completed == [0, 0]
        # Only the restarted chain schedules its second level.
        assert sched.pending_keys() == ["alert:a1"]
        await sched.shutdown()

    async def test_shutdown_cancels_running_level(self) -> None:
        handler = FakeHandler()
        handler.gate = asyncio.Event()
        sched = _scheduler(handler)
        sched.start("alert:a1", _policy(0))
        await asyncio.wait_for(handler.level_ran.wait(), timeout=2)

        await asyncio.wait_for(sched.shutdown(), timeout=2)
        assert handler.cancelled == [0]


class TestGenerations:
    async def test_finished_chain_is_forgotten(self) -> None:
        handler = FakeHandler()
        sched = _scheduler(handler)
        sched.start("alert:a1", _policy(0, 0))
        await asyncio.wait_for(handler.done.wait(), timeout=2)
        assert sched._generations == {}

    async def test_cancelled_chain_is_forgotten(self) -> None:
        sched = _scheduler(FakeHandler())
        sched.start("alert:a1", _policy(100))
        sched.cancel("alert:a1")
        assert sched._generations == {}
