"""Tests for AbortSignal and ExecutionGuard."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from agentkernel.agent.cancellation import AbortSignal, ExecutionGuard
from agentkernel.agent.errors import AgentBusyError
from agentkernel.agent.state import AgentRunState


def test_fire_is_idempotent_and_runs_callbacks_once():
    calls = []

    async def run():
        signal = AbortSignal()
        signal.add_callback(lambda: calls.append("cb"))
        assert signal.fire("stop") is True
        assert signal.fire("again") is False
        assert signal.reason == "stop"
        # Late callbacks run immediately
        signal.add_callback(lambda: calls.append("late"))

    asyncio.run(run())
    assert calls == ["cb", "late"]
    print("  PASS: fire idempotent")


def test_tracked_task_is_cancelled():
    async def run():
        signal = AbortSignal()
        task = asyncio.ensure_future(asyncio.sleep(10))
        signal.track(task)
        signal.fire()
        with pytest.raises(asyncio.CancelledError):
            await task
        return task.cancelled()

    assert asyncio.run(run()) is True
    print("  PASS: tracked task cancelled")


def test_guard_state_machine():
    async def run():
        guard = ExecutionGuard()
        assert guard.state == AgentRunState.IDLE
        assert guard.abort() is False

        guard.begin()
        assert guard.state == AgentRunState.EXECUTING
        assert guard.is_running
        with pytest.raises(AgentBusyError):
            guard.begin()

        assert guard.abort("user") is True
        assert guard.state == AgentRunState.ABORTING
        assert guard.abort("user") is False

        final = guard.settle(AgentRunState.COMPLETED)
        assert final == AgentRunState.ABORTED
        assert guard.state == AgentRunState.IDLE
        assert guard.last_state == AgentRunState.ABORTED

        guard.begin()
        assert guard.settle(AgentRunState.COMPLETED) == AgentRunState.COMPLETED

    asyncio.run(run())
    print("  PASS: guard state machine")


def test_busy_error_kind():
    err = AgentBusyError()
    assert err.kind == "precondition"
    assert "already executing" in str(err)
    print("  PASS: busy error")


def test_idle_watchdog_aborts():
    async def run():
        guard = ExecutionGuard(abort_on_idle_seconds=0.05)
        signal = guard.begin()
        await asyncio.wait_for(signal.wait(), timeout=2)
        assert signal.reason == "idle timeout"
        return guard.settle(AgentRunState.COMPLETED)

    assert asyncio.run(run()) == AgentRunState.ABORTED
    print("  PASS: idle watchdog")
