"""Single-flight guard and cooperative cancellation for agent runs.

An ``ExecutionGuard`` belongs to one agent instance and owns its run state.
``begin()`` refuses to start while a run is live, ``abort()`` fires the
run's ``AbortSignal`` and ``settle()`` puts the guard back to IDLE.

Abort is cooperative. The loop checks the signal between steps, the
in-flight model request task is cancelled, and tools that accept a
``signal`` argument can register cleanup callbacks on it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from agentkernel.agent.errors import AgentBusyError
from agentkernel.agent.state import AgentRunState

logger = logging.getLogger(__name__)


class AbortSignal:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], object]] = []
        self._tasks: set[asyncio.Task] = set()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], object]) -> None:
        """Run ``callback`` on abort (immediately if already aborted)."""
        if self.aborted:
            self._run_callback(callback)
        else:
            self._callbacks.append(callback)

    def track(self, task: asyncio.Task) -> None:
        """Cancel ``task`` on abort while it is still running."""
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if self.aborted:
            task.cancel()

    async def wait(self) -> None:
        await self._event.wait()

    def fire(self, reason: str | None = None) -> bool:
        if self.aborted:
            return False
        self.reason = reason
        self._event.set()
        for task in list(self._tasks):
            task.cancel()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)
        return True

    @staticmethod
    def _run_callback(callback: Callable[[], object]) -> None:
        try:
            result = callback()
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)
        except Exception:
            logger.exception("abort callback %r failed", callback)


class ExecutionGuard:
    def __init__(self, abort_on_idle_seconds: float | None = None) -> None:
        self.state = AgentRunState.IDLE
        self.last_state: AgentRunState | None = None
        self.signal: AbortSignal | None = None
        self.abort_on_idle_seconds = abort_on_idle_seconds
        self._last_activity = time.monotonic()
        self._watchdog: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self.state in (AgentRunState.EXECUTING, AgentRunState.ABORTING)

    def begin(self) -> AbortSignal:
        """Move IDLE -> EXECUTING. Raises AgentBusyError before any side effect."""
        if self.state != AgentRunState.IDLE:
            raise AgentBusyError()
        self.state = AgentRunState.EXECUTING
        self.signal = AbortSignal()
        self._last_activity = time.monotonic()
        if self.abort_on_idle_seconds:
            self._watchdog = asyncio.ensure_future(self._watch_idle(self.signal))
        return self.signal

    def touch(self) -> None:
        """Record activity, resetting the idle timer."""
        self._last_activity = time.monotonic()

    def abort(self, reason: str | None = None) -> bool:
        """Signal the live run to stop. Idempotent; False when nothing was signalled."""
        if self.state != AgentRunState.EXECUTING or self.signal is None:
            return False
        self.state = AgentRunState.ABORTING
        logger.info("abort requested (%s)", reason or "user")
        return self.signal.fire(reason)

    def settle(self, final_state: AgentRunState) -> AgentRunState:
        """Finish the run. Returns the terminal state actually recorded."""
        if self.signal is not None and self.signal.aborted:
            final_state = AgentRunState.ABORTED
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        self.signal = None
        self.state = AgentRunState.IDLE
        self.last_state = final_state
        return final_state

    async def _watch_idle(self, signal: AbortSignal) -> None:
        timeout = self.abort_on_idle_seconds
        while not signal.aborted:
            remaining = timeout - (time.monotonic() - self._last_activity)
            if remaining <= 0:
                logger.warning("no activity for %.1fs, aborting run", timeout)
                self.abort("idle timeout")
                return
            await asyncio.sleep(remaining)
