"""GUIAgent: screenshot -> model -> parse -> operator, until done.

Each turn captures the screen, shows the model the instruction plus recent
screenshots, parses its ``Thought/Action`` reply and executes every
parsed action through the operator. ``finished`` and ``call_user`` end the
run, ``error_env`` fails it, and the loop gives up after too many turns or
too many unusable screenshots. Everything is appended to an EventStream,
and the same ExecutionGuard as the tool agent gives single-flight runs and
abort.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Sequence

from agentkernel.agent.cancellation import AbortSignal, ExecutionGuard
from agentkernel.agent.conversation import build_messages
from agentkernel.agent.engines import NativeToolCallEngine
from agentkernel.agent.engines.utils import field_of, first_choice, generate_call_id
from agentkernel.agent.errors import TransportError
from agentkernel.agent.events import EventStream, EventType
from agentkernel.agent.llm import LLMClient, OpenAICompatibleClient, resolve_model
from agentkernel.agent.state import AgentRunState
from agentkernel.gui.action_parser import PredictionParsed, ScreenContext, parse
from agentkernel.gui.constants import (
    ACTION_CALL_USER,
    ACTION_ERROR_ENV,
    ACTION_FINISHED,
    ACTION_MAX_LOOP,
    ACTION_USER_STOP,
    DEFAULT_FACTORS,
    MAX_IMAGE_LENGTH,
    MAX_LOOP_COUNT,
    MAX_SNAPSHOT_ERR_CNT,
    MODEL_VERSION_1_0,
    SNAPSHOT_RETRY_DELAY_SECONDS,
)
from agentkernel.gui.operator import GUIStatus, Operator, ScreenshotOutput
from agentkernel.services.template_engine import get_template_engine

logger = logging.getLogger(__name__)

_REFLECTION_RE = re.compile(r"Reflection:[\s\S]*?(?=Action_Summary:|Action:|$)")

_STATUS_TO_RUN_STATE = {
    GUIStatus.END: AgentRunState.COMPLETED,
    GUIStatus.CALL_USER: AgentRunState.COMPLETED,
    GUIStatus.USER_STOPPED: AgentRunState.ABORTED,
    GUIStatus.ERROR: AgentRunState.ERROR,
}


def get_summary(prediction: str) -> str:
    """Drop the Reflection section before the reply goes into history."""
    return _REFLECTION_RE.sub("", prediction).strip()


@dataclass
class GUIRunResult:
    status: GUIStatus
    iterations: int = 0
    error: str | None = None
    last_prediction: str = ""


class GUIAgent:
    def __init__(
        self,
        *,
        operator: Operator,
        llm_client: LLMClient | None = None,
        provider: str | None = None,
        model: str | None = None,
        system_prompt: str | None = None,
        language: str = "English",
        factors: Sequence[float] = DEFAULT_FACTORS,
        dialect: str = "bc",
        model_version: str = MODEL_VERSION_1_0,
        max_loop_count: int = MAX_LOOP_COUNT,
        max_images: int = MAX_IMAGE_LENGTH,
        loop_interval_seconds: float = 0.0,
        screenshot_retries: int = 0,
        abort_on_idle_seconds: float | None = None,
        event_stream: EventStream | None = None,
    ) -> None:
        self.operator = operator
        self.resolved_model = resolve_model(provider, model)
        self.llm = llm_client or OpenAICompatibleClient(self.resolved_model)
        self.system_prompt = system_prompt or get_template_engine().render(
            "gui_system_prompt.j2",
            action_spaces=operator.ACTION_SPACES,
            language=language,
        )
        self.factors = tuple(factors)
        self.dialect = dialect
        self.model_version = model_version
        self.max_loop_count = max_loop_count
        self.max_images = max_images
        self.loop_interval_seconds = loop_interval_seconds
        self.screenshot_retries = screenshot_retries
        self.events = event_stream or EventStream()
        self.guard = ExecutionGuard(abort_on_idle_seconds)
        self._engine = NativeToolCallEngine()

    @property
    def state(self) -> AgentRunState:
        return self.guard.state

    def abort(self, reason: str | None = None) -> bool:
        return self.guard.abort(reason)

    async def run(self, instruction: str) -> GUIRunResult:
        signal = self.guard.begin()
        start = time.monotonic()
        run_id = uuid.uuid4().hex
        unsubscribe = self.events.subscribe(lambda _event: self.guard.touch())
        result = GUIRunResult(status=GUIStatus.RUNNING)

        self.events.emit(
            EventType.AGENT_RUN_START,
            run_id=run_id,
            provider=self.resolved_model.provider,
            model=self.resolved_model.model,
            agent="gui",
        )
        self.events.emit(EventType.USER_MESSAGE, content=instruction)

        try:
            await self._loop(signal, result)
        except asyncio.CancelledError:
            signal.fire("cancelled")
            result.status = GUIStatus.USER_STOPPED
            raise
        except Exception as e:
            logger.exception("GUI run %s failed", run_id)
            result.status = GUIStatus.ERROR
            result.error = f"{type(e).__name__}: {e}"
        finally:
            unsubscribe()
            if signal.aborted:
                result.status = GUIStatus.USER_STOPPED
            if result.status == GUIStatus.USER_STOPPED:
                await self._notify_user_stop()
            if result.error:
                self.events.emit(EventType.SYSTEM, level="error", message=result.error)
            self.guard.settle(_STATUS_TO_RUN_STATE.get(result.status, AgentRunState.COMPLETED))
            self.events.emit(
                EventType.AGENT_RUN_END,
                run_id=run_id,
                iterations=result.iterations,
                elapsed_ms=int((time.monotonic() - start) * 1000),
                status=result.status.value,
            )
            logger.info("GUI run %s finished: %s", run_id, result.status.value)
        return result

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _loop(self, signal: AbortSignal, result: GUIRunResult) -> None:
        snapshot_errors = 0

        while True:
            if signal.aborted:
                result.status = GUIStatus.USER_STOPPED
                return
            if result.iterations >= self.max_loop_count:
                result.status = GUIStatus.ERROR
                result.error = f"Reached max loop count ({self.max_loop_count})"
                return
            if snapshot_errors >= MAX_SNAPSHOT_ERR_CNT:
                result.status = GUIStatus.ERROR
                result.error = "Too many screenshot failures"
                return

            result.iterations += 1
            logger.info("GUI loop %d", result.iterations)

            snapshot = await self._screenshot()
            if snapshot is None or not snapshot.is_valid:
                result.iterations -= 1
                snapshot_errors += 1
                await asyncio.sleep(SNAPSHOT_RETRY_DELAY_SECONDS)
                continue

            self.events.emit(
                EventType.ENVIRONMENT_INPUT,
                content=[{"type": "image_url", "image_url": {"url": snapshot.data_url()}}],
                width=snapshot.physical_width,
                height=snapshot.physical_height,
                scale_factor=snapshot.scale_factor,
            )

            prediction = await self._invoke_model(signal, result)
            if prediction is None:
                return
            if not prediction:
                logger.error("empty model response")
                continue

            predictions = parse(
                prediction,
                factor=self.factors,
                dialect=self.dialect,
                screen_context=ScreenContext(snapshot.physical_width, snapshot.physical_height),
                scale_factor=snapshot.scale_factor,
                model_version=self.model_version,
            )
            result.last_prediction = prediction
            self.events.emit(
                EventType.ASSISTANT_MESSAGE,
                content=get_summary(prediction),
                tool_calls=[],
                predictions=[p.to_dict() for p in predictions],
            )

            if await self._execute_predictions(signal, predictions, snapshot, result):
                return

            if self.loop_interval_seconds > 0:
                await asyncio.sleep(self.loop_interval_seconds)

    async def _screenshot(self) -> ScreenshotOutput | None:
        for attempt in range(self.screenshot_retries + 1):
            try:
                return await self.operator.screenshot()
            except Exception as e:
                logger.warning(
                    "screenshot attempt %d/%d failed: %s",
                    attempt + 1,
                    self.screenshot_retries + 1,
                    e,
                )
        return None

    async def _invoke_model(self, signal: AbortSignal, result: GUIRunResult) -> str | None:
        """Return the reply text, "" for an empty reply, None when the run must stop."""
        messages = build_messages(
            self.events.get_events(),
            self._engine,
            self.system_prompt,
            max_images=self.max_images,
        )
        task = asyncio.ensure_future(
            self.llm.complete(
                {
                    "model": self.resolved_model.model,
                    "messages": messages,
                    "temperature": 0,
                    "stream": False,
                }
            )
        )
        signal.track(task)
        try:
            response = await task
        except asyncio.CancelledError:
            if signal.aborted:
                result.status = GUIStatus.USER_STOPPED
                return None
            raise
        except TransportError as e:
            result.status = GUIStatus.ERROR
            result.error = str(e)
            return None

        message = field_of(first_choice(response), "message")
        return field_of(message, "content") or ""

    async def _execute_predictions(
        self,
        signal: AbortSignal,
        predictions: list[PredictionParsed],
        snapshot: ScreenshotOutput,
        result: GUIRunResult,
    ) -> bool:
        """Run each parsed action. Returns True when the run is over."""
        for prediction in predictions:
            action_type = prediction.action_type
            logger.info("action: %s %s", action_type, prediction.action_inputs)

            if action_type == ACTION_ERROR_ENV:
                result.status = GUIStatus.ERROR
                result.error = "Environment error reported by the model"
                return True
            if action_type == ACTION_MAX_LOOP:
                result.status = GUIStatus.ERROR
                result.error = f"Reached max loop count ({self.max_loop_count})"
                return True

            if not signal.aborted:
                call_id = generate_call_id()
                self.events.emit(
                    EventType.TOOL_CALL,
                    tool_call_id=call_id,
                    name=action_type,
                    arguments=json.dumps(prediction.action_inputs, ensure_ascii=False),
                )
                error = None
                output = None
                try:
                    output = await self.operator.execute(prediction, snapshot)
                except Exception as e:
                    logger.exception("operator failed on %s", action_type)
                    error = f"{type(e).__name__}: {e}"
                self.events.emit(
                    EventType.TOOL_RESULT,
                    tool_call_id=call_id,
                    name=action_type,
                    content=output.status.value if output and output.status else None,
                    error=error,
                    elapsed_ms=0,
                )
                if error is not None:
                    result.status = GUIStatus.ERROR
                    result.error = error
                    return True

            if action_type == ACTION_CALL_USER:
                result.status = GUIStatus.CALL_USER
                return True
            if action_type == ACTION_FINISHED:
                result.status = GUIStatus.END
                return True
            if signal.aborted:
                result.status = GUIStatus.USER_STOPPED
                return True
        return False

    async def _notify_user_stop(self) -> None:
        try:
            await self.operator.execute(
                PredictionParsed(action_type=ACTION_USER_STOP),
                ScreenshotOutput(image_base64="", physical_width=0, physical_height=0),
            )
        except Exception:
            logger.exception("operator failed to handle user_stop")
