"""Agent: the loop that drives a model and its tools until the task ends.

Every turn rebuilds the conversation from the event stream, asks the model
through the selected tool-call engine, runs any requested tools
concurrently, and appends everything it learns back to the stream. A run
ends COMPLETED (plain answer accepted, or the iteration cap was hit),
ABORTED (cancellation), or ERROR (the model could not be reached).

Subclasses may override the ``on_*`` hooks. A hook that raises is logged
and ignored; for ``on_before_termination`` that means termination is
allowed.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator

from agentkernel.agent.cancellation import AbortSignal, ExecutionGuard
from agentkernel.agent.constants import (
    ABORTED_MESSAGE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TOOL_CONCURRENCY,
    FINISH_REASON_ABORT,
    FINISH_REASON_ERROR,
    FINISH_REASON_MAX_ITERATIONS,
    MAX_ITERATIONS_MESSAGE,
    TOOL_ABORTED_ERROR,
)
from agentkernel.agent.conversation import build_messages
from agentkernel.agent.engines import ToolCallEngine, engine_for_provider, resolve_engine
from agentkernel.agent.errors import ParseError, TransportError
from agentkernel.agent.events import Event, EventStream, EventType
from agentkernel.agent.llm import LLMClient, OpenAICompatibleClient, resolve_model
from agentkernel.agent.state import (
    AgentRunState,
    ParsedResponse,
    RunResult,
    TerminationCheck,
    ToolCallIntent,
    ToolCallResult,
)
from agentkernel.agent.tool_registry import ToolDefinition, ToolRegistry
from agentkernel.config import settings

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = "You are a helpful assistant that can use tools to complete tasks."


@dataclass
class RunContext:
    """Per-run values threaded through the loop instead of instance globals."""

    run_id: str
    signal: AbortSignal
    engine: ToolCallEngine
    stream: bool = False
    iterations: int = 0


class Agent:
    def __init__(
        self,
        *,
        instructions: str = DEFAULT_INSTRUCTIONS,
        tools: ToolRegistry | list[ToolDefinition] | None = None,
        llm_client: LLMClient | None = None,
        provider: str | None = None,
        model: str | None = None,
        engine: str | ToolCallEngine | None = None,
        max_iterations: int | None = None,
        tool_concurrency: int | None = None,
        temperature: float | None = None,
        thinking: bool | None = None,
        max_images: int | None = None,
        abort_on_idle_seconds: float | None = None,
        event_stream: EventStream | None = None,
        session_id: str | None = None,
    ) -> None:
        self.instructions = instructions
        self.registry = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools)
        self.resolved_model = resolve_model(provider, model)
        self.llm = llm_client or OpenAICompatibleClient(self.resolved_model)
        self._engine = engine if engine is not None else settings.TOOL_CALL_ENGINE
        self.max_iterations = max_iterations or settings.MAX_ITERATIONS or DEFAULT_MAX_ITERATIONS
        self.tool_concurrency = tool_concurrency or settings.TOOL_CONCURRENCY or DEFAULT_TOOL_CONCURRENCY
        self.temperature = temperature if temperature is not None else settings.TEMPERATURE
        self.thinking = settings.THINKING_ENABLED if thinking is None else thinking
        self.max_images = max_images
        self.events = event_stream or EventStream()
        self.session_id = session_id or uuid.uuid4().hex
        self.guard = ExecutionGuard(
            abort_on_idle_seconds
            if abort_on_idle_seconds is not None
            else settings.ABORT_ON_IDLE_SECONDS
        )
        self.last_result: RunResult | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> AgentRunState:
        return self.guard.state

    def abort(self, reason: str | None = None) -> bool:
        """Abort the live run, if any. Safe to call any number of times."""
        return self.guard.abort(reason)

    async def run(self, user_input: Any) -> RunResult:
        """Run one task to completion and return its result.

        Raises AgentBusyError, before appending anything, when a run is live.
        """
        signal = self.guard.begin()
        return await self._execute(signal, user_input, stream=False)

    def run_streaming(self, user_input: Any) -> AsyncIterator[Event]:
        """Start a streaming run and return an async iterator over its events.

        The busy check happens here, synchronously, not on first iteration.
        Closing the iterator early aborts the run.
        """
        signal = self.guard.begin()
        return self._stream_events(signal, user_input)

    def start(self, user_input: Any, stream: bool = False) -> asyncio.Task:
        """Begin a run in the background and return its task.

        Raises AgentBusyError synchronously, like ``run``.
        """
        signal = self.guard.begin()
        return asyncio.ensure_future(self._execute(signal, user_input, stream=stream))

    # ------------------------------------------------------------------
    # Overridable hooks
    # ------------------------------------------------------------------

    async def on_llm_request(self, request: dict) -> None:
        return None

    async def on_llm_response(self, parsed: ParsedResponse) -> None:
        return None

    async def on_before_tool_call(self, intent: ToolCallIntent, args: dict) -> dict:
        """Return the arguments to execute the tool with."""
        return args

    async def on_after_tool_call(
        self, intent: ToolCallIntent, result: ToolCallResult
    ) -> ToolCallResult:
        return result

    async def on_tool_call_error(
        self, intent: ToolCallIntent, result: ToolCallResult
    ) -> ToolCallResult:
        return result

    async def on_before_termination(self, final_event: Event) -> TerminationCheck:
        """Approve or veto finishing on a plain answer."""
        return TerminationCheck(finished=True)

    async def _call_hook(self, hook_name: str, default: Any, *args: Any) -> Any:
        try:
            return await getattr(self, hook_name)(*args)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("hook %s failed, ignoring", hook_name)
            return default

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _select_engine(self) -> ToolCallEngine:
        if isinstance(self._engine, ToolCallEngine):
            return self._engine
        if self._engine:
            return resolve_engine(self._engine)
        return engine_for_provider(self.resolved_model.provider)

    async def _execute(
        self, signal: AbortSignal, user_input: Any, stream: bool
    ) -> RunResult:
        ctx = RunContext(
            run_id=uuid.uuid4().hex,
            signal=signal,
            engine=self._select_engine(),
            stream=stream,
        )
        start = time.monotonic()
        unsubscribe = self.events.subscribe(lambda _event: self.guard.touch())
        result: RunResult | None = None

        self.events.emit(
            EventType.AGENT_RUN_START,
            session_id=self.session_id,
            run_id=ctx.run_id,
            provider=self.resolved_model.provider,
            model=self.resolved_model.model,
            engine=ctx.engine.name,
        )
        self.events.emit(EventType.USER_MESSAGE, content=user_input)

        try:
            result = await self._loop(ctx)
        except TransportError as e:
            logger.error("run %s failed: %s", ctx.run_id, e)
            self.events.emit(EventType.SYSTEM, level="error", message=str(e))
            result = RunResult(
                state=AgentRunState.ERROR, finish_reason=FINISH_REASON_ERROR, error=str(e)
            )
        except asyncio.CancelledError:
            # Cancelled from outside, e.g. the caller's task was cancelled
            signal.fire("cancelled")
            result = RunResult(state=AgentRunState.ABORTED, finish_reason=FINISH_REASON_ABORT)
            raise
        except Exception as e:
            logger.exception("run %s failed", ctx.run_id)
            message = f"{type(e).__name__}: {e}"
            self.events.emit(EventType.SYSTEM, level="error", message=message)
            result = RunResult(
                state=AgentRunState.ERROR, finish_reason=FINISH_REASON_ERROR, error=message
            )
        finally:
            unsubscribe()
            if result is None:
                result = RunResult(state=AgentRunState.ERROR, finish_reason=FINISH_REASON_ERROR)
            result.state = self.guard.settle(result.state)
            result.iterations = ctx.iterations
            result.elapsed_ms = int((time.monotonic() - start) * 1000)
            self.events.emit(
                EventType.AGENT_RUN_END,
                session_id=self.session_id,
                run_id=ctx.run_id,
                iterations=result.iterations,
                elapsed_ms=result.elapsed_ms,
                status=result.state.value,
            )
            self.last_result = result
            logger.info(
                "run %s ended: %s after %d iterations (%d ms)",
                ctx.run_id,
                result.state.value,
                result.iterations,
                result.elapsed_ms,
            )
        return result

    async def _stream_events(
        self, signal: AbortSignal, user_input: Any
    ) -> AsyncIterator[Event]:
        queue: asyncio.Queue[Event] = asyncio.Queue()
        unsubscribe = self.events.subscribe(queue.put_nowait)
        task = asyncio.ensure_future(self._execute(signal, user_input, stream=True))
        try:
            while True:
                event = await queue.get()
                yield event
                if event.type == EventType.AGENT_RUN_END:
                    break
            await task
        finally:
            unsubscribe()
            if not task.done():
                signal.fire("stream closed")
                await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _loop(self, ctx: RunContext) -> RunResult:
        while ctx.iterations < self.max_iterations:
            if ctx.signal.aborted:
                return self._aborted(ctx)

            ctx.iterations += 1
            logger.info("run %s: iteration %d", ctx.run_id, ctx.iterations)

            parsed = await self._call_model(ctx)
            if parsed is None or ctx.signal.aborted:
                return self._aborted(ctx)
            await self._call_hook("on_llm_response", None, parsed)

            assistant_event = self.events.emit(
                EventType.ASSISTANT_MESSAGE,
                content=parsed.content,
                tool_calls=[asdict(tc) for tc in parsed.tool_calls],
                finish_reason=parsed.finish_reason,
                reasoning_content=parsed.reasoning_content,
                iteration=ctx.iterations,
            )

            if parsed.tool_calls:
                await self._run_tools(ctx, parsed.tool_calls)
                continue

            check = await self._call_hook(
                "on_before_termination", TerminationCheck(finished=True), assistant_event
            )
            if check.finished:
                return RunResult(
                    state=AgentRunState.COMPLETED,
                    content=parsed.content,
                    finish_reason=parsed.finish_reason,
                    final_event=assistant_event,
                )

            logger.warning("run %s: termination vetoed: %s", ctx.run_id, check.message)
            self.events.emit(
                EventType.SYSTEM,
                level="info",
                message=f"Loop continuation requested: {check.message or 'no reason given'}",
            )
            if check.message:
                self.events.emit(EventType.USER_MESSAGE, content=check.message, synthetic=True)

        logger.warning("run %s: reached max iterations (%d)", ctx.run_id, self.max_iterations)
        self.events.emit(
            EventType.SYSTEM,
            level="warning",
            message=f"Maximum iterations reached ({self.max_iterations}), forcing termination",
        )
        final_event = self.events.emit(
            EventType.ASSISTANT_MESSAGE,
            content=MAX_ITERATIONS_MESSAGE,
            tool_calls=[],
            finish_reason=FINISH_REASON_MAX_ITERATIONS,
        )
        return RunResult(
            state=AgentRunState.COMPLETED,
            content=MAX_ITERATIONS_MESSAGE,
            finish_reason=FINISH_REASON_MAX_ITERATIONS,
            final_event=final_event,
        )

    def _aborted(self, ctx: RunContext) -> RunResult:
        self.events.emit(EventType.SYSTEM, level="warning", message="Execution aborted")
        final_event = self.events.emit(
            EventType.ASSISTANT_MESSAGE,
            content=ABORTED_MESSAGE,
            tool_calls=[],
            finish_reason=FINISH_REASON_ABORT,
        )
        return RunResult(
            state=AgentRunState.ABORTED,
            content=ABORTED_MESSAGE,
            finish_reason=FINISH_REASON_ABORT,
            final_event=final_event,
        )

    # ------------------------------------------------------------------
    # Model turn
    # ------------------------------------------------------------------

    def build_request(self, engine: ToolCallEngine, stream: bool) -> dict:
        tools = self.registry.list_tools()
        messages = build_messages(
            self.events.get_events(),
            engine,
            engine.prepare_system_prompt(self.instructions, tools),
            max_images=self.max_images,
        )
        request = engine.build_request(
            model=self.resolved_model.model,
            messages=messages,
            tools=tools,
            temperature=self.temperature,
            stream=stream,
        )
        if self.thinking:
            request["extra_body"] = {"thinking": {"type": "enabled"}}
        return request

    async def _call_model(self, ctx: RunContext) -> ParsedResponse | None:
        """One model turn. Returns None when the run was aborted meanwhile."""
        request = self.build_request(ctx.engine, ctx.stream)
        await self._call_hook("on_llm_request", None, request)

        task = asyncio.ensure_future(self._request(ctx, request))
        ctx.signal.track(task)
        try:
            return await task
        except asyncio.CancelledError:
            if ctx.signal.aborted:
                return None
            raise

    async def _request(self, ctx: RunContext, request: dict) -> ParsedResponse:
        engine = ctx.engine
        response = await self.llm.complete(request)
        if not ctx.stream:
            return engine.parse_response(response)

        state = engine.init_stream_state()
        async for chunk in response:
            if ctx.signal.aborted:
                break
            update = engine.process_chunk(chunk, state)
            if update.reasoning_content:
                self.events.emit(
                    EventType.ASSISTANT_THINKING_MESSAGE,
                    content=update.reasoning_content,
                    streaming=True,
                )
            if update.content:
                self.events.emit(
                    EventType.ASSISTANT_STREAMING_MESSAGE,
                    content=update.content,
                    iteration=ctx.iterations,
                )
        return engine.finalize_stream(state)

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _run_tools(self, ctx: RunContext, intents: list[ToolCallIntent]) -> None:
        """Execute every intent of one turn; returns once all have settled."""
        semaphore = asyncio.Semaphore(self.tool_concurrency)

        async def bounded(intent: ToolCallIntent) -> None:
            async with semaphore:
                await self._execute_tool(ctx, intent)

        await asyncio.gather(*(bounded(intent) for intent in intents))

    async def _execute_tool(self, ctx: RunContext, intent: ToolCallIntent) -> ToolCallResult:
        self.events.emit(
            EventType.TOOL_CALL,
            tool_call_id=intent.call_id,
            name=intent.tool_name,
            arguments=intent.raw_arguments,
        )

        if ctx.signal.aborted:
            result = ToolCallResult(intent.call_id, intent.tool_name, error=TOOL_ABORTED_ERROR)
        else:
            result = await self._invoke_tool(ctx, intent)

        if result.error is not None:
            result = await self._call_hook("on_tool_call_error", result, intent, result)
        else:
            result = await self._call_hook("on_after_tool_call", result, intent, result)

        self.events.emit(
            EventType.TOOL_RESULT,
            tool_call_id=result.call_id,
            name=result.tool_name,
            content=result.content,
            error=result.error,
            elapsed_ms=result.execution_time_ms,
        )
        return result

    async def _invoke_tool(self, ctx: RunContext, intent: ToolCallIntent) -> ToolCallResult:
        try:
            args = intent.arguments()
        except ParseError as e:
            logger.warning("run %s: %s", ctx.run_id, e)
            return ToolCallResult(intent.call_id, intent.tool_name, error=str(e))

        args = await self._call_hook("on_before_tool_call", args, intent, args)

        # A started tool always runs to completion; tools that accept ``signal``
        # can wind themselves down early.
        return await self.registry.execute(
            intent.tool_name, intent.call_id, args, signal=ctx.signal
        )
