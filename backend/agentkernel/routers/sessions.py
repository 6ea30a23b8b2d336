from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from agentkernel.agent.core import DEFAULT_INSTRUCTIONS, Agent
from agentkernel.agent.errors import AgentBusyError
from agentkernel.agent.events import Event, EventStream
from agentkernel.agent.remote_tools import HttpToolProvider, RemoteToolAdapter
from agentkernel.agent.tool_registry import ToolRegistry
from agentkernel.db import EventLogWriter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


class CreateSessionRequest(BaseModel):
    instructions: str | None = None
    provider: str | None = None
    model: str | None = None
    engine: str | None = None
    max_iterations: int | None = None
    tools_url: str | None = None
    stream: bool = False
    input: str | None = None


class MessageRequest(BaseModel):
    content: str


@dataclass
class AgentSession:
    id: str
    agent: Agent
    writer: EventLogWriter | None = None
    tool_provider: HttpToolProvider | None = None
    stream: bool = False
    tasks: set[asyncio.Task] = field(default_factory=set)

    def start_run(self, content: str) -> None:
        """Start a run in the background. Raises AgentBusyError if one is live."""
        task = self.agent.start(content, stream=self.stream)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def close(self) -> None:
        self.agent.abort("session closed")
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        if self.writer is not None:
            await self.writer.aclose()
        if self.tool_provider is not None:
            await self.tool_provider.aclose()


# Live sessions keyed by session id
_sessions: dict[str, AgentSession] = {}


def _get_session(session_id: str) -> AgentSession:
    session = _sessions.get(session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session


async def close_all_sessions() -> None:
    for session_id in list(_sessions):
        await _sessions.pop(session_id).close()


@router.post("/sessions")
async def create_session(body: CreateSessionRequest):
    session_id = uuid.uuid4().hex
    registry = ToolRegistry()
    tool_provider = None
    if body.tools_url:
        tool_provider = HttpToolProvider(body.tools_url)
        try:
            await RemoteToolAdapter(tool_provider).register_all(registry)
        except Exception as e:
            await tool_provider.aclose()
            raise HTTPException(502, f"Could not load tools: {e}")

    agent = Agent(
        instructions=body.instructions or DEFAULT_INSTRUCTIONS,
        tools=registry,
        provider=body.provider,
        model=body.model,
        engine=body.engine,
        max_iterations=body.max_iterations,
        event_stream=EventStream(),
        session_id=session_id,
    )
    writer = EventLogWriter(session_id)
    writer.attach(agent.events)

    session = AgentSession(
        id=session_id,
        agent=agent,
        writer=writer,
        tool_provider=tool_provider,
        stream=body.stream,
    )
    _sessions[session_id] = session
    logger.info("created session %s with %d tools", session_id, len(registry.names()))

    if body.input:
        session.start_run(body.input)
    return {"session_id": session_id, "state": agent.state.value, "tools": registry.names()}


@router.post("/sessions/{session_id}/messages")
async def post_message(session_id: str, body: MessageRequest):
    session = _get_session(session_id)
    try:
        session.start_run(body.content)
    except AgentBusyError as e:
        raise HTTPException(409, str(e))
    return {"session_id": session_id, "state": session.agent.state.value}


@router.get("/sessions/{session_id}/events")
async def get_events(session_id: str, types: str | None = None, limit: int | None = None):
    session = _get_session(session_id)
    type_filter = [t for t in types.split(",") if t] if types else None
    try:
        events = session.agent.events.get_events(types=type_filter, limit=limit)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return [e.to_dict() for e in events]


@router.post("/sessions/{session_id}/abort")
async def abort_session(session_id: str):
    session = _get_session(session_id)
    aborted = session.agent.abort("aborted by user")
    return {"session_id": session_id, "aborted": aborted, "state": session.agent.state.value}


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    session = _get_session(session_id)
    del _sessions[session_id]
    await session.close()
    return {"session_id": session_id, "deleted": True}


async def _send(ws: WebSocket, msg_type: str, data: dict | None = None):
    await ws.send_text(json.dumps({"type": msg_type, **(data or {})}, default=str))


@router.websocket("/ws/sessions/{session_id}")
async def session_ws(ws: WebSocket, session_id: str):
    await ws.accept()

    session = _sessions.get(session_id)
    if session is None:
        await _send(ws, "error", {"message": "Session not found"})
        await ws.close()
        return

    queue: asyncio.Queue[Event] = asyncio.Queue()
    unsubscribe = session.agent.events.subscribe(queue.put_nowait)

    async def forward_events():
        while True:
            event = await queue.get()
            await ws.send_text(json.dumps(event.to_dict(), default=str))

    forwarder = asyncio.create_task(forward_events())

    try:
        while True:
            raw = await ws.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await _send(ws, "error", {"message": "Invalid JSON"})
                continue

            if payload.get("type") == "stop":
                aborted = session.agent.abort("aborted by user")
                await _send(ws, "stopped", {"aborted": aborted})
                continue

            content = payload.get("content") or payload.get("message") or ""
            if not content:
                continue
            try:
                session.start_run(content)
            except AgentBusyError as e:
                await _send(ws, "error", {"message": str(e)})

    except WebSocketDisconnect:
        logger.info("websocket for session %s disconnected", session_id)
    finally:
        unsubscribe()
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
