"""Tests for the HTTP/websocket session API and the persisted event log.

The Agent class used by the router is swapped for one wired to a scripted
model, and the event database lives in a temporary directory.
"""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from fastapi.testclient import TestClient

from agentkernel.agent.core import Agent
from agentkernel.config import settings
from agentkernel.db import load_events
from agentkernel.main import app


def answer(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}]}


class ScriptedClient:
    def __init__(self, response):
        self.response = response

    async def complete(self, request):
        if callable(self.response):
            return await self.response()
        return self.response


def agent_factory(response):
    def build(**kwargs):
        return Agent(llm_client=ScriptedClient(response), **kwargs)

    return build


async def _never():
    await asyncio.sleep(10)


def wait_for_run_end(client: TestClient, session_id: str, runs: int = 1) -> list[dict]:
    for _ in range(300):
        events = client.get(f"/sessions/{session_id}/events").json()
        if sum(e["type"] == "agent_run_end" for e in events) >= runs:
            return events
        time.sleep(0.01)
    raise AssertionError("run did not finish")


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "events.db"
    with patch.object(settings, "EVENT_DB_PATH", path):
        yield path


# ── 1. Basics ───────────────────────────────────────────────────


def test_health(db_path):
    with TestClient(app) as client:
        resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    print("  PASS: health")


def test_unknown_session_is_404(db_path):
    with TestClient(app) as client:
        assert client.get("/sessions/nope/events").status_code == 404
        assert client.post("/sessions/nope/abort").status_code == 404
    print("  PASS: unknown session")


# ── 2. Runs over HTTP ───────────────────────────────────────────


def test_create_session_runs_and_persists(db_path):
    with patch("agentkernel.routers.sessions.Agent", new=agent_factory(answer("Hello there"))):
        with TestClient(app) as client:
            created = client.post("/sessions", json={"input": "Hi", "provider": "openai"}).json()
            session_id = created["session_id"]
            assert created["tools"] == []

            events = wait_for_run_end(client, session_id)
            assert [e["type"] for e in events] == [
                "agent_run_start",
                "user_message",
                "assistant_message",
                "agent_run_end",
            ]
            assert events[2]["content"] == "Hello there"
            assert events[0]["session_id"] == session_id

            only = client.get(f"/sessions/{session_id}/events", params={"types": "assistant_message"}).json()
            assert [e["content"] for e in only] == ["Hello there"]
            assert client.get(f"/sessions/{session_id}/events", params={"types": "bogus"}).status_code == 400

            # Idle session: nothing to abort
            assert client.post(f"/sessions/{session_id}/abort").json()["aborted"] is False

            resp = client.post(f"/sessions/{session_id}/messages", json={"content": "Again"})
            assert resp.status_code == 200
            wait_for_run_end(client, session_id, runs=2)

    stored = asyncio.run(load_events(session_id, db_path))
    assert [e["type"] for e in stored].count("agent_run_end") == 2
    assert stored[1]["type"] == "user_message"
    assert stored[1]["content"] == "Hi"
    assert stored[2]["content"] == "Hello there"
    print("  PASS: create, run, persist")


def test_busy_session_and_abort(db_path):
    with patch("agentkernel.routers.sessions.Agent", new=agent_factory(_never)):
        with TestClient(app) as client:
            session_id = client.post("/sessions", json={"input": "long task"}).json()["session_id"]

            busy = client.post(f"/sessions/{session_id}/messages", json={"content": "another"})
            assert busy.status_code == 409
            assert "already executing" in busy.json()["detail"]

            assert client.post(f"/sessions/{session_id}/abort").json()["aborted"] is True
            events = wait_for_run_end(client, session_id)
            assert events[-1]["status"] == "aborted"
            assert events[-2]["finish_reason"] == "abort"

            assert client.delete(f"/sessions/{session_id}").json()["deleted"] is True
            assert client.get(f"/sessions/{session_id}/events").status_code == 404
    print("  PASS: busy and abort")


# ── 3. Websocket ────────────────────────────────────────────────


def test_websocket_streams_events_and_handles_stop(db_path):
    with patch("agentkernel.routers.sessions.Agent", new=agent_factory(answer("streamed"))):
        with TestClient(app) as client:
            session_id = client.post("/sessions", json={}).json()["session_id"]

            with client.websocket_connect(f"/ws/sessions/{session_id}") as ws:
                ws.send_json({"content": "Hi"})
                received = []
                while not received or received[-1]["type"] != "agent_run_end":
                    received.append(ws.receive_json())
                assert received[0]["type"] == "agent_run_start"
                assert any(e["type"] == "assistant_message" and e["content"] == "streamed" for e in received)

                ws.send_json({"type": "stop"})
                assert ws.receive_json() == {"type": "stopped", "aborted": False}

            with client.websocket_connect("/ws/sessions/missing") as ws:
                assert ws.receive_json() == {"type": "error", "message": "Session not found"}
    print("  PASS: websocket")
