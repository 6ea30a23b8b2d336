from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import aiosqlite

from agentkernel.agent.events import STREAMING_EVENT_TYPES, Event, EventStream, EventType
from agentkernel.config import settings

logger = logging.getLogger(__name__)

_SKIPPED_TYPES = STREAMING_EVENT_TYPES | {EventType.ASSISTANT_THINKING_MESSAGE}

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL,
    type TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id, seq);
"""


async def init_db(db_path: Path | str | None = None) -> None:
    async with aiosqlite.connect(db_path or settings.EVENT_DB_PATH) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.executescript(_CREATE_TABLES)
        await db.commit()


async def get_db(db_path: Path | str | None = None) -> aiosqlite.Connection:
    db = await aiosqlite.connect(db_path or settings.EVENT_DB_PATH)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    return db


async def load_events(session_id: str, db_path: Path | str | None = None) -> list[dict]:
    """Persisted events of one session, oldest first, as ``Event.to_dict`` shapes."""
    db = await get_db(db_path)
    try:
        cursor = await db.execute(
            "SELECT id, type, timestamp, payload FROM events WHERE session_id = ? ORDER BY seq",
            (session_id,),
        )
        rows = await cursor.fetchall()
    finally:
        await db.close()

    return [
        {
            "id": row["id"],
            "type": row["type"],
            "timestamp": row["timestamp"],
            **json.loads(row["payload"]),
        }
        for row in rows
    ]


class EventLogWriter:
    """Stream observer that persists every completed event of a session.

    Streaming and thinking deltas are skipped; the final assistant_message carries the
    full text. Listeners are synchronous, so events are queued and written
    by a background task. ``aclose`` drains the queue.
    """

    def __init__(self, session_id: str, db_path: Path | str | None = None) -> None:
        self.session_id = session_id
        self.db_path = db_path or settings.EVENT_DB_PATH
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._unsubscribe = None

    def attach(self, stream: EventStream) -> None:
        self._unsubscribe = stream.subscribe(self._on_event)
        self._task = asyncio.create_task(self._writer())

    def _on_event(self, event: Event) -> None:
        if event.type in _SKIPPED_TYPES:
            return
        self._queue.put_nowait(event)

    async def _writer(self) -> None:
        db = await get_db(self.db_path)
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    break
                try:
                    await db.execute(
                        "INSERT INTO events (id, session_id, type, timestamp, payload) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (
                            event.id,
                            self.session_id,
                            event.type.value,
                            event.timestamp,
                            json.dumps(dict(event.payload), ensure_ascii=False, default=str),
                        ),
                    )
                    await db.commit()
                except aiosqlite.Error:
                    logger.exception("failed to persist event %s", event.id)
        finally:
            await db.close()

    async def aclose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            self._queue.put_nowait(None)
            await self._task
            self._task = None
