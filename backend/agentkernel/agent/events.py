"""Event and EventStream: the append-only log every agent run writes to.

The stream is the single source of truth for a session. The conversation
sent to the model is projected from it (see ``conversation.py``), the
WebSocket layer forwards it, and the event log persists it. Events are
never mutated or removed once appended.

Known types:
    user_message                 data={"content": str | list}
    assistant_message            data={"content", "tool_calls", "finish_reason", ...}
    assistant_streaming_message  data={"content": str}  (delta)
    assistant_thinking_message   data={"content": str}
    tool_call                    data={"tool_call_id", "name", "arguments"}
    tool_result                  data={"tool_call_id", "name", "content", "error", "elapsed_ms"}
    system                       data={"level", "message"}
    plan_update                  data={"steps": [{"content", "done"}]}
    environment_input            data={"content", "description"}
    agent_run_start / agent_run_end
"""

from __future__ import annotations

import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    USER_MESSAGE = "user_message"
    ASSISTANT_MESSAGE = "assistant_message"
    ASSISTANT_STREAMING_MESSAGE = "assistant_streaming_message"
    ASSISTANT_THINKING_MESSAGE = "assistant_thinking_message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    PLAN_UPDATE = "plan_update"
    ENVIRONMENT_INPUT = "environment_input"
    AGENT_RUN_START = "agent_run_start"
    AGENT_RUN_END = "agent_run_end"


STREAMING_EVENT_TYPES = frozenset({EventType.ASSISTANT_STREAMING_MESSAGE})


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            **dict(self.payload),
        }


def create_event(event_type: EventType | str, **payload: Any) -> Event:
    return Event(
        type=EventType(event_type),
        payload=MappingProxyType(dict(payload)),
    )


Listener = Callable[[Event], None]


class EventStream:
    """Ordered, append-only event log with synchronous fan-out."""

    def __init__(self) -> None:
        self._events: list[Event] = []
        self._listeners: list[Listener] = []
        # Re-entrant so a listener may append while being notified
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._events)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def append(self, event: Event) -> None:
        """Append ``event`` and notify every current listener in order.

        Never raises: a listener that throws is logged and skipped.
        """
        with self._lock:
            self._events.append(event)
            listeners = list(self._listeners)
            logger.debug("event appended: %s (%s)", event.type.value, event.id)
            for listener in listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception(
                        "event listener %r failed on %s", listener, event.type.value
                    )

    def emit(self, event_type: EventType | str, **payload: Any) -> Event:
        """Create an event, append it and return it."""
        event = create_event(event_type, **payload)
        self.append(event)
        return event

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for future appends. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def subscribe_to_types(
        self, types: Iterable[EventType | str], listener: Listener
    ) -> Callable[[], None]:
        wanted = {EventType(t) for t in types}

        def filtered(event: Event) -> None:
            if event.type in wanted:
                listener(event)

        return self.subscribe(filtered)

    def subscribe_to_streaming(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe_to_types(STREAMING_EVENT_TYPES, listener)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_events(
        self,
        types: Iterable[EventType | str] | None = None,
        limit: int | None = None,
    ) -> tuple[Event, ...]:
        """Snapshot of the log, optionally filtered by type and capped to the last ``limit``."""
        with self._lock:
            events = list(self._events)
        if types is not None:
            wanted = {EventType(t) for t in types}
            events = [e for e in events if e.type in wanted]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return tuple(events)

    def latest_assistant_message(self) -> Event | None:
        with self._lock:
            for event in reversed(self._events):
                if event.type == EventType.ASSISTANT_MESSAGE:
                    return event
        return None

    def tool_results_since_last_assistant(self) -> tuple[Event, ...]:
        results: list[Event] = []
        with self._lock:
            for event in reversed(self._events):
                if event.type == EventType.ASSISTANT_MESSAGE:
                    break
                if event.type == EventType.TOOL_RESULT:
                    results.append(event)
        return tuple(reversed(results))
