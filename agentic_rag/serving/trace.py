"""
Trace-event side channel.

Stages describe what they are doing by emitting AgentEvents into a TraceLog.
The log is append-only and purely observational: nothing in the pipeline
reads it back, and a subscriber that raises is logged and ignored.  Closing
the log (e.g. when an SSE client disconnects) stops recording and delivery
while the pipeline itself carries on.
"""
from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from loguru import logger

from agentic_rag.schemas import AgentEvent

Subscriber = Callable[[AgentEvent], None]


class TraceLog:
    def __init__(self) -> None:
        self._events: list[AgentEvent] = []
        self._subscribers: list[Subscriber] = []
        self._closed = False
        self._lock = threading.Lock()

    def emit(self, agent: str, type: str, data: Optional[dict[str, Any]] = None) -> Optional[AgentEvent]:
        """Record an event and hand it to subscribers. Returns None once closed."""
        event = AgentEvent(agent=agent, type=type, data=dict(data or {}))
        with self._lock:
            if self._closed:
                return None
            self._events.append(event)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:
                logger.warning(f"[Trace] subscriber failed on {agent}/{type}: {exc}")
        return event

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._subscribers.clear()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def events(self) -> list[AgentEvent]:
        with self._lock:
            return list(self._events)


class NullTrace(TraceLog):
    """Drops every event."""

    def emit(self, agent: str, type: str, data: Optional[dict[str, Any]] = None) -> Optional[AgentEvent]:
        return None
