"""Non-blocking event channel between the agent core and its consumers."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger


class EventType(str, Enum):
    # reasoning loop
    SESSION_START = "session_start"
    CONTEXT_INITIALIZED = "context_initialized"
    ITERATION_START = "iteration_start"
    REASONING_START = "reasoning_start"
    REASONING_COMPLETE = "reasoning_complete"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_COMPLETE = "tool_call_complete"
    CONTEXT_PRUNED = "context_pruned"
    CONTEXT_UPDATED = "context_updated"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FINAL_ANSWER = "final_answer"
    SESSION_COMPLETE = "session_complete"
    ERROR = "error"
    # multi-hop planner
    ANALYZE = "analyze"
    ROUND_START = "round_start"
    PLAN = "plan"
    TOOL_START = "tool_start"
    TOOL_RESULT = "tool_result"
    TOOL_SKIP = "tool_skip"
    WARNING = "warning"
    FALLBACK = "fallback"
    COMPLETE = "complete"


@dataclass(slots=True)
class AgentEvent:
    type: EventType
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            **self.data,
        }


class EventBus:
    """Fans events out to callbacks and asyncio queues without ever awaiting.

    A failing callback is logged and skipped; a full queue drops the event.
    """

    def __init__(self) -> None:
        self._callbacks: list[Callable[[AgentEvent], None]] = []
        self._channels: list[asyncio.Queue[AgentEvent]] = []

    def subscribe(self, callback: Callable[[AgentEvent], None]) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def open_channel(self, maxsize: int = 0) -> asyncio.Queue[AgentEvent]:
        channel: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=maxsize)
        self._channels.append(channel)
        return channel

    def close_channel(self, channel: asyncio.Queue[AgentEvent]) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def emit(self, event_type: EventType, session_id: str = "", **data: Any) -> AgentEvent:
        event = AgentEvent(type=event_type, session_id=session_id, data=data)
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed on {event_type.value}")
        for channel in list(self._channels):
            try:
                channel.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Event channel full, dropped {event_type.value}")
        return event
