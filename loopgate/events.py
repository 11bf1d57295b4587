"""
Loop event bus and audit trail.
"""

from __future__ import annotations

import getpass
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from . import db
from .db import Database

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    LOOP_STARTED = "loop.started"
    LOOP_STOPPED = "loop.stopped"
    LOOP_INTERRUPTED = "loop.interrupted"

    ITERATION_STARTED = "iteration.started"
    ITERATION_COMPLETED = "iteration.completed"
    ITERATION_FAILED = "iteration.failed"
    WAIT_STARTED = "wait.started"
    RATE_LIMITED = "wait.rate_limited"

    TASK_QUEUED = "task.queued"
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_DEAD_LETTERED = "task.dead_lettered"

    CONFIDENCE_CALCULATED = "confidence.calculated"
    DEBATE_COMPLETED = "debate.completed"
    HUMAN_INPUT_REQUESTED = "human.input_requested"

    RESOURCE_WARNING = "resource.warning"
    COMMAND_BLOCKED = "command.blocked"


@dataclass
class LoopEvent:
    """Standardized event emitted by the loop."""

    type: EventType
    message: str = ""
    task_id: str | None = None
    iteration: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "task_id": self.task_id,
            "iteration": self.iteration,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


Handler = Callable[[LoopEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: list[Handler] = []

    def on_event(self, handler: Handler) -> None:
        self._handlers.append(handler)

    async def emit(self, event: LoopEvent) -> LoopEvent:
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                logger.warning("Event handler error for %s: %s", event.type.value, exc)
        return event

    async def emit_type(self, event_type: EventType, message: str = "", **kwargs: Any) -> LoopEvent:
        return await self.emit(LoopEvent(type=event_type, message=message, **kwargs))


def _current_user() -> str | None:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


def audit_handler(database: Database) -> Handler:
    """Handler that appends every event to the audit table."""
    user = _current_user()

    async def handle(event: LoopEvent) -> None:
        payload = {
            "message": event.message,
            "task_id": event.task_id,
            "iteration": event.iteration,
            **event.data,
        }
        async with database.get_session() as session:
            await db.add_audit_event(session, event.type.value, payload, user=user, pid=os.getpid())

    return handle
