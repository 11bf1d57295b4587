"""
Priority task queue persisted as a single state document.

All five partitions (pending, in-progress, completed, failed, dead-letter) live in one
document, so every transition is one atomic write and no reader can observe a task
in two partitions.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from . import store as keys
from .errors import DuplicateTaskError, TaskNotFoundError
from .store import StateStore

logger = logging.getLogger(__name__)

MAX_COMPLETED = 100
MAX_FAILED = 50
DEFAULT_PRIORITY = 5
DEFAULT_TIMEOUT = 3600


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead-letter"


PARTITIONS: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "pending",
    TaskStatus.IN_PROGRESS: "in_progress",
    TaskStatus.COMPLETED: "completed",
    TaskStatus.FAILED: "failed",
    TaskStatus.DEAD_LETTER: "dead_letter",
}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{uuid4().hex[:6]}"


@dataclass
class Task:
    """Unit of work handed to the supervised agent."""

    id: str
    type: str = "generic"
    priority: int = DEFAULT_PRIORITY
    dependencies: list[str] = field(default_factory=list)
    timeout: int = DEFAULT_TIMEOUT
    payload: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    last_error: str | None = None
    attempts: int = 0
    result: dict[str, Any] | None = None
    created_at: str = field(default_factory=_now_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def description(self) -> str:
        value = self.payload.get("description")
        return value if isinstance(value, str) else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "timeout": self.timeout,
            "payload": dict(self.payload),
            "status": self.status.value,
            "last_error": self.last_error,
            "attempts": self.attempts,
            "result": self.result,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        task_id = data.get("id")
        if not isinstance(task_id, str) or not task_id:
            raise ValueError("task entry has no id")
        try:
            status = TaskStatus(data.get("status", TaskStatus.PENDING.value))
        except ValueError:
            status = TaskStatus.PENDING
        payload = data.get("payload")
        return cls(
            id=task_id,
            type=str(data.get("type") or "generic"),
            priority=int(data.get("priority", DEFAULT_PRIORITY)),
            dependencies=[str(d) for d in data.get("dependencies") or []],
            timeout=int(data.get("timeout", DEFAULT_TIMEOUT)),
            payload=payload if isinstance(payload, dict) else {},
            status=status,
            last_error=data.get("last_error"),
            attempts=int(data.get("attempts", 0)),
            result=data.get("result") if isinstance(data.get("result"), dict) else None,
            created_at=data.get("created_at") or _now_iso(),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class QueueState:
    pending: list[Task] = field(default_factory=list)
    in_progress: list[Task] = field(default_factory=list)
    completed: list[Task] = field(default_factory=list)
    failed: list[Task] = field(default_factory=list)
    dead_letter: list[Task] = field(default_factory=list)

    def partition(self, status: TaskStatus) -> list[Task]:
        return getattr(self, PARTITIONS[status])

    def locate(self, task_id: str) -> tuple[TaskStatus, int] | None:
        for status in TaskStatus:
            for index, task in enumerate(self.partition(status)):
                if task.id == task_id:
                    return status, index
        return None

    def known_ids(self) -> set[str]:
        return {task.id for status in TaskStatus for task in self.partition(status)}

    def to_dict(self) -> dict[str, Any]:
        return {name: [t.to_dict() for t in self.partition(s)] for s, name in PARTITIONS.items()}


def _insert_by_priority(pending: list[Task], task: Task) -> None:
    for index, existing in enumerate(pending):
        if existing.priority < task.priority:
            pending.insert(index, task)
            return
    pending.append(task)


class TaskQueue:
    """Task queue backed by the ``queue`` state document."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    async def load(self) -> QueueState:
        document = await self._store.read(keys.QUEUE)
        state = QueueState()
        for status, name in PARTITIONS.items():
            entries = document.get(name, [])
            if not isinstance(entries, list):
                logger.warning("Queue partition %r is malformed; treating as empty", name)
                continue
            target = state.partition(status)
            for entry in entries:
                try:
                    task = Task.from_dict(entry)
                except (ValueError, TypeError, AttributeError) as exc:
                    logger.warning("Dropping unreadable task in %r: %s", name, exc)
                    continue
                task.status = status
                target.append(task)
        return state

    async def _save(self, state: QueueState) -> None:
        await self._store.write(keys.QUEUE, state.to_dict())

    async def enqueue(self, task: Task) -> Task:
        state = await self.load()
        if task.id in state.known_ids():
            raise DuplicateTaskError(task.id)
        task.status = TaskStatus.PENDING
        _insert_by_priority(state.pending, task)
        await self._save(state)
        logger.info("Queued task %s (type=%s, priority=%s)", task.id, task.type, task.priority)
        return task

    async def dequeue(self) -> Task | None:
        state = await self.load()
        if not state.pending:
            return None
        task = state.pending.pop(0)
        self._start(task)
        state.in_progress.append(task)
        await self._save(state)
        return task

    async def next_eligible(self) -> Task | None:
        """Dequeue the highest-priority pending task whose dependencies are satisfied.

        A dependency is satisfied when the task it names is completed, or when no
        task with that id is known to the queue at all.
        """
        state = await self.load()
        completed = {t.id for t in state.completed}
        known = state.known_ids()
        for index, task in enumerate(state.pending):
            unmet = [d for d in task.dependencies if d in known and d not in completed]
            if unmet:
                logger.debug("Skipping %s; waiting on %s", task.id, ", ".join(unmet))
                continue
            state.pending.pop(index)
            self._start(task)
            state.in_progress.append(task)
            await self._save(state)
            return task
        return None

    async def get(self, task_id: str) -> Task | None:
        state = await self.load()
        found = state.locate(task_id)
        if found is None:
            return None
        status, index = found
        return state.partition(status)[index]

    async def transition_to_in_progress(self, task_id: str) -> Task:
        return await self._move(task_id, TaskStatus.IN_PROGRESS)

    async def transition_to_completed(
        self, task_id: str, result: dict[str, Any] | None = None
    ) -> Task:
        return await self._move(task_id, TaskStatus.COMPLETED, result=result or {"status": "success"})

    async def transition_to_failed(self, task_id: str, error: str | None = None) -> Task:
        return await self._move(task_id, TaskStatus.FAILED, error=error)

    async def requeue(self, task_id: str) -> Task:
        return await self._move(task_id, TaskStatus.PENDING)

    async def move_to_dead_letter(self, task_id: str, error: str | None = None) -> Task:
        return await self._move(task_id, TaskStatus.DEAD_LETTER, error=error)

    async def evict_overflow(self) -> int:
        state = await self.load()
        evicted = self._evict(state)
        if evicted:
            await self._save(state)
        return evicted

    async def reconcile(self) -> list[Task]:
        """Return tasks left in-progress by an interrupted run to pending."""
        state = await self.load()
        orphaned = list(state.in_progress)
        if not orphaned:
            return []
        state.in_progress.clear()
        for task in orphaned:
            task.status = TaskStatus.PENDING
            task.started_at = None
            _insert_by_priority(state.pending, task)
        await self._save(state)
        logger.warning("Requeued %d task(s) left in progress by a previous run", len(orphaned))
        return orphaned

    async def completion_history(self, task_type: str | None = None) -> list[Task]:
        state = await self.load()
        if task_type is None:
            return list(state.completed)
        return [t for t in state.completed if t.type == task_type]

    async def counts(self) -> dict[str, int]:
        state = await self.load()
        return {status.value: len(state.partition(status)) for status in TaskStatus}

    def _start(self, task: Task) -> None:
        task.status = TaskStatus.IN_PROGRESS
        task.started_at = _now_iso()

    async def _move(
        self,
        task_id: str,
        target: TaskStatus,
        *,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> Task:
        state = await self.load()
        found = state.locate(task_id)
        if found is None:
            raise TaskNotFoundError(task_id)
        source, index = found
        task = state.partition(source).pop(index)
        task.status = target

        if target == TaskStatus.PENDING:
            task.started_at = None
            _insert_by_priority(state.pending, task)
        else:
            if target == TaskStatus.IN_PROGRESS:
                self._start(task)
            elif target == TaskStatus.COMPLETED:
                task.completed_at = _now_iso()
                task.result = result
                task.last_error = None
            elif target == TaskStatus.FAILED:
                task.completed_at = _now_iso()
                task.attempts += 1
                task.last_error = error
                task.result = {"status": "failure", "error": error}
            elif target == TaskStatus.DEAD_LETTER:
                task.completed_at = _now_iso()
                if error is not None:
                    task.last_error = error
            state.partition(target).append(task)

        self._evict(state)
        await self._save(state)
        logger.debug("Task %s: %s -> %s", task_id, source.value, target.value)
        return task

    def _evict(self, state: QueueState) -> int:
        evicted = 0
        for name, cap in (("completed", MAX_COMPLETED), ("failed", MAX_FAILED)):
            entries: list[Task] = getattr(state, name)
            overflow = len(entries) - cap
            if overflow > 0:
                del entries[:overflow]
                evicted += overflow
        return evicted
