"""Error types and helpers for the execution loop."""

from __future__ import annotations

import re

import click


class InvalidConfigError(click.ClickException):
    """Raised when settings cannot drive the loop."""


class SchemaNotInitializedError(click.ClickException):
    """Raised when the state database tables have not been created."""


class QueueError(Exception):
    """Base class for task queue misuse."""


class TaskNotFoundError(QueueError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class DuplicateTaskError(QueueError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task already queued: {task_id}")
        self.task_id = task_id


_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)
_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _SQLITE_MISSING_TABLE_RE.search(message) or _PG_MISSING_RELATION_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    return missing_table_name(exc) is not None


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"State database is not initialized{table_hint}.",
        "Run: `loopgate init-db`",
        "Or apply migrations with: `alembic upgrade head`",
    ]
    return "\n".join(lines)
