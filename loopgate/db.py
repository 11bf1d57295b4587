"""Async database connection and operations for the loop state store."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import inspect, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import AuditEvent, Base, Document


def _ensure_sqlite_parent(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return
    database = parsed.database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


class Database:
    """Engine plus session factory bound to one database URL."""

    def __init__(self, url: str) -> None:
        _ensure_sqlite_parent(url)
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=False)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init_db(self) -> None:
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def missing_tables(self) -> set[str]:
        async with self.engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        return set(Base.metadata.tables) - existing

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for database sessions."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
                raise


_database: Database | None = None


def get_database() -> Database:
    """Shared database bound to the configured URL."""
    global _database
    if _database is None:
        _database = Database(settings.async_database_url)
    return _database


# =============================================================================
# Document Operations
# =============================================================================


async def get_document_payload(session: AsyncSession, key: str) -> str | None:
    result = await session.execute(select(Document.payload).where(Document.key == key))
    return result.scalar_one_or_none()


async def put_document_payload(session: AsyncSession, key: str, payload: str) -> None:
    """Replace the whole document stored under key."""
    doc = await session.get(Document, key)
    if doc is None:
        session.add(Document(key=key, payload=payload))
    else:
        doc.payload = payload
        doc.updated_at = datetime.now(UTC)
    await session.flush()


async def delete_documents(session: AsyncSession, keys: list[str]) -> int:
    deleted = 0
    for key in keys:
        doc = await session.get(Document, key)
        if doc is not None:
            await session.delete(doc)
            deleted += 1
    await session.flush()
    return deleted


# =============================================================================
# Audit Operations
# =============================================================================


async def add_audit_event(
    session: AsyncSession,
    event: str,
    data: dict[str, Any] | None = None,
    *,
    user: str | None = None,
    pid: int | None = None,
) -> AuditEvent:
    row = AuditEvent(
        event=event,
        data=json.dumps(data or {}, default=str),
        user=user,
        pid=pid,
    )
    session.add(row)
    await session.flush()
    return row


async def list_audit_events(session: AsyncSession, limit: int = 50) -> list[AuditEvent]:
    result = await session.execute(
        select(AuditEvent).order_by(AuditEvent.id.desc()).limit(limit)
    )
    return list(result.scalars().all())
