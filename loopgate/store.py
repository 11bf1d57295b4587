"""
Persistent state store: whole JSON documents with atomic replace.

Every document is read and written as a unit. Readers tolerate missing or corrupt
documents by falling back to a default and logging the loss; writers replace the
whole document inside one transaction. When an export directory is configured each
write is mirrored to ``<export_dir>/<key>.json`` through a temp file and rename.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from . import db
from .db import Database
from .errors import SchemaNotInitializedError

logger = logging.getLogger(__name__)

QUEUE = "queue"
RUN_STATE = "run_state"
ORCHESTRATOR = "orchestrator"
RESOURCES = "resources"
CONFIDENCE = "confidence"
DEBATE = "debate"
AGENTS = "agents"

ALL_KEYS = (QUEUE, RUN_STATE, ORCHESTRATOR, RESOURCES, CONFIDENCE, DEBATE, AGENTS)


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class StateStore:
    """Key to JSON-object store on top of the state database."""

    def __init__(self, database: Database, *, export_dir: Path | None = None) -> None:
        self.database = database
        self.export_dir = export_dir

    async def read(self, key: str, default: dict[str, Any] | None = None) -> dict[str, Any]:
        fallback = dict(default) if default is not None else {}
        try:
            async with self.database.get_session() as session:
                raw = await db.get_document_payload(session, key)
        except (SQLAlchemyError, SchemaNotInitializedError, OSError) as exc:
            logger.warning("State document %r unreadable, using defaults: %s", key, exc)
            return fallback

        if raw is None or not raw.strip():
            return fallback
        try:
            value = json.loads(raw)
        except ValueError as exc:
            logger.warning("State document %r is corrupt (recoverable data loss): %s", key, exc)
            return fallback
        if not isinstance(value, dict):
            logger.warning(
                "State document %r is not an object (got %s); treating as empty",
                key,
                type(value).__name__,
            )
            return fallback
        return value

    async def write(self, key: str, document: dict[str, Any]) -> None:
        payload = json.dumps(document, default=str, sort_keys=True)
        async with self.database.get_session() as session:
            await db.put_document_payload(session, key, payload)
        if self.export_dir is not None:
            try:
                _atomic_write_text(self.export_dir / f"{key}.json", payload)
            except OSError as exc:
                logger.warning("Could not mirror %r to %s: %s", key, self.export_dir, exc)

    async def write_raw(self, key: str, payload: str) -> None:
        """Store a payload verbatim; used by repair tooling and tests."""
        async with self.database.get_session() as session:
            await db.put_document_payload(session, key, payload)

    async def clear(self, keys: list[str] | None = None) -> int:
        async with self.database.get_session() as session:
            return await db.delete_documents(session, list(keys or ALL_KEYS))
