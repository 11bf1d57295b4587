"""Human-readable status file refreshed in the background."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path

from . import store as keys
from .store import StateStore

logger = logging.getLogger(__name__)


async def render_status(store: StateStore) -> str:
    orchestrator = await store.read(keys.ORCHESTRATOR)
    run_state = await store.read(keys.RUN_STATE)
    queue = await store.read(keys.QUEUE)
    resources = await store.read(keys.RESOURCES)

    def count(name: str) -> int:
        entries = queue.get(name)
        return len(entries) if isinstance(entries, list) else 0

    lines = [
        "╔════════════════════════════════════════════════════════════════╗",
        "║                    LOOPGATE STATUS                             ║",
        "╚════════════════════════════════════════════════════════════════╝",
        "",
        f"Updated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"Phase: {orchestrator.get('current_phase', 'UNKNOWN')}",
        f"Run status: {run_state.get('status', 'idle')}",
        f"Retry: {run_state.get('retry_count', 0)}  Iteration: {run_state.get('iteration_count', 0)}",
        "",
        "Tasks:",
        f"  ├─ Pending:     {count('pending')}",
        f"  ├─ In Progress: {count('in_progress')}",
        f"  ├─ Completed:   {count('completed')}",
        f"  ├─ Failed:      {count('failed')}",
        f"  └─ Dead Letter: {count('dead_letter')}",
    ]
    if resources.get("overall_status") == "warning":
        lines += ["", f"Resources: {resources.get('warning_message', '')}"]
    return "\n".join(lines) + "\n"


class StatusFileRefresher:
    """Rewrites the status file on a fixed interval; failures only log."""

    def __init__(self, store: StateStore, path: Path, interval: float = 5) -> None:
        self._store = store
        self.path = path
        self.interval = interval

    async def refresh(self) -> None:
        try:
            text = await render_status(self._store)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(text, encoding="utf-8")
            tmp.replace(self.path)
        except Exception as exc:
            logger.debug("Status file refresh failed: %s", exc)

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self.refresh()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except TimeoutError:
                continue
