"""
Consumer for the supervised agent's line-oriented event stream.

The consumer only ever writes the ``agents`` document. It never touches the task
queue or the run state.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from rich.console import Console

from . import store as keys
from .events import EventEmitter, EventType
from .store import StateStore

logger = logging.getLogger(__name__)

ORCHESTRATOR_ID = "orchestrator-main"


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def check_command_allowed(command: str, blocked: list[str]) -> str | None:
    """Return the blocked pattern a command matches, or None when it is allowed."""
    for pattern in blocked:
        if pattern and pattern in command:
            return pattern
    return None


def _describe_tool(tool: str, tool_input: dict[str, Any]) -> str:
    if tool in ("Read", "Edit", "Write"):
        return str(tool_input.get("file_path", ""))
    if tool == "Bash":
        return str(tool_input.get("description") or str(tool_input.get("command", ""))[:60])
    if tool == "Grep":
        return f"pattern: {tool_input.get('pattern', '')}"
    if tool == "Glob":
        return str(tool_input.get("pattern", ""))
    return ""


class StreamConsumer:
    """Parses stream lines, echoes them, and tracks spawned agents."""

    def __init__(
        self,
        store: StateStore,
        *,
        console: Console | None = None,
        events: EventEmitter | None = None,
        blocked_commands: list[str] | None = None,
        task_id: str | None = None,
    ) -> None:
        self._store = store
        self._console = console or Console()
        self._events = events
        self._blocked = blocked_commands or []
        self._task_id = task_id
        self.agents: dict[str, dict[str, Any]] = {}
        self.todos: list[dict[str, Any]] = []
        self.result_seen = False
        self.result_error = False
        self.result_data: dict[str, Any] = {}
        self.blocked_hits: list[str] = []

    async def start(self) -> None:
        self.agents[ORCHESTRATOR_ID] = {
            "agent_id": ORCHESTRATOR_ID,
            "tool_id": ORCHESTRATOR_ID,
            "agent_type": "orchestrator",
            "current_task": "Initializing...",
            "status": "active",
            "spawned_at": _now(),
            "tasks_completed": [],
            "tool_count": 0,
        }
        await self._save()

    @property
    def active_agent_count(self) -> int:
        return sum(1 for a in self.agents.values() if a.get("status") == "active")

    async def feed(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            data = json.loads(line)
        except ValueError:
            self._echo(line)
            return
        if not isinstance(data, dict):
            self._echo(line)
            return

        msg_type = data.get("type", "")
        try:
            if msg_type == "assistant":
                await self._on_assistant(data)
            elif msg_type == "user":
                await self._on_user(data)
            elif msg_type == "result":
                await self._on_result(data)
        except (AttributeError, TypeError) as exc:
            logger.debug("Malformed stream event %r: %s", msg_type, exc)

    async def _on_assistant(self, data: dict[str, Any]) -> None:
        for item in data.get("message", {}).get("content", []):
            if item.get("type") == "text":
                text = item.get("text", "")
                if text:
                    self._console.print(text, end="", markup=False, highlight=False)
            elif item.get("type") == "tool_use":
                await self._on_tool_use(item)

    async def _on_tool_use(self, item: dict[str, Any]) -> None:
        tool = item.get("name", "unknown")
        tool_id = item.get("id", "")
        tool_input = item.get("input") or {}

        orchestrator = self.agents.get(ORCHESTRATOR_ID)
        if orchestrator is not None:
            orchestrator["tool_count"] = orchestrator.get("tool_count", 0) + 1
            description = _describe_tool(tool, tool_input)
            orchestrator["current_task"] = (
                f"{tool}: {description[:80]}" if description else f"Using {tool}..."
            )

        if tool == "Bash":
            await self._check_command(str(tool_input.get("command", "")))

        if tool == "Task":
            agent_type = tool_input.get("subagent_type", "general-purpose")
            description = tool_input.get("description", "")
            self.agents[tool_id] = {
                "agent_id": f"agent-{tool_id[:8]}",
                "tool_id": tool_id,
                "agent_type": agent_type,
                "model": tool_input.get("model"),
                "current_task": description,
                "status": "active",
                "spawned_at": _now(),
                "tasks_completed": [],
            }
            self._console.print(f"\n[magenta][Agent Spawned: {agent_type}][/magenta] {description}")
        elif tool == "TodoWrite":
            todos = tool_input.get("todos", [])
            self.todos = [
                {"id": f"todo-{i}", "content": t.get("content", ""), "status": t.get("status")}
                for i, t in enumerate(todos)
                if isinstance(t, dict)
            ]
            self._console.print(f"\n[cyan][Tool: {tool}][/cyan] {len(todos)} items")
        else:
            self._console.print(f"\n[cyan][Tool: {tool}][/cyan]")
        await self._save()

    async def _check_command(self, command: str) -> None:
        pattern = check_command_allowed(command, self._blocked)
        if pattern is None:
            return
        self.blocked_hits.append(command)
        logger.warning("Agent issued a blocked command (matched %r): %s", pattern, command)
        if self._events is not None:
            await self._events.emit_type(
                EventType.COMMAND_BLOCKED,
                f"Blocked command pattern {pattern!r}",
                task_id=self._task_id,
                data={"command": command, "pattern": pattern},
            )

    async def _on_user(self, data: dict[str, Any]) -> None:
        changed = False
        for item in data.get("message", {}).get("content", []):
            if item.get("type") != "tool_result":
                continue
            tool_id = item.get("tool_use_id", "")
            if tool_id in self.agents:
                self.agents[tool_id]["status"] = "completed"
                self.agents[tool_id]["completed_at"] = _now()
                changed = True
        if changed:
            await self._save()

    async def _on_result(self, data: dict[str, Any]) -> None:
        completed_at = _now()
        for agent in self.agents.values():
            if agent.get("status") == "active":
                agent["status"] = "completed"
                agent["completed_at"] = completed_at
                agent["current_task"] = "Session complete"
        orchestrator = self.agents.get(ORCHESTRATOR_ID)
        if orchestrator is not None:
            orchestrator["tasks_completed"].append(f"{orchestrator.get('tool_count', 0)} tools used")

        self.result_seen = True
        self.result_error = bool(data.get("is_error", False))
        self.result_data = {
            k: data.get(k) for k in ("subtype", "duration_ms", "total_cost_usd", "num_turns")
        }
        await self._save()
        self._console.print("\n[green][Session complete][/green]")

    def _echo(self, line: str) -> None:
        self._console.print(line, markup=False, highlight=False, soft_wrap=True)

    async def _save(self) -> None:
        try:
            await self._store.write(
                keys.AGENTS,
                {"agents": list(self.agents.values()), "todos": self.todos, "updated_at": _now()},
            )
        except Exception as exc:
            logger.warning("Could not persist agent tracking: %s", exc)


async def count_active_agents(store: StateStore) -> int:
    document = await store.read(keys.AGENTS)
    agents = document.get("agents", [])
    if not isinstance(agents, list):
        return 0
    return sum(
        1
        for a in agents
        if isinstance(a, dict) and a.get("status") == "active" and a.get("agent_type") != "orchestrator"
    )
