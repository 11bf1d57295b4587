"""
Retry/backoff controller for the supervised agent loop.

The controller owns ``RunState`` and is its only writer. State is persisted before
every wait so a process killed mid-wait resumes at the same retry count.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from rich.console import Console

from . import store as keys
from .events import EventEmitter, EventType
from .runner import AgentRunner, RunOutcome
from .store import StateStore
from .stream import StreamConsumer

logger = logging.getLogger(__name__)

JITTER_SECONDS = 30
RATE_LIMIT_BUFFER = 120
COMPLETION_MARKER = "COMPLETION PROMISE FULFILLED"
COMPLETION_PHASES = {"COMPLETED", "complete", "finalized", "growth-loop"}

_RATE_LIMIT_RE = re.compile(r"resets (\d+)(am|pm)", re.IGNORECASE)

Sleep = Callable[[float], Awaitable[Any]]


class ControllerStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING = "waiting"
    TERMINAL = "terminal"


class LoopExitReason(str, Enum):
    MAX_ITERATIONS = "max_iterations"
    COMPLETION_PROMISE = "completion_promise"
    MAX_RETRIES = "max_retries"
    INTERRUPTED = "interrupted"

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]

    @property
    def status(self) -> str:
        return TERMINAL_STATUSES[self]


EXIT_CODES: dict[LoopExitReason, int] = {
    LoopExitReason.MAX_ITERATIONS: 0,
    LoopExitReason.COMPLETION_PROMISE: 0,
    LoopExitReason.MAX_RETRIES: 1,
    LoopExitReason.INTERRUPTED: 130,
}

TERMINAL_STATUSES: dict[LoopExitReason, str] = {
    LoopExitReason.MAX_ITERATIONS: "max_iterations_reached",
    LoopExitReason.COMPLETION_PROMISE: "completion_promise_fulfilled",
    LoopExitReason.MAX_RETRIES: "failed",
    LoopExitReason.INTERRUPTED: "interrupted",
}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class RunState:
    """Persisted loop bookkeeping used for crash recovery."""

    retry_count: int = 0
    iteration_count: int = 0
    status: str = "idle"
    last_exit_code: int = 0
    started_at: str = field(default_factory=_now_iso)
    last_run: str | None = None
    wait_until: str | None = None
    exit_reason: str | None = None
    max_retries: int = 50
    max_iterations: int = 1000
    base_wait: int = 60
    prompt_path: str | None = None
    pid: int = field(default_factory=os.getpid)

    def to_dict(self) -> dict[str, Any]:
        return {
            "retry_count": self.retry_count,
            "iteration_count": self.iteration_count,
            "status": self.status,
            "last_exit_code": self.last_exit_code,
            "started_at": self.started_at,
            "last_run": self.last_run,
            "wait_until": self.wait_until,
            "exit_reason": self.exit_reason,
            "max_retries": self.max_retries,
            "max_iterations": self.max_iterations,
            "base_wait": self.base_wait,
            "prompt_path": self.prompt_path,
            "pid": self.pid,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        state = cls()
        for name in ("retry_count", "iteration_count", "last_exit_code"):
            try:
                setattr(state, name, max(0, int(data.get(name, 0))))
            except (TypeError, ValueError):
                logger.warning("Run state field %r unreadable; using 0", name)
        for name in ("status", "started_at", "last_run", "wait_until", "exit_reason", "prompt_path"):
            value = data.get(name)
            if isinstance(value, str):
                setattr(state, name, value)
        return state


@dataclass
class AttemptResult:
    outcome: RunOutcome
    succeeded: bool
    exit_reason: LoopExitReason | None = None
    wait_seconds: int = 0
    rate_limited: bool = False


def calculate_wait(
    retry: int,
    base_wait: int = 60,
    max_wait: int = 3600,
    rng: random.Random | None = None,
) -> int:
    """Exponential backoff with jitter in [0, 30), capped at max_wait."""
    jitter = (rng or random).randint(0, JITTER_SECONDS - 1)
    wait = base_wait * (2 ** max(0, retry)) + jitter
    return max(0, min(max_wait, wait))


def detect_rate_limit(text: str, now: datetime | None = None) -> int:
    """Seconds until the last ``resets <H><am|pm>`` hint plus a buffer, or 0 when absent."""
    matches = _RATE_LIMIT_RE.findall(text)
    if not matches:
        return 0
    hour_text, ampm = matches[-1]
    hour = int(hour_text)
    ampm = ampm.lower()
    if ampm == "pm" and hour != 12:
        hour += 12
    elif ampm == "am" and hour == 12:
        hour = 0

    current = now or datetime.now()
    current_secs = current.hour * 3600 + current.minute * 60 + current.second
    wait = hour * 3600 - current_secs
    if wait <= 0:
        wait += 86400
    return wait + RATE_LIMIT_BUFFER


def format_duration(seconds: int) -> str:
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def check_completion(text: str, promise: str | None) -> bool:
    """True only when a promise is configured and the output fulfils it."""
    if not promise:
        return False
    return COMPLETION_MARKER in text or promise in text


class RetryController:
    """Runs agent attempts and applies the retry/backoff state machine."""

    def __init__(
        self,
        store: StateStore,
        runner: AgentRunner,
        *,
        max_retries: int = 50,
        max_iterations: int = 1000,
        base_wait: int = 60,
        max_wait: int = 3600,
        completion_promise: str | None = None,
        perpetual_mode: bool = False,
        completed_marker: Path | None = None,
        prompt_path: str | None = None,
        console: Console | None = None,
        events: EventEmitter | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self.max_retries = max_retries
        self.max_iterations = max_iterations
        self.base_wait = base_wait
        self.max_wait = max_wait
        self.completion_promise = completion_promise
        self.perpetual_mode = perpetual_mode
        self.completed_marker = completed_marker
        self.prompt_path = prompt_path
        self._console = console or Console()
        self._events = events or EventEmitter()
        self._sleep = sleep
        self._rng = rng
        self.status = ControllerStatus.IDLE
        self.state = RunState()

    async def load(self) -> RunState:
        """Resume retry and iteration counts from the persisted run state."""
        self.state = RunState.from_dict(await self._store.read(keys.RUN_STATE))
        self.state.max_retries = self.max_retries
        self.state.max_iterations = self.max_iterations
        self.state.base_wait = self.base_wait
        self.state.prompt_path = self.prompt_path
        self.state.pid = os.getpid()
        if self.state.retry_count or self.state.iteration_count:
            logger.info(
                "Resuming from retry %d, iteration %d (previous status: %s)",
                self.state.retry_count,
                self.state.iteration_count,
                self.state.status,
            )
        return self.state

    async def resume_pending_wait(self) -> int:
        """Finish a wait interrupted by a crash, then advance the retry count once."""
        if not self.state.wait_until:
            return 0
        try:
            until = datetime.fromisoformat(self.state.wait_until)
            remaining = max(0, int((until - datetime.now(UTC)).total_seconds()))
        except ValueError:
            remaining = 0
        if remaining:
            logger.info("Resuming interrupted wait (%s left)", format_duration(remaining))
            self.status = ControllerStatus.WAITING
            await self.countdown(remaining)
        self.state.retry_count += 1
        self.state.wait_until = None
        await self._persist("retrying")
        return remaining

    async def begin_iteration(self) -> LoopExitReason | None:
        """Apply the loop bounds; returns an exit reason when the loop must stop."""
        if self.state.retry_count >= self.max_retries:
            logger.error("Max retries (%d) exceeded", self.max_retries)
            return LoopExitReason.MAX_RETRIES
        if self.state.iteration_count >= self.max_iterations:
            logger.warning("Max iterations (%d) reached. Stopping.", self.max_iterations)
            return LoopExitReason.MAX_ITERATIONS
        self.state.iteration_count += 1
        return None

    async def execute(
        self,
        instruction: str,
        *,
        timeout: float | None = None,
        consumer: StreamConsumer | None = None,
        task_id: str | None = None,
    ) -> AttemptResult:
        self.status = ControllerStatus.RUNNING
        await self._persist("running")
        await self._events.emit_type(
            EventType.ITERATION_STARTED,
            f"Attempt {self.state.retry_count + 1} of {self.max_retries}",
            task_id=task_id,
            iteration=self.state.iteration_count,
        )

        outcome = await self._runner.run(instruction, timeout=timeout, consumer=consumer)
        exit_code = outcome.effective_exit_code
        self.state.last_exit_code = exit_code
        self.state.last_run = _now_iso()
        await self._persist("exited")
        logger.info("Agent exited with code %d after %.0fs", exit_code, outcome.duration_seconds)

        if exit_code == 0:
            return await self._on_success(outcome, task_id)
        return await self._on_failure(outcome, task_id)

    async def _on_success(self, outcome: RunOutcome, task_id: str | None) -> AttemptResult:
        await self._events.emit_type(
            EventType.ITERATION_COMPLETED,
            "Iteration complete",
            task_id=task_id,
            iteration=self.state.iteration_count,
        )
        if self.perpetual_mode:
            logger.info("Perpetual mode: ignoring completion signals, continuing immediately")
            self.state.retry_count += 1
            await self._persist("running")
            return AttemptResult(outcome=outcome, succeeded=True)

        if check_completion(outcome.output, self.completion_promise):
            logger.info("COMPLETION PROMISE FULFILLED: %s", self.completion_promise)
            return AttemptResult(
                outcome=outcome,
                succeeded=True,
                exit_reason=LoopExitReason.COMPLETION_PROMISE,
            )

        if await self.is_completed():
            logger.warning("Agent claims completion, but no explicit promise was fulfilled.")

        self.state.retry_count += 1
        await self._persist("running")
        return AttemptResult(outcome=outcome, succeeded=True)

    async def _on_failure(self, outcome: RunOutcome, task_id: str | None) -> AttemptResult:
        rate_limit_wait = detect_rate_limit(outcome.output)
        if rate_limit_wait > 0:
            wait = rate_limit_wait
            logger.warning("Rate limit detected! Waiting until reset (~%s)", format_duration(wait))
            event_type = EventType.RATE_LIMITED
        else:
            wait = calculate_wait(self.state.retry_count, self.base_wait, self.max_wait, self._rng)
            logger.warning("Will retry in %ds...", wait)
            event_type = EventType.WAIT_STARTED

        self.status = ControllerStatus.WAITING
        self.state.wait_until = (datetime.now(UTC) + timedelta(seconds=wait)).isoformat()
        await self._persist("waiting")
        await self._events.emit_type(
            EventType.ITERATION_FAILED,
            f"Agent exited with code {outcome.effective_exit_code}",
            task_id=task_id,
            iteration=self.state.iteration_count,
            data={"exit_code": outcome.effective_exit_code, "timed_out": outcome.timed_out},
        )
        await self._events.emit_type(
            event_type,
            f"Waiting {wait}s before retry",
            task_id=task_id,
            data={"wait_seconds": wait, "retry": self.state.retry_count},
        )

        return AttemptResult(
            outcome=outcome,
            succeeded=False,
            wait_seconds=wait,
            rate_limited=rate_limit_wait > 0,
        )

    async def backoff(self, attempt: AttemptResult) -> None:
        """Sleep out a failed attempt's wait, then advance the retry count."""
        if attempt.succeeded:
            return
        await self.countdown(attempt.wait_seconds)
        self.state.retry_count += 1
        self.state.wait_until = None
        self.status = ControllerStatus.RUNNING
        await self._persist("retrying")

    async def countdown(self, seconds: int) -> None:
        interval = 60 if seconds > 1800 else 10
        remaining = seconds
        while remaining > 0:
            self._console.print(f"[yellow]Resuming in {format_duration(remaining)}...[/yellow]")
            await self._sleep(min(interval, remaining))
            remaining -= interval

    async def is_completed(self) -> bool:
        document = await self._store.read(keys.ORCHESTRATOR)
        if document.get("current_phase") in COMPLETION_PHASES:
            return True
        return bool(self.completed_marker and self.completed_marker.exists())

    async def finish(self, reason: LoopExitReason) -> int:
        self.status = ControllerStatus.TERMINAL
        self.state.exit_reason = reason.value
        if reason == LoopExitReason.INTERRUPTED:
            # wait_until survives so the next start finishes the interrupted wait
            self.state.last_exit_code = reason.exit_code
        else:
            self.state.wait_until = None
        await self._persist(reason.status)
        return reason.exit_code

    async def abort(self, error: BaseException) -> None:
        """Record a loop stopped by an unexpected error as terminal."""
        self.status = ControllerStatus.TERMINAL
        self.state.exit_reason = f"error: {type(error).__name__}: {error}"
        self.state.last_exit_code = 1
        await self._persist("crashed")

    async def interrupt(self) -> int:
        return await self.finish(LoopExitReason.INTERRUPTED)

    async def _persist(self, status: str) -> None:
        self.state.status = status
        await self._store.write(keys.RUN_STATE, self.state.to_dict())
