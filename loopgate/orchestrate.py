"""
Top-level control loop: pick a task, score it, maybe debate it, route it, run it.
"""

from __future__ import annotations

import asyncio
import logging
import random
import signal
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from rich.console import Console
from rich.panel import Panel

from . import store as keys
from .backoff import LoopExitReason, RetryController, Sleep
from .config import Settings
from .confidence import ConfidenceResult, ConfidenceScorer, Tier, describe_tier
from .db import Database
from .debate import DebateVerdict, DebateVerifier, evaluate_outcome, should_debate
from .events import EventEmitter, EventType, audit_handler
from .resources import ResourceMonitor, Sampler, load_snapshot
from .runner import AgentRunner
from .status import StatusFileRefresher
from .store import StateStore
from .stream import StreamConsumer, count_active_agents
from .task_queue import Task, TaskQueue, new_task_id

logger = logging.getLogger(__name__)

STATE_VERSION = "1.0"
AUTO_TASK_TYPE = "autonomous"


@dataclass
class StepResult:
    task: Task
    route: str
    executed: bool
    succeeded: bool = False
    exit_reason: LoopExitReason | None = None
    confidence: ConfidenceResult | None = None
    debate_verdict: DebateVerdict | None = None


def proposal_text(task: Task) -> str:
    parts = [task.description]
    for name in ("goal", "action", "target"):
        value = task.payload.get(name)
        if value:
            parts.append(f"{name.capitalize()}: {value}")
    constraints = task.payload.get("constraints")
    if constraints:
        if isinstance(constraints, list):
            constraints = "; ".join(str(c) for c in constraints)
        parts.append(f"Constraints: {constraints}")
    return "\n".join(p for p in parts if p)


def build_instruction(task: Task, route: str, completion_promise: str | None = None) -> str:
    lines = [
        f"Task {task.id} ({task.type}), routing: {route}.",
        proposal_text(task),
    ]
    if route.startswith("execute_with_review"):
        lines.append("After making the change, review it and run the relevant tests.")
    elif route.startswith("supervisor_mode"):
        lines.append("Plan the work first, delegate to sub-agents, and verify every step.")
    if completion_promise:
        lines.append(f"When all work is complete, output exactly: {completion_promise}")
    return "\n".join(line for line in lines if line)


class Orchestrator:
    """Composes the queue, scorer, verifier and retry controller into one loop."""

    def __init__(
        self,
        cfg: Settings,
        *,
        database: Database | None = None,
        runner: AgentRunner | None = None,
        console: Console | None = None,
        sampler: Sampler | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.cfg = cfg
        self.console = console or Console()
        self.database = database or Database(cfg.async_database_url)
        self.store = StateStore(self.database, export_dir=cfg.export_dir)
        self.queue = TaskQueue(self.store)
        self.events = EventEmitter()
        if cfg.audit_log:
            self.events.on_event(audit_handler(self.database))

        self.scorer = ConfidenceScorer(max_parallel_agents=cfg.max_parallel_agents)
        self.verifier = DebateVerifier(max_rounds=cfg.debate_max_rounds)
        self.monitor = ResourceMonitor(
            self.store,
            cpu_threshold=cfg.cpu_threshold,
            memory_threshold=cfg.memory_threshold,
            interval=cfg.resource_check_interval,
            sampler=sampler,
            events=self.events,
        )
        self.status_file = StatusFileRefresher(self.store, cfg.status_file, cfg.status_interval)
        self.runner = runner or AgentRunner(cfg.agent_argv, log_dir=cfg.log_dir)
        self.controller = RetryController(
            self.store,
            self.runner,
            max_retries=cfg.max_retries,
            max_iterations=cfg.max_iterations,
            base_wait=cfg.base_wait,
            max_wait=cfg.max_wait,
            completion_promise=cfg.completion_promise,
            perpetual_mode=cfg.perpetual_mode,
            completed_marker=cfg.completed_marker,
            prompt_path=str(cfg.prompt_path) if cfg.prompt_path else None,
            console=self.console,
            events=self.events,
            sleep=sleep,
            rng=rng,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        await self.database.init_db()
        await self.controller.load()
        await self.queue.reconcile()
        await self.queue.evict_overflow()

        orchestrator = await self.store.read(keys.ORCHESTRATOR)
        if not orchestrator:
            await self.store.write(
                keys.ORCHESTRATOR,
                {
                    "version": STATE_VERSION,
                    "current_phase": "BOOTSTRAP",
                    "started_at": datetime.now(UTC).isoformat(),
                    "metrics": {"tasks_completed": 0, "tasks_failed": 0, "retries": 0},
                },
            )

    async def run(self) -> LoopExitReason:
        await self.setup()
        self._print_banner()

        stop = asyncio.Event()
        pollers = [
            asyncio.create_task(self.monitor.run(stop), name="resource-monitor"),
            asyncio.create_task(self.status_file.run(stop), name="status-file"),
        ]
        await self.events.emit_type(EventType.LOOP_STARTED, "Loop started")

        try:
            await self.controller.resume_pending_wait()
            reason = await self._loop()
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            logger.warning("Received interrupt signal")
            reason = LoopExitReason.INTERRUPTED
        except Exception as exc:
            logger.exception("Loop stopped by an unexpected error")
            await self._record_crash(exc)
            raise
        finally:
            stop.set()
            for poller in pollers:
                poller.cancel()
            await asyncio.gather(*pollers, return_exceptions=True)

        await self.controller.finish(reason)
        if reason == LoopExitReason.INTERRUPTED:
            await self.events.emit_type(EventType.LOOP_INTERRUPTED, "State saved. Run again to resume.")
            logger.info("State saved. Run again to resume.")
        else:
            await self.events.emit_type(
                EventType.LOOP_STOPPED,
                f"Loop stopped: {reason.value}",
                data={"exit_code": reason.exit_code},
            )
        logger.info("Loop finished: %s (exit code %d)", reason.value, reason.exit_code)
        return reason

    async def run_until_signalled(self) -> LoopExitReason:
        """Run with SIGINT/SIGTERM mapped to a clean interrupt."""
        main = asyncio.current_task()
        loop = asyncio.get_running_loop()
        installed: list[int] = []
        if main is not None:
            for signum in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(signum, main.cancel)
                    installed.append(signum)
                except (NotImplementedError, RuntimeError):
                    pass
        try:
            return await self.run()
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)

    async def _loop(self) -> LoopExitReason:
        while True:
            reason = await self.controller.begin_iteration()
            if reason is not None:
                return reason
            result = await self.step()
            if result.exit_reason is not None:
                return result.exit_reason

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    async def step(self) -> StepResult:
        task = await self.queue.next_eligible()
        if task is None:
            task = await self._auto_generate()
        await self.events.emit_type(
            EventType.TASK_STARTED,
            f"Task {task.id} started",
            task_id=task.id,
            iteration=self.controller.state.iteration_count,
        )

        confidence = await self.score(task)
        route = confidence.route if self.cfg.confidence_routing else "execute_direct"

        verdict: DebateVerdict | None = None
        if self.cfg.debate_enabled:
            required, why = should_debate(
                confidence.confidence, confidence.tier, task.type, self.cfg.debate_threshold
            )
            if required:
                logger.info("Debate required for %s (%s)", task.id, why)
                verdict = await self.debate(task)
                if verdict != DebateVerdict.VERIFIED:
                    await self._needs_human(task, f"debate {verdict.value}")
                    return StepResult(
                        task=task,
                        route=route,
                        executed=False,
                        confidence=confidence,
                        debate_verdict=verdict,
                    )
            else:
                logger.debug("Debate skipped for %s (%s)", task.id, why)

        if route == "escalate":
            await self._needs_human(task, describe_tier(Tier.ESCALATE))
            return StepResult(
                task=task, route=route, executed=False, confidence=confidence, debate_verdict=verdict
            )

        if verdict is not None:
            route = f"{route}_with_debate"
        logger.info(
            "Task %s: confidence %.3f, tier %s, route %s",
            task.id,
            confidence.confidence,
            confidence.tier.value,
            route,
        )
        return await self.execute(task, route, confidence, verdict)

    async def score(self, task: Task) -> ConfidenceResult:
        snapshot = await load_snapshot(self.store)
        history = await self.queue.completion_history()
        active = await count_active_agents(self.store)
        result = self.scorer.calculate(task, snapshot, history, active)
        await self.store.write(keys.CONFIDENCE, result.to_dict())
        await self.events.emit_type(
            EventType.CONFIDENCE_CALCULATED,
            f"Confidence {result.confidence:.3f} ({result.tier.value})",
            task_id=task.id,
            data=result.to_dict(),
        )
        return result

    async def debate(self, task: Task) -> DebateVerdict:
        log = self.verifier.verify(
            task.type,
            proposal_text(task),
            context=task.id,
            max_rounds=self.cfg.debate_max_rounds,
        )
        await self.store.write(keys.DEBATE, log.to_dict())
        await self.events.emit_type(
            EventType.DEBATE_COMPLETED,
            f"Debate {log.verdict.value}",
            task_id=task.id,
            data=evaluate_outcome(log),
        )
        return log.verdict

    async def execute(
        self,
        task: Task,
        route: str,
        confidence: ConfidenceResult,
        verdict: DebateVerdict | None,
    ) -> StepResult:
        instruction = build_instruction(task, route, self.cfg.completion_promise)
        consumer = StreamConsumer(
            self.store,
            console=self.console,
            events=self.events,
            blocked_commands=self.cfg.blocked_command_list,
            task_id=task.id,
        )
        attempt = await self.controller.execute(
            instruction, timeout=task.timeout, consumer=consumer, task_id=task.id
        )

        if attempt.succeeded:
            await self.queue.transition_to_completed(
                task.id,
                {
                    "status": "success",
                    "exit_code": attempt.outcome.exit_code,
                    "route": route,
                    "confidence": round(confidence.confidence, 3),
                    "duration_seconds": round(attempt.outcome.duration_seconds, 1),
                },
            )
            await self._bump_metrics(tasks_completed=1)
            await self.events.emit_type(EventType.TASK_COMPLETED, f"Task {task.id} completed", task_id=task.id)
        else:
            error = (
                f"timed out after {task.timeout}s"
                if attempt.outcome.timed_out
                else f"exit code {attempt.outcome.effective_exit_code}"
            )
            await self._record_failure(task, error)
            await self._bump_metrics(tasks_failed=1, retries=1)
            await self.controller.backoff(attempt)

        return StepResult(
            task=task,
            route=route,
            executed=True,
            succeeded=attempt.succeeded,
            exit_reason=attempt.exit_reason,
            confidence=confidence,
            debate_verdict=verdict,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _record_failure(self, task: Task, error: str) -> None:
        failed = await self.queue.transition_to_failed(task.id, error)
        if failed.attempts >= self.cfg.task_max_attempts:
            await self.queue.move_to_dead_letter(task.id)
            logger.error("Task %s moved to dead-letter after %d attempts", task.id, failed.attempts)
            await self.events.emit_type(
                EventType.TASK_DEAD_LETTERED,
                f"Task {task.id} exhausted {failed.attempts} attempts",
                task_id=task.id,
                data={"error": error},
            )
        else:
            await self.queue.requeue(task.id)
            await self.events.emit_type(
                EventType.TASK_FAILED,
                f"Task {task.id} failed ({error}); requeued",
                task_id=task.id,
                data={"error": error, "attempts": failed.attempts},
            )

    async def _record_crash(self, exc: Exception) -> None:
        try:
            await self.controller.abort(exc)
            await self.events.emit_type(
                EventType.LOOP_STOPPED,
                f"Loop stopped by error: {exc}",
                data={"error": type(exc).__name__},
            )
        except Exception as persist_exc:
            logger.error("Could not record loop failure: %s", persist_exc)

    async def _needs_human(self, task: Task, reason: str) -> None:
        message = f"needs human review: {reason}"
        await self.queue.transition_to_failed(task.id, message)
        await self._bump_metrics(tasks_failed=1)
        logger.warning("Task %s not executed (%s)", task.id, message)
        await self.events.emit_type(
            EventType.HUMAN_INPUT_REQUESTED,
            message,
            task_id=task.id,
            iteration=self.controller.state.iteration_count,
        )

    async def _auto_generate(self) -> Task:
        task = Task(
            id=new_task_id(),
            type=AUTO_TASK_TYPE,
            payload={"description": self._base_prompt()},
        )
        await self.queue.enqueue(task)
        await self.events.emit_type(EventType.TASK_QUEUED, "Auto-generated task", task_id=task.id)
        started = await self.queue.next_eligible()
        # Blocked pending tasks are skipped, so the fresh task is always eligible.
        assert started is not None
        return started

    def _base_prompt(self) -> str:
        path = self.cfg.prompt_path
        if path is not None:
            try:
                return f"Work from the requirements in {path}:\n" + path.read_text(encoding="utf-8")
            except OSError as exc:
                logger.warning("Could not read prompt file %s: %s", path, exc)
        return self.cfg.prompt

    async def _bump_metrics(self, **deltas: int) -> None:
        document = await self.store.read(keys.ORCHESTRATOR)
        metrics: dict[str, Any] = document.get("metrics") if isinstance(document.get("metrics"), dict) else {}
        for name, delta in deltas.items():
            metrics[name] = int(metrics.get(name, 0)) + delta
        document["metrics"] = metrics
        await self.store.write(keys.ORCHESTRATOR, document)

    def _print_banner(self) -> None:
        state = self.controller.state
        self.console.print(
            Panel(
                f"Max retries: {self.cfg.max_retries}\n"
                f"Max iterations: {self.cfg.max_iterations}\n"
                f"Completion promise: {self.cfg.completion_promise or '(none)'}\n"
                f"Base wait: {self.cfg.base_wait}s  Max wait: {self.cfg.max_wait}s\n"
                f"Debate: {'on' if self.cfg.debate_enabled else 'off'}"
                f" (threshold {self.cfg.debate_threshold:.2f}, {self.cfg.debate_max_rounds} rounds)\n"
                f"Resuming at retry {state.retry_count}, iteration {state.iteration_count}",
                title="Autonomous Execution",
                border_style="blue",
            )
        )
