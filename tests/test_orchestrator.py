import asyncio
import sys
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from loopgate import db
from loopgate import store as keys
from loopgate.backoff import LoopExitReason
from loopgate.config import Settings
from loopgate.confidence import ConfidenceScorer, ScoringStrategy
from loopgate.orchestrate import AUTO_TASK_TYPE, Orchestrator, build_instruction, proposal_text
from loopgate.runner import STREAM_LINE_LIMIT, AgentRunner, RunOutcome
from loopgate.task_queue import MAX_COMPLETED, Task, TaskStatus
from tests.conftest import FakeRunner, FixedRandom


class Unclear(ScoringStrategy):
    def score(self, task: Task) -> float:
        return 0.0


class HangingRunner(FakeRunner):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()

    async def run(self, instruction, *, timeout=None, consumer=None) -> RunOutcome:
        self.instructions.append(instruction)
        self.started.set()
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


@pytest_asyncio.fixture
async def build(tmp_path, quiet_console, sleep_recorder) -> AsyncGenerator:
    created: list[Orchestrator] = []

    def factory(runner=None, **overrides) -> Orchestrator:
        options = {
            "state_dir": tmp_path / "state",
            "max_iterations": 3,
            "max_retries": 10,
            "base_wait": 1,
            "max_wait": 5,
            "audit_log": False,
            "status_interval": 1,
            "resource_check_interval": 60,
        }
        options.update(overrides)
        orchestrator = Orchestrator(
            Settings(_env_file=None, **options),
            runner=runner or FakeRunner(),
            console=quiet_console,
            sampler=lambda: (10.0, 10.0),
            sleep=sleep_recorder,
            rng=FixedRandom(),
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        await orchestrator.database.dispose()


def test_instruction_carries_route_and_promise() -> None:
    task = Task(
        id="t1",
        type="lint",
        payload={"description": "Fix lint", "goal": "clean build", "constraints": ["no new deps"]},
    )

    text = proposal_text(task)
    assert text == "Fix lint\nGoal: clean build\nConstraints: no new deps"

    instruction = build_instruction(task, "execute_with_review", "ALL DONE")
    assert instruction.startswith("Task t1 (lint), routing: execute_with_review.")
    assert "review it and run the relevant tests" in instruction
    assert instruction.endswith("output exactly: ALL DONE")


@pytest.mark.asyncio
async def test_empty_queue_runs_autonomous_tasks_until_iteration_cap(build) -> None:
    runner = FakeRunner()
    orchestrator = build(runner, max_iterations=2, audit_log=True)

    reason = await orchestrator.run()

    assert reason == LoopExitReason.MAX_ITERATIONS
    assert reason.exit_code == 0
    assert len(runner.instructions) == 2
    state = await orchestrator.queue.load()
    assert [t.type for t in state.completed] == [AUTO_TASK_TYPE, AUTO_TASK_TYPE]
    assert state.completed[0].result["status"] == "success"

    run_state = await orchestrator.store.read(keys.RUN_STATE)
    assert run_state["status"] == "max_iterations_reached"
    assert run_state["iteration_count"] == 2

    orchestrator_doc = await orchestrator.store.read(keys.ORCHESTRATOR)
    assert orchestrator_doc["metrics"]["tasks_completed"] == 2

    async with orchestrator.database.get_session() as session:
        events = {row.event for row in await db.list_audit_events(session, limit=200)}
    assert {"loop.started", "task.completed", "confidence.calculated", "loop.stopped"} <= events


@pytest.mark.asyncio
async def test_queued_task_runs_before_autonomous_work(build) -> None:
    runner = FakeRunner()
    orchestrator = build(runner, max_iterations=1)
    await orchestrator.setup()
    await orchestrator.queue.enqueue(
        Task(id="lint-1", type="lint", payload={"description": "Fix lint errors in the parser"})
    )

    await orchestrator.run()

    assert runner.instructions[0].startswith("Task lint-1 (lint)")
    done = await orchestrator.queue.get("lint-1")
    assert done.status == TaskStatus.COMPLETED
    assert done.result["route"] == "execute_with_review"
    confidence = await orchestrator.store.read(keys.CONFIDENCE)
    assert confidence["task_id"] == "lint-1"


@pytest.mark.asyncio
async def test_repeated_failures_exhaust_retries(build, sleep_recorder) -> None:
    runner = FakeRunner([RunOutcome(1, "boom\n", 0.1) for _ in range(5)])
    orchestrator = build(runner, max_retries=2, max_iterations=10, task_max_attempts=2)
    await orchestrator.setup()
    await orchestrator.queue.enqueue(
        Task(id="lint-1", type="lint", payload={"description": "Fix lint errors in the parser"})
    )

    reason = await orchestrator.run()

    assert reason == LoopExitReason.MAX_RETRIES
    assert reason.exit_code == 1
    assert len(runner.instructions) == 2
    assert sleep_recorder.total == 1 + 2

    task = await orchestrator.queue.get("lint-1")
    assert task.status == TaskStatus.DEAD_LETTER
    assert task.attempts == 2
    assert task.last_error == "exit code 1"

    run_state = await orchestrator.store.read(keys.RUN_STATE)
    assert run_state["status"] == "failed"
    assert run_state["retry_count"] == 2


@pytest.mark.asyncio
async def test_failed_task_is_requeued_below_attempt_limit(build) -> None:
    runner = FakeRunner([RunOutcome(1, "", 0.1)])
    orchestrator = build(runner, max_iterations=2, task_max_attempts=3)
    await orchestrator.setup()
    await orchestrator.queue.enqueue(
        Task(id="lint-1", type="lint", payload={"description": "Fix lint errors in the parser"})
    )

    await orchestrator.run()

    assert len(runner.instructions) == 2
    task = await orchestrator.queue.get("lint-1")
    assert task.status == TaskStatus.COMPLETED
    assert task.attempts == 1


@pytest.mark.asyncio
async def test_rejected_debate_needs_human_review(build) -> None:
    runner = FakeRunner()
    orchestrator = build(runner, max_iterations=1)
    await orchestrator.setup()
    await orchestrator.queue.enqueue(
        Task(id="db-1", type="database", payload={"description": "Update something"})
    )

    reason = await orchestrator.run()

    assert reason == LoopExitReason.MAX_ITERATIONS
    assert runner.instructions == []
    task = await orchestrator.queue.get("db-1")
    assert task.status == TaskStatus.FAILED
    assert task.last_error == "needs human review: debate rejected"
    debate = await orchestrator.store.read(keys.DEBATE)
    assert debate["verdict"] == "rejected"


@pytest.mark.asyncio
async def test_verified_debate_adds_suffix_to_route(build) -> None:
    runner = FakeRunner()
    orchestrator = build(runner, max_iterations=1)
    await orchestrator.setup()
    content = (
        "Implement the connection pool because the API must stay responsive; "
        "verify with unit tests and keep a rollback via feature flag."
    )
    await orchestrator.queue.enqueue(Task(id="db-2", type="database", payload={"description": content}))

    await orchestrator.run()

    task = await orchestrator.queue.get("db-2")
    assert task.status == TaskStatus.COMPLETED
    assert task.result["route"].endswith("_with_debate")


@pytest.mark.asyncio
async def test_low_confidence_escalates_without_running(build) -> None:
    runner = FakeRunner()
    orchestrator = build(runner, max_iterations=1, debate_enabled=False)
    orchestrator.scorer = ConfidenceScorer(Unclear())
    await orchestrator.setup()
    await orchestrator.queue.enqueue(
        Task(id="vague", type="lint", priority=1, timeout=7200, dependencies=["a", "b", "c"])
    )

    await orchestrator.run()

    assert runner.instructions == []
    task = await orchestrator.queue.get("vague")
    assert task.status == TaskStatus.FAILED
    assert task.last_error.startswith("needs human review: Seek clarification")


@pytest.mark.asyncio
async def test_routing_disabled_executes_directly(build) -> None:
    runner = FakeRunner()
    orchestrator = build(runner, max_iterations=1, debate_enabled=False, confidence_routing=False)
    orchestrator.scorer = ConfidenceScorer(Unclear())
    await orchestrator.setup()
    await orchestrator.queue.enqueue(Task(id="vague", type="lint"))

    await orchestrator.run()

    task = await orchestrator.queue.get("vague")
    assert task.status == TaskStatus.COMPLETED
    assert task.result["route"] == "execute_direct"


@pytest.mark.asyncio
async def test_completion_promise_stops_loop(build) -> None:
    runner = FakeRunner([RunOutcome(0, "shipped it\nALL DONE\n", 0.1)])
    orchestrator = build(runner, max_iterations=5, completion_promise="ALL DONE")

    reason = await orchestrator.run()

    assert reason == LoopExitReason.COMPLETION_PROMISE
    assert len(runner.instructions) == 1
    assert "output exactly: ALL DONE" in runner.instructions[0]
    run_state = await orchestrator.store.read(keys.RUN_STATE)
    assert run_state["status"] == "completion_promise_fulfilled"


@pytest.mark.asyncio
async def test_interrupt_saves_state_and_next_start_recovers(build) -> None:
    runner = HangingRunner()
    orchestrator = build(runner)
    await orchestrator.setup()
    await orchestrator.queue.enqueue(Task(id="long", type="lint", payload={"description": "Fix lint"}))

    running = asyncio.create_task(orchestrator.run())
    await asyncio.wait_for(runner.started.wait(), timeout=10)
    running.cancel()
    reason = await running

    assert reason == LoopExitReason.INTERRUPTED
    assert reason.exit_code == 130
    run_state = await orchestrator.store.read(keys.RUN_STATE)
    assert run_state["status"] == "interrupted"
    assert run_state["iteration_count"] == 1
    assert (await orchestrator.queue.get("long")).status == TaskStatus.IN_PROGRESS

    restarted = build(FakeRunner())
    await restarted.setup()
    assert (await restarted.queue.get("long")).status == TaskStatus.PENDING
    assert restarted.controller.state.iteration_count == 1


class ExplodingRunner(FakeRunner):
    async def run(self, instruction, *, timeout=None, consumer=None) -> RunOutcome:
        self.instructions.append(instruction)
        raise RuntimeError("agent bridge exploded")


@pytest.mark.asyncio
async def test_unexpected_error_is_recorded_before_propagating(build) -> None:
    orchestrator = build(ExplodingRunner(), audit_log=True)

    with pytest.raises(RuntimeError, match="agent bridge exploded"):
        await orchestrator.run()

    run_state = await orchestrator.store.read(keys.RUN_STATE)
    assert run_state["status"] == "crashed"
    assert run_state["exit_reason"] == "error: RuntimeError: agent bridge exploded"
    assert run_state["last_exit_code"] == 1
    async with orchestrator.database.get_session() as session:
        events = [row.event for row in await db.list_audit_events(session, limit=50)]
    assert events[0] == "loop.stopped"


@pytest.mark.asyncio
async def test_oversized_agent_output_does_not_stop_loop(build, tmp_path) -> None:
    size = STREAM_LINE_LIMIT + 1024 * 1024
    runner = AgentRunner(
        [sys.executable, "-c", f"import sys; sys.stdout.write('x' * {size} + '\\n')"],
        log_dir=tmp_path / "logs",
    )
    orchestrator = build(runner, max_iterations=1)

    reason = await orchestrator.run()

    assert reason == LoopExitReason.MAX_ITERATIONS
    state = await orchestrator.queue.load()
    assert state.in_progress == []
    assert len(state.completed) == 1
    run_state = await orchestrator.store.read(keys.RUN_STATE)
    assert run_state["status"] == "max_iterations_reached"


@pytest.mark.asyncio
async def test_timed_out_run_is_requeued_with_error(build) -> None:
    runner = FakeRunner([RunOutcome(124, "", 60.0, timed_out=True)])
    orchestrator = build(runner, max_iterations=1)
    await orchestrator.setup()
    await orchestrator.queue.enqueue(
        Task(id="slow", type="lint", timeout=60, payload={"description": "Fix lint errors in the parser"})
    )

    await orchestrator.run()

    task = await orchestrator.queue.get("slow")
    assert task.status == TaskStatus.PENDING
    assert task.attempts == 1
    assert task.last_error == "timed out after 60s"
    run_state = await orchestrator.store.read(keys.RUN_STATE)
    assert run_state["retry_count"] == 1
    assert run_state["last_exit_code"] == 124


@pytest.mark.asyncio
async def test_setup_trims_oversized_history(build) -> None:
    orchestrator = build()
    await orchestrator.database.init_db()
    await orchestrator.store.write(
        keys.QUEUE,
        {"completed": [Task(id=f"c{i}", status=TaskStatus.COMPLETED).to_dict() for i in range(MAX_COMPLETED + 4)]},
    )

    await orchestrator.setup()

    state = await orchestrator.queue.load()
    assert len(state.completed) == MAX_COMPLETED
    assert state.completed[0].id == "c4"
