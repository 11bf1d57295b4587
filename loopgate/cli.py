"""Main CLI entry point for loopgate."""

import asyncio
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from . import store as keys
from .config import settings, validate_settings
from .confidence import ConfidenceScorer, recommendation
from .debate import DebateVerifier, evaluate_outcome
from .db import get_database
from .orchestrate import Orchestrator
from .resources import load_snapshot
from .store import StateStore
from .stream import count_active_agents
from .task_queue import Task, TaskQueue, TaskStatus, new_task_id

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


def _store() -> StateStore:
    return StateStore(get_database(), export_dir=settings.export_dir)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Confidence-gated autonomous execution loop.

    Repeatedly runs a coding agent, scoring and verifying each task before it executes.
    """
    _configure_logging(verbose)


@main.command()
@click.option(
    "--prompt-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Requirements document used for auto-generated tasks",
)
@click.option("--max-iterations", type=int, default=None, help="Override max iterations")
@click.option("--perpetual", is_flag=True, help="Ignore completion signals")
def run(prompt_file: Path | None, max_iterations: int | None, perpetual: bool) -> None:
    """Run the autonomous loop until a terminal condition."""
    updates: dict[str, object] = {}
    if prompt_file is not None:
        updates["prompt_path"] = prompt_file
    if max_iterations is not None:
        updates["max_iterations"] = max_iterations
    if perpetual:
        updates["perpetual_mode"] = True
    cfg = settings.model_copy(update=updates)
    validate_settings(cfg)

    orchestrator = Orchestrator(cfg, database=get_database(), console=console)
    reason = asyncio.run(orchestrator.run_until_signalled())
    raise SystemExit(reason.exit_code)


@main.command()
def status() -> None:
    """Show run state, queue counts and the latest resource snapshot."""

    async def show_status() -> None:
        store = _store()
        run_state = await store.read(keys.RUN_STATE)
        orchestrator = await store.read(keys.ORCHESTRATOR)
        counts = await TaskQueue(store).counts()
        snapshot = await load_snapshot(store)
        confidence = await store.read(keys.CONFIDENCE)

        console.print(
            Panel(
                f"Status: [cyan]{run_state.get('status', 'idle')}[/cyan]\n"
                f"Exit reason: {run_state.get('exit_reason') or '-'}\n"
                f"Retry: {run_state.get('retry_count', 0)}/{settings.max_retries}\n"
                f"Iteration: {run_state.get('iteration_count', 0)}/{settings.max_iterations}\n"
                f"Last exit code: {run_state.get('last_exit_code', 0)}\n"
                f"Last run: {run_state.get('last_run') or '-'}\n"
                f"Phase: {orchestrator.get('current_phase', 'UNKNOWN')}",
                title="Run State",
            )
        )

        table = Table(title="Task Queue")
        table.add_column("Partition", style="cyan")
        table.add_column("Tasks", style="green")
        for name, value in counts.items():
            table.add_row(name, str(value))
        console.print(table)

        if snapshot is not None:
            style = "red" if snapshot.overall_status == "warning" else "green"
            console.print(
                f"Resources: [{style}]{snapshot.overall_status}[/{style}] "
                f"(CPU {snapshot.cpu.usage_percent:.0f}%, memory {snapshot.memory.usage_percent:.0f}%)"
            )
            if snapshot.warning_message:
                console.print(f"  [yellow]{snapshot.warning_message}[/yellow]")
        if confidence:
            console.print(
                f"Last confidence: {confidence.get('confidence')} "
                f"({confidence.get('tier')}) for {confidence.get('task_id')}"
            )

    asyncio.run(show_status())


@main.group()
def queue() -> None:
    """Inspect and edit the task queue."""


@queue.command(name="add")
@click.argument("task_type")
@click.argument("description")
@click.option("--priority", "-p", default=5, help="Higher runs sooner")
@click.option("--timeout", default=3600, help="Run timeout in seconds")
@click.option("--depends-on", "-d", multiple=True, help="Task id this task waits for")
@click.option("--goal", default=None)
@click.option("--constraints", default=None)
@click.option("--target", default=None)
@click.option("--action", default=None)
@click.option("--id", "task_id", default=None, help="Explicit task id")
def queue_add(
    task_type: str,
    description: str,
    priority: int,
    timeout: int,
    depends_on: tuple[str, ...],
    goal: str | None,
    constraints: str | None,
    target: str | None,
    action: str | None,
    task_id: str | None,
) -> None:
    """Add a task.

    TASK_TYPE: Category such as lint, deploy, architecture
    DESCRIPTION: Free-text description of the work
    """
    payload = {"description": description}
    for name, value in (("goal", goal), ("constraints", constraints), ("target", target), ("action", action)):
        if value:
            payload[name] = value

    async def do_add() -> None:
        await get_database().init_db()
        task = Task(
            id=task_id or new_task_id(),
            type=task_type,
            priority=priority,
            timeout=timeout,
            dependencies=list(depends_on),
            payload=payload,
        )
        await TaskQueue(_store()).enqueue(task)
        console.print(f"[green]Queued {task.id}[/green]")

    asyncio.run(do_add())


@queue.command(name="list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in TaskStatus]),
    default=None,
    help="Only show one partition",
)
def queue_list(status_filter: str | None) -> None:
    """List queued tasks."""

    async def list_all() -> None:
        state = await TaskQueue(_store()).load()
        statuses = [TaskStatus(status_filter)] if status_filter else list(TaskStatus)

        table = Table(title="Tasks")
        table.add_column("ID", style="cyan")
        table.add_column("Type")
        table.add_column("Priority")
        table.add_column("Status")
        table.add_column("Attempts")
        table.add_column("Last Error")
        shown = 0
        for status_value in statuses:
            for task in state.partition(status_value):
                table.add_row(
                    task.id,
                    task.type,
                    str(task.priority),
                    task.status.value,
                    str(task.attempts),
                    (task.last_error or "")[:60],
                )
                shown += 1
        if not shown:
            console.print("[yellow]No tasks found[/yellow]")
            return
        console.print(table)

    asyncio.run(list_all())


@main.command()
@click.argument("task_id")
def score(task_id: str) -> None:
    """Show the confidence routing recommendation for a queued task."""

    async def do_score() -> None:
        store = _store()
        task_queue = TaskQueue(store)
        task = await task_queue.get(task_id)
        if task is None:
            console.print(f"[red]Task not found: {task_id}[/red]")
            raise SystemExit(1)
        scorer = ConfidenceScorer(max_parallel_agents=settings.max_parallel_agents)
        result = scorer.calculate(
            task,
            await load_snapshot(store),
            await task_queue.completion_history(),
            await count_active_agents(store),
        )
        summary = recommendation(result)

        console.print(f"Confidence: {result.confidence:.1%}")
        console.print(f"Tier: [cyan]{result.tier.value}[/cyan] (route {result.route})")
        console.print(f"Recommendation: {summary['recommendation']}")
        table = Table(title="Factor breakdown")
        table.add_column("Factor", style="cyan")
        table.add_column("Score")
        table.add_column("Contribution")
        for name, value in result.factors.to_dict().items():
            table.add_row(name, f"{value:.3f}", f"{summary['contributions'][name]:.3f}")
        console.print(table)

    asyncio.run(do_score())


@main.command()
@click.argument("content")
@click.option("--type", "proposal_type", default="generic", help="Proposal type")
@click.option("--rounds", default=None, type=int, help="Maximum debate rounds")
@click.option("--json", "as_json", is_flag=True, help="Print the evaluation as JSON")
def debate(content: str, proposal_type: str, rounds: int | None, as_json: bool) -> None:
    """Run debate verification on a proposal."""
    verifier = DebateVerifier(max_rounds=rounds or settings.debate_max_rounds)
    log = verifier.verify(proposal_type, content)
    evaluation = evaluate_outcome(log)

    if as_json:
        click.echo(json.dumps(evaluation, indent=2))
        return

    for debate_round in log.rounds:
        flaws = ", ".join(
            f"{f.point} ({f.severity}{'' if f.valid else ', dismissed'})"
            for f in debate_round.challenge.flaws
        )
        console.print(
            f"Round {debate_round.round}: defense {debate_round.defense.strength_score:.2f}; "
            f"flaws: {flaws or 'none'}"
        )
    color = "green" if evaluation["verified"] else "red"
    console.print(f"[{color}]{evaluation['verdict']}[/{color}]: {evaluation['reason']}")
    console.print(f"Recommendation: {evaluation['recommendation']}")


@main.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def reset(yes: bool) -> None:
    """Clear run state so the next run starts at retry 0."""
    if not yes:
        click.confirm("Reset run state, confidence and debate documents?", abort=True)

    async def do_reset() -> None:
        removed = await _store().clear([keys.RUN_STATE, keys.CONFIDENCE, keys.DEBATE, keys.AGENTS])
        console.print(f"[green]Cleared {removed} document(s)[/green]")

    asyncio.run(do_reset())


@main.command(name="init-db")
def init_db() -> None:
    """Create the state database tables."""
    asyncio.run(get_database().init_db())
    console.print(f"[green]State database ready:[/green] {settings.async_database_url}")


@main.command(name="schema-check", help="Check the state database schema.")
def schema_check() -> None:
    async def check() -> None:
        missing = await get_database().missing_tables()
        if missing:
            console.print(f"[red]Missing tables: {sorted(missing)}[/red]")
            console.print("Run: `loopgate init-db` or `alembic upgrade head`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


@main.command()
@click.option("--limit", default=20, help="Number of events to show")
def audit(limit: int) -> None:
    """Show recent audit events."""

    async def show() -> None:
        async with get_database().get_session() as session:
            events = await db.list_audit_events(session, limit)
        if not events:
            console.print("[yellow]No audit events[/yellow]")
            return
        table = Table(title="Audit Log")
        table.add_column("Time", style="cyan")
        table.add_column("Event")
        table.add_column("User")
        table.add_column("Data")
        for event in events:
            table.add_row(
                event.timestamp.strftime("%Y-%m-%d %H:%M:%S") if event.timestamp else "-",
                event.event,
                event.user or "-",
                event.data[:80],
            )
        console.print(table)

    asyncio.run(show())


if __name__ == "__main__":
    main()
