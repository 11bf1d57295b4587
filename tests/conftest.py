"""Shared test fixtures and configuration for pytest."""

import io
import random
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from rich.console import Console

from loopgate.db import Database
from loopgate.runner import RunOutcome
from loopgate.store import StateStore
from loopgate.task_queue import TaskQueue


class FixedRandom(random.Random):
    """Always picks the low end of a range, so backoff waits carry no jitter."""

    def randint(self, a: int, b: int) -> int:
        return a


class FakeRunner:
    """Stands in for AgentRunner; replays canned outcomes and records instructions."""

    def __init__(self, outcomes: list[RunOutcome] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.instructions: list[str] = []

    async def run(self, instruction, *, timeout=None, consumer=None) -> RunOutcome:
        self.instructions.append(instruction)
        outcome = self.outcomes.pop(0) if self.outcomes else RunOutcome(0, "done\n", 0.1)
        if consumer is not None:
            await consumer.start()
            for line in outcome.output.splitlines():
                await consumer.feed(line)
        return outcome


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'state.db'}"


@pytest_asyncio.fixture
async def database(database_url: str) -> AsyncGenerator[Database]:
    db = Database(database_url)
    await db.init_db()
    yield db
    await db.dispose()


@pytest.fixture
def store(database: Database) -> StateStore:
    return StateStore(database)


@pytest.fixture
def queue(store: StateStore) -> TaskQueue:
    return TaskQueue(store)


@pytest.fixture
def quiet_console() -> Console:
    return Console(file=io.StringIO(), width=120)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
