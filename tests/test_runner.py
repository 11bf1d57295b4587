import asyncio
import json
import os
import sys

import pytest

from loopgate.runner import (
    EXIT_NOT_FOUND,
    EXIT_TIMEOUT,
    OVERSIZED_LINE,
    STREAM_LINE_LIMIT,
    AgentRunner,
    RunOutcome,
)
from loopgate.stream import StreamConsumer


def python_agent(script: str) -> list[str]:
    return [sys.executable, "-c", script]


def test_effective_exit_code() -> None:
    assert RunOutcome(0, "", 0).succeeded is True
    assert RunOutcome(0, "", 0, result_error=True).effective_exit_code == 1
    assert RunOutcome(3, "", 0, result_error=True).effective_exit_code == 3


@pytest.mark.asyncio
async def test_runs_agent_with_instruction(tmp_path) -> None:
    runner = AgentRunner(
        python_agent("import sys; print('got', sys.argv[1])"), log_dir=tmp_path / "logs"
    )

    outcome = await runner.run("fix the tests", timeout=30)

    assert outcome.exit_code == 0
    assert "got fix the tests" in outcome.output
    logs = list((tmp_path / "logs").glob("autonomy-*.log"))
    assert len(logs) == 1
    assert "with exit code 0" in logs[0].read_text()


@pytest.mark.asyncio
async def test_nonzero_exit_and_stderr_captured() -> None:
    runner = AgentRunner(python_agent("import sys; sys.stderr.write('bad\\n'); sys.exit(3)"))

    outcome = await runner.run("x", timeout=30)

    assert outcome.exit_code == 3
    assert "bad" in outcome.output
    assert outcome.succeeded is False


@pytest.mark.asyncio
async def test_timeout_kills_agent() -> None:
    runner = AgentRunner(python_agent("import time; time.sleep(30)"))

    outcome = await runner.run("x", timeout=0.5)

    assert outcome.timed_out is True
    assert outcome.exit_code == EXIT_TIMEOUT


@pytest.mark.asyncio
async def test_missing_command() -> None:
    runner = AgentRunner(["definitely-not-an-agent-binary-xyz"])

    outcome = await runner.run("x", timeout=5)

    assert outcome.exit_code == EXIT_NOT_FOUND
    assert "not found" in outcome.output


@pytest.mark.asyncio
async def test_result_error_event_marks_failure(store, quiet_console) -> None:
    line = json.dumps({"type": "result", "is_error": True, "subtype": "error_during_execution"})
    runner = AgentRunner(python_agent(f"print({line!r})"))
    consumer = StreamConsumer(store, console=quiet_console)

    outcome = await runner.run("x", timeout=30, consumer=consumer)

    assert outcome.exit_code == 0
    assert outcome.result_error is True
    assert outcome.effective_exit_code == 1
    assert consumer.result_data["subtype"] == "error_during_execution"


@pytest.mark.asyncio
async def test_oversized_line_is_dropped_and_run_continues(tmp_path) -> None:
    size = STREAM_LINE_LIMIT + 1024 * 1024
    runner = AgentRunner(
        python_agent(f"import sys; sys.stdout.write('x' * {size} + '\\n'); print('after')"),
        log_dir=tmp_path / "logs",
    )

    outcome = await runner.run("x", timeout=60)

    assert outcome.exit_code == 0
    assert OVERSIZED_LINE in outcome.output
    assert outcome.output.rstrip().endswith("after")


@pytest.mark.asyncio
async def test_unusable_log_dir_does_not_block_run(tmp_path) -> None:
    not_a_dir = tmp_path / "logs"
    not_a_dir.write_text("occupied")
    runner = AgentRunner(python_agent("print('ok')"), log_dir=not_a_dir)

    outcome = await runner.run("x", timeout=30)

    assert outcome.exit_code == 0
    assert "ok" in outcome.output


@pytest.mark.asyncio
async def test_cancelled_run_reaps_agent(tmp_path) -> None:
    pid_file = tmp_path / "pid"
    runner = AgentRunner(
        python_agent(
            f"import os, time; open({str(pid_file)!r}, 'w').write(str(os.getpid())); "
            "print('ready', flush=True); time.sleep(30)"
        )
    )

    running = asyncio.create_task(runner.run("x", timeout=60))
    for _ in range(200):
        if pid_file.exists() and pid_file.read_text():
            break
        await asyncio.sleep(0.05)
    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running

    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
