"""Supervised agent subprocess execution."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from .stream import StreamConsumer

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_CANNOT_EXECUTE = 126
EXIT_NOT_FOUND = 127
STREAM_LINE_LIMIT = 4 * 1024 * 1024
OVERSIZED_LINE = "[oversized output line dropped]\n"


@dataclass
class RunOutcome:
    exit_code: int
    output: str
    duration_seconds: float
    timed_out: bool = False
    result_error: bool = False

    @property
    def effective_exit_code(self) -> int:
        """Non-zero when the process failed or its result event carried an error flag."""
        if self.exit_code == 0 and self.result_error:
            return 1
        return self.exit_code

    @property
    def succeeded(self) -> bool:
        return self.effective_exit_code == 0


class AgentRunner:
    """Runs the agent command with an instruction and streams its output."""

    def __init__(self, argv: list[str], *, log_dir: Path | None = None, cwd: Path | None = None) -> None:
        self.argv = list(argv)
        self.log_dir = log_dir
        self.cwd = cwd

    def _open_log(self) -> TextIO | None:
        if self.log_dir is None:
            return None
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            path = self.log_dir / f"autonomy-{datetime.now(UTC).strftime('%Y%m%d')}.log"
            return path.open("a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Agent log unavailable, continuing without it: %s", exc)
            return None

    async def run(
        self,
        instruction: str,
        *,
        timeout: float | None,
        consumer: StreamConsumer | None = None,
    ) -> RunOutcome:
        started = time.monotonic()
        lines: list[str] = []
        log_file = self._open_log()

        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *self.argv,
                    instruction,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    limit=STREAM_LINE_LIMIT,
                    cwd=str(self.cwd) if self.cwd else None,
                )
            except FileNotFoundError:
                message = f"Agent command not found: {self.argv[0]}"
                logger.error(message)
                return RunOutcome(EXIT_NOT_FOUND, message, time.monotonic() - started)
            except OSError as exc:
                logger.error("Could not start agent command: %s", exc)
                return RunOutcome(EXIT_CANNOT_EXECUTE, str(exc), time.monotonic() - started)

            async def pump() -> None:
                assert process.stdout is not None
                while True:
                    try:
                        raw = await process.stdout.readline()
                    except ValueError:
                        # readline has already discarded the oversized chunk
                        logger.warning("Dropped agent output line longer than %d bytes", STREAM_LINE_LIMIT)
                        lines.append(OVERSIZED_LINE)
                        continue
                    if not raw:
                        break
                    line = raw.decode("utf-8", errors="replace")
                    lines.append(line)
                    if log_file is not None:
                        log_file.write(line)
                    if consumer is not None:
                        await consumer.feed(line)
                await process.wait()

            timed_out = False
            try:
                if consumer is not None:
                    await consumer.start()
                await asyncio.wait_for(pump(), timeout=timeout)
            except TimeoutError:
                timed_out = True
                logger.warning("Agent run timed out after %ss", timeout)
            finally:
                await _reap(process)

            exit_code = EXIT_TIMEOUT if timed_out else (process.returncode or 0)
            if log_file is not None:
                log_file.write(
                    f"=== Session ended at {datetime.now(UTC).isoformat()} with exit code {exit_code} ===\n"
                )
            return RunOutcome(
                exit_code=exit_code,
                output="".join(lines),
                duration_seconds=time.monotonic() - started,
                timed_out=timed_out,
                result_error=bool(consumer and consumer.result_error),
            )
        finally:
            if log_file is not None:
                log_file.close()


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Kill the agent if it is still running and wait for it to exit."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()
