"""Configuration settings for the confidence-gated execution loop."""

import shlex
from pathlib import Path

from pydantic_settings import BaseSettings

from .errors import InvalidConfigError

DEFAULT_BLOCKED_COMMANDS = "rm -rf /,rm -rf ~,rm -rf $HOME,mkfs,dd if=/dev/zero,:(){ :|:& };:"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # State
    state_dir: Path = Path(".loopgate")
    database_url: str | None = None
    export_dir: Path | None = None

    # Retry / backoff
    max_retries: int = 50
    base_wait: int = 60  # seconds
    max_wait: int = 3600  # seconds
    max_iterations: int = 1000
    completion_promise: str | None = None
    perpetual_mode: bool = False
    task_max_attempts: int = 3

    # Debate
    debate_enabled: bool = True
    debate_max_rounds: int = 2
    debate_threshold: float = 0.70

    # Resources
    resource_check_interval: int = 300  # 5 minutes
    cpu_threshold: int = 80
    memory_threshold: int = 80
    max_parallel_agents: int = 10

    # Routing
    confidence_routing: bool = True

    # Supervised agent
    agent_command: str = (
        "claude --dangerously-skip-permissions --output-format stream-json --verbose -p"
    )
    prompt: str = "Continue working on the project. Pick the next most valuable improvement."
    prompt_path: Path | None = None

    # Observability
    status_interval: int = 5
    audit_log: bool = True
    blocked_commands: str = DEFAULT_BLOCKED_COMMANDS

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.state_dir / 'state.db'}"

    @property
    def sync_database_url(self) -> str:
        """Sync SQLAlchemy database URL (used by alembic)."""
        return self.async_database_url.replace("+aiosqlite", "")

    @property
    def agent_argv(self) -> list[str]:
        return shlex.split(self.agent_command)

    @property
    def blocked_command_list(self) -> list[str]:
        return [c.strip() for c in self.blocked_commands.split(",") if c.strip()]

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def status_file(self) -> Path:
        return self.state_dir / "STATUS.txt"

    @property
    def completed_marker(self) -> Path:
        return self.state_dir / "COMPLETED"

    class Config:
        env_prefix = "LOOPGATE_"
        env_file = ".env"


def validate_settings(cfg: Settings) -> None:
    """Reject configurations the loop cannot run with."""
    problems: list[str] = []
    if cfg.max_retries < 1:
        problems.append("max_retries must be at least 1")
    if cfg.max_iterations < 1:
        problems.append("max_iterations must be at least 1")
    if cfg.base_wait < 0 or cfg.max_wait < 0:
        problems.append("wait times must not be negative")
    if cfg.base_wait > cfg.max_wait:
        problems.append("base_wait must not exceed max_wait")
    for name in ("cpu_threshold", "memory_threshold"):
        value = getattr(cfg, name)
        if not 0 < value <= 100:
            problems.append(f"{name} must be within 1..100 (got {value})")
    if not 0.0 <= cfg.debate_threshold <= 1.0:
        problems.append("debate_threshold must be within 0..1")
    if cfg.max_parallel_agents < 1:
        problems.append("max_parallel_agents must be at least 1")
    if cfg.task_max_attempts < 1:
        problems.append("task_max_attempts must be at least 1")
    if not cfg.agent_argv:
        problems.append("agent_command must not be empty")

    if problems:
        raise InvalidConfigError("Invalid configuration:\n  " + "\n  ".join(problems))


# Global settings instance
settings = Settings()
