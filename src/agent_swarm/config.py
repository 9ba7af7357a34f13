"""Runtime configuration for swarm runs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_swarm.swarm.notifications import Priority
from agent_swarm.swarm.retry import RetryPolicy


@dataclass(slots=True)
class OrchestrationSettings:
    """Concurrency, polling, and timeout settings."""

    concurrency: int = 4
    poll_interval_seconds: float = 5.0
    agent_timeout_seconds: float = 3_600.0
    run_timeout_seconds: float | None = None
    grace_seconds: float = 10.0
    output_buffer_lines: int = 200
    use_worktrees: bool = True


@dataclass(slots=True)
class RetrySettings:
    """Retry policy for git and backlog commands."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    jitter_fraction: float = 0.1

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
            jitter_fraction=self.jitter_fraction,
        )


@dataclass(slots=True)
class AgentSettings:
    """How agent processes are launched and where work items come from."""

    command_template: str | None = None
    backlog_command: str | None = "swarm-tasks"


@dataclass(slots=True)
class NotificationSettings:
    """Desktop notification command and its priority threshold."""

    command_template: str | None = None
    threshold: Priority = Priority.HIGH
    enabled: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    root_dir: Path = Path(".agent_swarm")
    repo_dir: Path = Path()
    orchestration: OrchestrationSettings = field(default_factory=OrchestrationSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, root_dir: Path | None = None) -> Settings:
        """Load settings from ``AGENT_SWARM_*`` environment variables."""

        return cls(
            root_dir=root_dir or Path(os.getenv("AGENT_SWARM_ROOT_DIR", ".agent_swarm")),
            repo_dir=Path(os.getenv("AGENT_SWARM_REPO_DIR", ".")),
            orchestration=OrchestrationSettings(
                concurrency=_env_int("AGENT_SWARM_CONCURRENCY", default=4),
                poll_interval_seconds=_env_float("AGENT_SWARM_POLL_INTERVAL_SECONDS", default=5.0),
                agent_timeout_seconds=_env_float(
                    "AGENT_SWARM_AGENT_TIMEOUT_SECONDS",
                    default=3600.0,
                ),
                run_timeout_seconds=_env_optional_float("AGENT_SWARM_RUN_TIMEOUT_SECONDS"),
                grace_seconds=_env_float("AGENT_SWARM_GRACE_SECONDS", default=10.0),
                output_buffer_lines=_env_int("AGENT_SWARM_OUTPUT_BUFFER_LINES", default=200),
                use_worktrees=_env_bool("AGENT_SWARM_USE_WORKTREES", default=True),
            ),
            retry=RetrySettings(
                max_attempts=_env_int("AGENT_SWARM_RETRY_MAX_ATTEMPTS", default=3),
                base_delay_seconds=_env_float("AGENT_SWARM_RETRY_BASE_DELAY_SECONDS", default=1.0),
                backoff_multiplier=_env_float("AGENT_SWARM_RETRY_BACKOFF_MULTIPLIER", default=2.0),
                jitter_fraction=_env_float("AGENT_SWARM_RETRY_JITTER_FRACTION", default=0.1),
            ),
            agent=AgentSettings(
                command_template=os.getenv("AGENT_SWARM_AGENT_COMMAND") or None,
                backlog_command=os.getenv("AGENT_SWARM_BACKLOG_COMMAND", "swarm-tasks") or None,
            ),
            notifications=NotificationSettings(
                command_template=os.getenv("AGENT_SWARM_NOTIFY_COMMAND") or None,
                threshold=_env_priority("AGENT_SWARM_NOTIFY_THRESHOLD", default=Priority.HIGH),
                enabled=_env_bool("AGENT_SWARM_NOTIFICATIONS_ENABLED", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        orchestration = self.orchestration
        if orchestration.concurrency < 1:
            raise ValueError("AGENT_SWARM_CONCURRENCY must be >= 1.")
        if orchestration.poll_interval_seconds <= 0:
            raise ValueError("AGENT_SWARM_POLL_INTERVAL_SECONDS must be > 0.")
        if orchestration.agent_timeout_seconds <= 0:
            raise ValueError("AGENT_SWARM_AGENT_TIMEOUT_SECONDS must be > 0.")
        run_timeout = orchestration.run_timeout_seconds
        if run_timeout is not None and run_timeout <= 0:
            raise ValueError("AGENT_SWARM_RUN_TIMEOUT_SECONDS must be > 0.")
        if orchestration.grace_seconds < 0:
            raise ValueError("AGENT_SWARM_GRACE_SECONDS must be >= 0.")
        if orchestration.output_buffer_lines < 1:
            raise ValueError("AGENT_SWARM_OUTPUT_BUFFER_LINES must be >= 1.")
        if self.retry.max_attempts < 1:
            raise ValueError("AGENT_SWARM_RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("AGENT_SWARM_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.retry.backoff_multiplier < 1:
            raise ValueError("AGENT_SWARM_RETRY_BACKOFF_MULTIPLIER must be >= 1.")
        if not 0 <= self.retry.jitter_fraction <= 1:
            raise ValueError("AGENT_SWARM_RETRY_JITTER_FRACTION must be within [0, 1].")

    def require_agent_command(self) -> str:
        if not self.agent.command_template:
            raise ValueError(
                "No agent command configured. Set AGENT_SWARM_AGENT_COMMAND, e.g. "
                "'claude -p {instructions}'.",
            )
        return self.agent.command_template


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = _env_optional_float(name)
    return default if value is None else value


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_priority(name: str, default: Priority) -> Priority:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return Priority(value.strip().lower())
    except ValueError as error:
        choices = ", ".join(priority.value for priority in Priority)
        raise ValueError(f"Invalid {name}: {value!r}. Expected one of: {choices}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
