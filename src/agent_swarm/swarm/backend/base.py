"""Agent runner interface for swarm execution."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Protocol


@dataclass(slots=True)
class AgentSpawnRequest:
    """Inputs required to start one agent process."""

    agent_id: str
    role: str
    work_area: Path
    instructions: str
    instructions_file: Path
    completion_marker: Path
    output_log: Path
    control_file: Path
    extra_env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AgentProcess:
    """Opaque handle to a spawned agent process."""

    agent_id: str
    popen: subprocess.Popen[Any]
    output_log: Path
    log_handle: IO[str] | None = None

    @property
    def pid(self) -> int:
        return self.popen.pid

    def close_log(self) -> None:
        if self.log_handle is not None and not self.log_handle.closed:
            self.log_handle.close()


class AgentRunner(Protocol):
    """Protocol implemented by agent runners.

    ``reports_exit_codes`` is False for runners that cannot observe process
    exit; for those the completion marker alone decides success.
    """

    reports_exit_codes: bool

    def spawn(self, request: AgentSpawnRequest) -> Any:
        """Start the agent and return an opaque process handle."""

    def terminate(self, process: Any, grace_seconds: float) -> None:
        """Ask the process to exit, force-killing after ``grace_seconds``."""

    def exit_code(self, process: Any) -> int | None:
        """Return the exit code, or None while the process is still running."""
