"""Error taxonomy for swarm orchestration."""

from __future__ import annotations

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


class SwarmError(RuntimeError):
    """Base class for orchestration errors."""


class SpawnError(SwarmError):
    """Agent process never started; fatal to that agent only."""


class CommandError(SwarmError):
    """External command failed, with retryability hint."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.exit_code = exit_code
        self.stderr = stderr


class TransientCommandError(CommandError):
    """Command failure that is worth retrying."""

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message, transient=True, exit_code=exit_code, stderr=stderr)


class FatalCommandError(CommandError):
    """Command failure that will not improve on retry."""

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message, transient=False, exit_code=exit_code, stderr=stderr)


class AgentTimeoutError(SwarmError):
    """Agent exceeded its per-agent timeout."""


class CleanupError(SwarmError):
    """Resource could not be reclaimed; reported, never fatal to the run."""


class CancellationError(SwarmError):
    """Operation stopped because shutdown was requested."""


class RetryExhaustedError(SwarmError):
    """All retry attempts failed."""

    def __init__(self, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Operation failed after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class InvalidTransitionError(SwarmError):
    """Agent status change not allowed by the lifecycle state machine."""


class BacklogUnavailableError(SwarmError):
    """Work items could not be enumerated; the run aborts before spawning."""
