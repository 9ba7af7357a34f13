"""Synchronous external command execution with classified failures."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from agent_swarm.swarm.errors import FatalCommandError, TransientCommandError
from agent_swarm.swarm.failure_classifier import classify_command_failure

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_SECONDS = 120


@dataclass(slots=True)
class CommandResult:
    """Captured outcome of a successful command."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str


def run_command(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run ``argv`` to completion; raise a classified ``CommandError`` on failure."""

    args = tuple(str(part) for part in argv)
    if not args:
        raise FatalCommandError("Empty command.")
    try:
        completed = subprocess.run(  # noqa: S603
            args,
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as error:
        raise FatalCommandError(f"Command not found: {args[0]}") from error
    except subprocess.TimeoutExpired as error:
        raise TransientCommandError(f"Command timed out after {timeout}s: {args[0]}") from error
    except OSError as error:
        raise TransientCommandError(f"Command failed to start: {error}") from error

    if completed.returncode == 0:
        return CommandResult(
            argv=args,
            exit_code=0,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    classification = classify_command_failure(
        exit_code=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )
    logger.debug(
        "Command failed: argv=%s exit_code=%s classification=%s",
        args,
        completed.returncode,
        classification.to_details(),
    )
    message = (
        f"{' '.join(args[:3])} exited with {completed.returncode}: "
        f"{completed.stderr.strip()[:500]}"
    )
    if classification.transient:
        raise TransientCommandError(
            message,
            exit_code=completed.returncode,
            stderr=completed.stderr,
        )
    raise FatalCommandError(message, exit_code=completed.returncode, stderr=completed.stderr)
