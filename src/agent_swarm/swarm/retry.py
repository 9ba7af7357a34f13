"""Bounded retry with exponential backoff and jitter."""

from __future__ import annotations

import logging
import random
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from agent_swarm.swarm.commands import (
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    CommandResult,
    run_command,
)
from agent_swarm.swarm.errors import (
    CancellationError,
    CommandError,
    RetryExhaustedError,
)

if TYPE_CHECKING:
    from agent_swarm.swarm.context import RunContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(error: BaseException) -> bool:
    """Default classifier: transient command errors and I/O hiccups retry."""

    if isinstance(error, CommandError):
        return error.transient
    if isinstance(error, subprocess.TimeoutExpired | ConnectionError | TimeoutError):
        return True
    if isinstance(error, FileNotFoundError | PermissionError):
        return False
    return isinstance(error, OSError)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Immutable retry configuration, safe to share between concurrent callers."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    jitter_fraction: float = 0.1
    retryable: Callable[[BaseException], bool] = field(default=is_retryable_error, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0.")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1.")
        if not 0 <= self.jitter_fraction <= 1:
            raise ValueError("jitter_fraction must be within [0, 1].")


def compute_retry_delay(policy: RetryPolicy, *, attempt: int, rng: random.Random) -> float:
    """Delay before ``attempt`` (2-based): base * multiplier^(attempt-2) * (1 +/- jitter)."""

    if attempt < 2:  # noqa: PLR2004
        return 0.0
    nominal = policy.base_delay_seconds * policy.backoff_multiplier ** (attempt - 2)
    if policy.jitter_fraction == 0:
        return nominal
    factor = 1 + rng.uniform(-policy.jitter_fraction, policy.jitter_fraction)
    return max(0.0, nominal * factor)


class RetryHandler:
    """Runs one operation with sequential attempts under a ``RetryPolicy``."""

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._random = rng or random.Random()  # noqa: S311
        self._sleep = sleep

    def execute(
        self,
        command: Callable[[], T],
        policy: RetryPolicy,
        *,
        context: RunContext | None = None,
        description: str = "operation",
    ) -> T:
        """Return the first successful result or raise the classified failure."""

        attempt = 1
        while True:
            if context is not None and context.cancelled:
                raise CancellationError(f"{description} cancelled before attempt {attempt}")
            try:
                return command()
            except Exception as error:
                if not policy.retryable(error):
                    logger.debug(
                        "%s failed with non-retryable error on attempt %d: %s",
                        description,
                        attempt,
                        error,
                    )
                    raise
                if attempt >= policy.max_attempts:
                    raise RetryExhaustedError(attempts=attempt, last_error=error) from error
                attempt += 1
                delay = compute_retry_delay(policy, attempt=attempt, rng=self._random)
                logger.warning(
                    "%s attempt %d/%d failed: %s. Retrying in %.2fs",
                    description,
                    attempt - 1,
                    policy.max_attempts,
                    error,
                    delay,
                )
                if self._pause(delay, context):
                    raise CancellationError(
                        f"{description} cancelled while waiting to retry",
                    ) from error

    def run_command(  # noqa: PLR0913
        self,
        argv: Sequence[str],
        policy: RetryPolicy,
        *,
        cwd: Path | None = None,
        timeout: float | None = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        context: RunContext | None = None,
    ) -> CommandResult:
        """Run an external command with retries on transient failures."""

        return self.execute(
            lambda: run_command(argv, cwd=cwd, timeout=timeout),
            policy,
            context=context,
            description=" ".join(str(part) for part in argv[:3]),
        )

    def _pause(self, delay: float, context: RunContext | None) -> bool:
        if self._sleep is not None:
            self._sleep(delay)
            return context is not None and context.cancelled
        if context is not None:
            return context.wait(delay)
        time.sleep(delay)
        return False
