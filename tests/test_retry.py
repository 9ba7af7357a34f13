from __future__ import annotations

import random
import subprocess

import allure
import pytest

from agent_swarm.swarm.context import RunContext
from agent_swarm.swarm.errors import (
    AgentTimeoutError,
    CancellationError,
    FatalCommandError,
    RetryExhaustedError,
    TransientCommandError,
)
from agent_swarm.swarm.retry import (
    RetryHandler,
    RetryPolicy,
    compute_retry_delay,
    is_retryable_error,
)

pytestmark = [
    allure.epic("Swarm Core"),
    allure.feature("Retry Handler"),
]


class _Flaky:
    def __init__(self, failures: list[Exception], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def _handler(delays: list[float], seed: int = 7) -> RetryHandler:
    return RetryHandler(rng=random.Random(seed), sleep=delays.append)


def test_fails_twice_then_succeeds_with_backoff_delays() -> None:
    delays: list[float] = []
    command = _Flaky([TransientCommandError("lock"), TransientCommandError("lock")], "done")
    policy = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, backoff_multiplier=2.0)

    result = _handler(delays).execute(command, policy)

    assert result == "done"
    assert command.calls == 3
    assert len(delays) == 2
    assert 0.9 <= delays[0] <= 1.1
    assert 1.8 <= delays[1] <= 2.2


@pytest.mark.parametrize("max_attempts", [1, 2, 5])
def test_always_failing_command_runs_exactly_max_attempts(max_attempts: int) -> None:
    delays: list[float] = []
    command = _Flaky([TransientCommandError("flaky")] * 10)
    policy = RetryPolicy(max_attempts=max_attempts, base_delay_seconds=0.0)

    with pytest.raises(RetryExhaustedError) as raised:
        _handler(delays).execute(command, policy)

    assert command.calls == max_attempts
    assert raised.value.attempts == max_attempts
    assert isinstance(raised.value.last_error, TransientCommandError)
    assert raised.value.__cause__ is raised.value.last_error
    assert len(delays) == max_attempts - 1


def test_non_retryable_error_gets_exactly_one_attempt() -> None:
    delays: list[float] = []
    command = _Flaky([FatalCommandError("not a git repository")])

    with pytest.raises(FatalCommandError):
        _handler(delays).execute(command, RetryPolicy(max_attempts=5))

    assert command.calls == 1
    assert delays == []


def test_custom_classifier_is_consulted() -> None:
    delays: list[float] = []
    command = _Flaky([KeyError("x"), KeyError("y")], "fine")
    policy = RetryPolicy(
        max_attempts=3,
        base_delay_seconds=0.0,
        retryable=lambda error: isinstance(error, KeyError),
    )

    assert _handler(delays).execute(command, policy) == "fine"
    assert command.calls == 3


def test_cancellation_during_backoff_raises_cancellation_error(tmp_path) -> None:
    from agent_swarm.swarm.workdir import RunLayout

    context = RunContext(layout=RunLayout(tmp_path))
    command = _Flaky([TransientCommandError("flaky")] * 3)

    def _sleep_and_cancel(_delay: float) -> None:
        context.cancel("test")

    handler = RetryHandler(rng=random.Random(1), sleep=_sleep_and_cancel)
    with pytest.raises(CancellationError):
        handler.execute(command, RetryPolicy(max_attempts=3), context=context)

    assert command.calls == 1


def test_cancelled_context_prevents_first_attempt(tmp_path) -> None:
    from agent_swarm.swarm.workdir import RunLayout

    context = RunContext(layout=RunLayout(tmp_path))
    context.cancel("already")
    command = _Flaky([])

    with pytest.raises(CancellationError):
        RetryHandler().execute(command, RetryPolicy(), context=context)
    assert command.calls == 0


def test_delay_formula_without_jitter() -> None:
    policy = RetryPolicy(base_delay_seconds=0.5, backoff_multiplier=3.0, jitter_fraction=0.0)
    rng = random.Random(0)

    assert compute_retry_delay(policy, attempt=1, rng=rng) == 0.0
    assert compute_retry_delay(policy, attempt=2, rng=rng) == 0.5
    assert compute_retry_delay(policy, attempt=3, rng=rng) == 1.5
    assert compute_retry_delay(policy, attempt=4, rng=rng) == 4.5


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"max_attempts": 0}, "max_attempts"),
        ({"base_delay_seconds": -1}, "base_delay_seconds"),
        ({"backoff_multiplier": 0.5}, "backoff_multiplier"),
        ({"jitter_fraction": 1.5}, "jitter_fraction"),
    ],
)
def test_policy_validation(kwargs: dict, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RetryPolicy(**kwargs)


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (TransientCommandError("x"), True),
        (FatalCommandError("x"), False),
        (AgentTimeoutError("x"), False),
        (subprocess.TimeoutExpired(cmd="git", timeout=1), True),
        (ConnectionResetError(), True),
        (TimeoutError(), True),
        (FileNotFoundError(), False),
        (PermissionError(), False),
        (OSError("disk hiccup"), True),
        (ValueError("bad"), False),
    ],
)
def test_default_classifier(error: BaseException, expected: bool) -> None:
    assert is_retryable_error(error) is expected
