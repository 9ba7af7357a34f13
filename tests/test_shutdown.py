from __future__ import annotations

import os
import signal

import allure
import pytest
from conftest import AgentPlan

from agent_swarm.swarm.cleanup import CleanupReport
from agent_swarm.swarm.context import RunContext
from agent_swarm.swarm.models import Agent, AgentRole, AgentStatus, EventKind, WorkItem
from agent_swarm.swarm.shutdown import ShutdownCoordinator

pytestmark = [
    allure.epic("Swarm Core"),
    allure.feature("Shutdown"),
]


def _pending(layout, agent_id: str) -> Agent:
    return Agent(
        agent_id=agent_id,
        role=AgentRole.GENERIC,
        work_item=WorkItem(item_id=agent_id, title=agent_id, instructions=agent_id),
        completion_marker_path=layout.completion_marker(agent_id),
    )


class _CountingCleanup:
    def __init__(self) -> None:
        self.calls = 0
        self.report = CleanupReport()

    def __call__(self) -> CleanupReport:
        self.calls += 1
        return self.report


def test_shutdown_cancels_unfinished_agents_and_cleans_once(
    layout, fake_runner, fake_clock, running_agent
) -> None:
    finished = running_agent("generic-1", AgentPlan(finish_after=0))
    fake_runner.exit_code(finished.process)
    finished.transition(AgentStatus.COMPLETED)
    live = running_agent("generic-2")
    queued = _pending(layout, "generic-3")
    context = RunContext(layout=layout, clock=fake_clock)
    context.cancel("signal SIGINT")
    coordinator = ShutdownCoordinator(context, fake_runner, grace_seconds=0)
    cleanup = _CountingCleanup()
    events = []

    report = coordinator.shutdown([finished, live, queued], cleanup, on_event=events.append)

    assert report is cleanup.report
    assert cleanup.calls == 1
    assert finished.status == AgentStatus.COMPLETED
    assert live.status == AgentStatus.CANCELLED
    assert live.failure_reason == "signal SIGINT"
    assert live.exit_code == -15
    assert queued.status == AgentStatus.CANCELLED
    assert fake_runner.terminated == ["generic-2"]
    assert [(event.kind, event.agent_id) for event in events] == [
        (EventKind.CANCELLED, "generic-2"),
        (EventKind.CANCELLED, "generic-3"),
    ]

    again = coordinator.shutdown([finished, live, queued], cleanup)

    assert again is report
    assert cleanup.calls == 1
    assert coordinator.in_progress


def test_explicit_reason_overrides_cancel_reason(layout, fake_runner, fake_clock) -> None:
    queued = _pending(layout, "generic-1")
    coordinator = ShutdownCoordinator(RunContext(layout=layout, clock=fake_clock), fake_runner)

    coordinator.shutdown([queued], CleanupReport, reason="run timeout")

    assert queued.failure_reason == "run timeout"


def test_repeated_signals_request_one_shutdown(layout, fake_runner) -> None:
    context = RunContext(layout=layout)
    coordinator = ShutdownCoordinator(context, fake_runner)

    assert coordinator.request_shutdown("SIGINT") is True
    assert coordinator.request_shutdown("SIGTERM") is False
    assert context.cancel_reason == "signal SIGINT"


@pytest.mark.skipif(not hasattr(signal, "SIGTERM") or os.name == "nt", reason="POSIX signals")
def test_install_routes_signals_and_restores_handlers(layout, fake_runner) -> None:
    context = RunContext(layout=layout)
    coordinator = ShutdownCoordinator(context, fake_runner)
    before = signal.getsignal(signal.SIGTERM)

    with coordinator.install():
        assert signal.getsignal(signal.SIGTERM) is not before
        os.kill(os.getpid(), signal.SIGTERM)
        assert context.wait(2.0)

    assert context.cancel_reason == "signal SIGTERM"
    assert signal.getsignal(signal.SIGTERM) is before
