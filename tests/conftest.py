"""Shared test fixtures."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from agent_swarm.swarm.backend.base import AgentSpawnRequest
from agent_swarm.swarm.errors import SpawnError
from agent_swarm.swarm.models import Agent, AgentRole, WorkItem
from agent_swarm.swarm.workdir import RunLayout

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m agent_swarm.swarm.backend.echo_agent "
    "--instructions-file {instructions_file}"
)


class FakeClock:
    """Manually advanced monotonic clock; ``step`` advances it on every read."""

    def __init__(self, start: float = 1_000.0, *, step: float = 0.0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class AgentPlan:
    """Scripted outcome for one fake agent process."""

    finish_after: float | None = 0.0
    exit_code: int = 0
    marker: bool = True


@dataclass
class FakeProcess:
    agent_id: str
    request: AgentSpawnRequest | None
    plan: AgentPlan
    started: float
    returncode: int | None = None
    terminated: bool = False


@dataclass
class FakeRunner:
    """In-memory runner; processes finish according to their ``AgentPlan``."""

    clock: FakeClock = field(default_factory=FakeClock)
    plans: dict[str, AgentPlan] = field(default_factory=dict)
    spawn_failures: set[str] = field(default_factory=set)
    os_failures: set[str] = field(default_factory=set)
    reports_exit_codes: bool = True
    spawned: list[AgentSpawnRequest] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)

    def spawn(self, request: AgentSpawnRequest) -> FakeProcess:
        key = request.instructions.splitlines()[0]
        if key in self.spawn_failures:
            raise SpawnError(f"cannot start {key}")
        if key in self.os_failures:
            raise OSError(28, "No space left on device")
        self.spawned.append(request)
        return FakeProcess(
            agent_id=request.agent_id,
            request=request,
            plan=self.plans.get(key, AgentPlan()),
            started=self.clock.now,
        )

    def exit_code(self, process: FakeProcess) -> int | None:
        if process.returncode is not None:
            return process.returncode
        plan = process.plan
        if plan.finish_after is None or self.clock.now - process.started < plan.finish_after:
            return None
        if plan.marker and process.request is not None:
            process.request.completion_marker.parent.mkdir(parents=True, exist_ok=True)
            process.request.completion_marker.write_text("done\n", "utf-8")
        process.returncode = plan.exit_code
        return process.returncode

    def terminate(self, process: FakeProcess, grace_seconds: float) -> None:
        del grace_seconds
        self.terminated.append(process.agent_id)
        process.terminated = True
        if process.returncode is None:
            process.returncode = -15


@pytest.fixture()
def layout(tmp_path: Path) -> RunLayout:
    run_layout = RunLayout(tmp_path / ".agent_swarm")
    run_layout.ensure()
    return run_layout


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_runner(fake_clock: FakeClock) -> FakeRunner:
    return FakeRunner(clock=fake_clock)


@pytest.fixture()
def running_agent(layout: RunLayout, fake_clock: FakeClock):
    """Factory for agents already in ``running`` with a scripted fake process."""

    def _make(agent_id: str, plan: AgentPlan | None = None) -> Agent:
        item = WorkItem(item_id=agent_id, title=agent_id, instructions=agent_id)
        agent = Agent(
            agent_id=agent_id,
            role=AgentRole.GENERIC,
            work_item=item,
            completion_marker_path=layout.completion_marker(agent_id),
        )
        request = AgentSpawnRequest(
            agent_id=agent_id,
            role=agent.role.value,
            work_area=layout.work_area(agent_id),
            instructions=agent_id,
            instructions_file=layout.instructions_file(agent_id),
            completion_marker=agent.completion_marker_path,
            output_log=layout.output_log(agent_id),
            control_file=layout.control_file(agent_id),
        )
        process = FakeProcess(
            agent_id=agent_id,
            request=request,
            plan=plan or AgentPlan(finish_after=None),
            started=fake_clock.now,
        )
        agent.mark_running(process, started_monotonic=fake_clock.now)
        return agent

    return _make
