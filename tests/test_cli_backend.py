from __future__ import annotations

import shlex
import sys
import time
from pathlib import Path

import allure
import pytest
from conftest import ECHO_AGENT_COMMAND_TEMPLATE

from agent_swarm.swarm.backend.base import AgentSpawnRequest
from agent_swarm.swarm.backend.cli_backend import (
    CliAgentRunner,
    _build_run_args,
    build_agent_instructions,
)
from agent_swarm.swarm.errors import SpawnError
from agent_swarm.swarm.models import Agent, AgentRole, WorkItem

pytestmark = [
    allure.epic("Swarm Core"),
    allure.feature("CLI Agent Runner"),
]


def _request(
    layout,
    agent_id: str = "qa-1",
    instructions: str = "Write tests",
) -> AgentSpawnRequest:
    work_area = layout.work_area(agent_id)
    work_area.mkdir(parents=True, exist_ok=True)
    return AgentSpawnRequest(
        agent_id=agent_id,
        role="qa",
        work_area=work_area,
        instructions=instructions,
        instructions_file=layout.instructions_file(agent_id),
        completion_marker=layout.completion_marker(agent_id),
        output_log=layout.output_log(agent_id),
        control_file=layout.control_file(agent_id),
    )


def _wait_for_exit(runner: CliAgentRunner, process, timeout: float = 20.0) -> int:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        code = runner.exit_code(process)
        if code is not None:
            return code
        time.sleep(0.05)
    raise AssertionError("agent process did not exit")


def test_build_run_args_quotes_instructions(layout) -> None:
    request = _request(layout, instructions="Fix it; rm -rf / && echo 'done'")

    argv = _build_run_args(
        command_template="claude -p {instructions} --cwd {work_area}",
        request=request,
    )

    assert argv == ["claude", "-p", request.instructions, "--cwd", str(request.work_area)]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("claude --print", "must include"),
        ("claude {instructions} {unknown}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(layout, template: str, message: str) -> None:
    with pytest.raises(SpawnError, match=message):
        _build_run_args(command_template=template, request=_request(layout))


def test_build_agent_instructions_carries_marker_contract(layout) -> None:
    item = WorkItem(item_id="7", title="Cart tests", instructions="Write tests for cart\n")
    agent = Agent(
        agent_id="qa-1",
        role=AgentRole.QA,
        work_item=item,
        completion_marker_path=layout.completion_marker("qa-1"),
        work_area=layout.work_area("qa-1"),
    )

    text = build_agent_instructions(item, agent)

    assert text.startswith("Write tests for cart\n\n## Swarm contract")
    assert str(layout.completion_marker("qa-1")) in text
    assert "[progress] NN" in text


def test_spawned_echo_agent_writes_log_and_marker(layout) -> None:
    runner = CliAgentRunner(ECHO_AGENT_COMMAND_TEMPLATE)
    request = _request(layout, instructions="Write tests\necho-agent: progress=4")

    process = runner.spawn(request)

    assert _wait_for_exit(runner, process) == 0
    assert request.instructions_file.read_text("utf-8") == request.instructions
    assert request.completion_marker.read_text("utf-8") == "qa-1 done\n"
    lines = request.output_log.read_text("utf-8").splitlines()
    assert lines == [
        "qa-1: Write tests",
        "[progress] 25",
        "[progress] 50",
        "[progress] 75",
        "[progress] 100",
    ]
    assert process.log_handle is not None and process.log_handle.closed


def test_nonzero_exit_is_reported(layout) -> None:
    runner = CliAgentRunner(ECHO_AGENT_COMMAND_TEMPLATE)
    process = runner.spawn(_request(layout, instructions="x\necho-agent: exit=3 marker=no"))

    assert _wait_for_exit(runner, process) == 3
    assert not layout.completion_marker("qa-1").exists()


def test_terminate_stops_a_running_agent(layout) -> None:
    runner = CliAgentRunner(ECHO_AGENT_COMMAND_TEMPLATE)
    process = runner.spawn(_request(layout, instructions="x\necho-agent: sleep=30"))

    runner.terminate(process, grace_seconds=5)

    assert runner.exit_code(process) is not None
    runner.terminate(process, grace_seconds=5)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_terminate_kills_an_agent_ignoring_sigterm(layout, tmp_path: Path) -> None:
    script = tmp_path / "stubborn.py"
    script.write_text(
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n",
        "utf-8",
    )
    template = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{instructions_file}}"
    runner = CliAgentRunner(template)
    request = _request(layout)
    process = runner.spawn(request)
    deadline = time.monotonic() + 10
    while "ready" not in request.output_log.read_text("utf-8") and time.monotonic() < deadline:
        time.sleep(0.05)

    runner.terminate(process, grace_seconds=0.2)

    assert runner.exit_code(process) is not None


def test_missing_agent_command_is_a_spawn_error(layout) -> None:
    runner = CliAgentRunner("definitely-not-a-real-agent-xyz {instructions_file}")

    with pytest.raises(SpawnError, match="not found"):
        runner.spawn(_request(layout))


def test_unwritable_instructions_file_is_a_spawn_error(layout) -> None:
    request = _request(layout)
    request.instructions_file.mkdir(parents=True)
    runner = CliAgentRunner(ECHO_AGENT_COMMAND_TEMPLATE)

    with pytest.raises(SpawnError, match="Failed to prepare agent files"):
        runner.spawn(request)

    assert not request.output_log.exists()
