"""Subprocess-based runner for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time

from agent_swarm.swarm.backend.base import AgentProcess, AgentSpawnRequest
from agent_swarm.swarm.errors import SpawnError
from agent_swarm.swarm.models import Agent, WorkItem

logger = logging.getLogger(__name__)

_TERMINATE_POLL_SECONDS = 0.05


class CliAgentRunner:
    """Spawn agents from a command template, one OS process per agent."""

    reports_exit_codes = True

    def __init__(self, command_template: str) -> None:
        self.command_template = command_template

    def spawn(self, request: AgentSpawnRequest) -> AgentProcess:
        run_args = _build_run_args(
            command_template=self.command_template,
            request=request,
        )
        try:
            request.instructions_file.parent.mkdir(parents=True, exist_ok=True)
            request.instructions_file.write_text(request.instructions, "utf-8")
            request.output_log.parent.mkdir(parents=True, exist_ok=True)
            log_handle = request.output_log.open("a", encoding="utf-8")
        except OSError as error:
            raise SpawnError(f"Failed to prepare agent files: {error}") from error

        env = os.environ.copy()
        env.update(
            {
                "AGENT_SWARM_AGENT_ID": request.agent_id,
                "AGENT_SWARM_ROLE": request.role,
                "AGENT_SWARM_WORK_AREA": str(request.work_area),
                "AGENT_SWARM_COMPLETION_MARKER": str(request.completion_marker),
                "AGENT_SWARM_CONTROL_FILE": str(request.control_file),
            },
        )
        env.update(request.extra_env)

        try:
            popen = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=request.work_area,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                text=True,
                start_new_session=os.name != "nt",
            )
        except FileNotFoundError as error:
            log_handle.close()
            raise SpawnError(f"Agent command not found: {run_args[0]}") from error
        except OSError as error:
            log_handle.close()
            raise SpawnError(f"Agent failed to start: {error}") from error

        logger.info(
            "Spawned agent process: agent_id=%s role=%s pid=%s",
            request.agent_id,
            request.role,
            popen.pid,
        )
        return AgentProcess(
            agent_id=request.agent_id,
            popen=popen,
            output_log=request.output_log,
            log_handle=log_handle,
        )

    def exit_code(self, process: AgentProcess) -> int | None:
        returncode = process.popen.poll()
        if returncode is not None:
            process.close_log()
        return returncode

    def terminate(self, process: AgentProcess, grace_seconds: float) -> None:
        popen = process.popen
        if popen.poll() is not None:
            process.close_log()
            return
        _send_signal(popen, signal.SIGTERM)
        deadline = time.monotonic() + max(0.0, grace_seconds)
        while popen.poll() is None and time.monotonic() < deadline:
            time.sleep(_TERMINATE_POLL_SECONDS)
        if popen.poll() is None:
            logger.warning(
                "Agent did not exit within %.1fs, killing: agent_id=%s pid=%s",
                grace_seconds,
                process.agent_id,
                popen.pid,
            )
            _send_signal(popen, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)
            try:
                popen.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.error("Agent still alive after kill: agent_id=%s", process.agent_id)
                return
        process.close_log()


def build_agent_instructions(item: WorkItem, agent: Agent) -> str:
    """Wrap the work item instructions with the completion-marker contract."""

    return (
        f"{item.instructions.rstrip()}\n"
        f"\n"
        f"## Swarm contract\n"
        f"- Agent id: {agent.agent_id} (role: {agent.role.value})\n"
        f"- Work only inside: {agent.work_area}\n"
        f"- Report progress by printing lines of the form `[progress] NN` (0-100).\n"
        f"- When the work is finished and verified, write a short summary to\n"
        f"  {agent.completion_marker_path}\n"
        f"  and exit with status 0. Exit nonzero if the work could not be completed.\n"
        f"- Honour pause/resume/stop requests written to $AGENT_SWARM_CONTROL_FILE.\n"
    )


def _build_run_args(*, command_template: str, request: AgentSpawnRequest) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise SpawnError("Agent command template is empty.")
    if "{instructions}" not in stripped and "{instructions_file}" not in stripped:
        raise SpawnError(
            "Agent command template must include {instructions} or {instructions_file}.",
        )

    try:
        rendered = stripped.format(
            instructions=shlex.quote(request.instructions),
            instructions_file=shlex.quote(str(request.instructions_file)),
            work_area=shlex.quote(str(request.work_area)),
            marker=shlex.quote(str(request.completion_marker)),
            agent_id=shlex.quote(request.agent_id),
            role=shlex.quote(request.role),
        )
    except (KeyError, IndexError) as error:
        raise SpawnError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise SpawnError("Agent command template rendered empty command.")
    return argv


def _send_signal(popen: subprocess.Popen[str], signum: int) -> None:
    try:
        if os.name != "nt":
            os.killpg(popen.pid, signum)
        elif signum == signal.SIGTERM:
            popen.terminate()
        else:
            popen.kill()
    except (ProcessLookupError, PermissionError):
        return
    except OSError as error:
        logger.debug("Failed to signal pid=%s: %s", popen.pid, error)

