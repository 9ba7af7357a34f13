"""CLI entrypoint for agent-swarm."""

import logging
import os
from pathlib import Path

import rich_click as click

from agent_swarm import __version__
from agent_swarm.swarm.control import ControlCommandType
from agent_swarm.swarm.controllers import (
    CleanupCommand,
    CommandOutcome,
    ControlCommand,
    EnhanceCommand,
    StatusCommand,
    SwarmCliController,
)
from agent_swarm.swarm.errors import SwarmError
from agent_swarm.swarm.models import AgentRole

click.rich_click.USE_MARKDOWN = True
SWARM_CONTROLLER = SwarmCliController()

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_ROOT_DIR_OPTION = click.option(
    "--root-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Run root directory (default: AGENT_SWARM_ROOT_DIR or .agent_swarm).",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-swarm")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default=lambda: os.getenv("AGENT_SWARM_LOG_LEVEL", "WARNING"),
    show_default="WARNING",
    help="Logging level (also AGENT_SWARM_LOG_LEVEL).",
)
def agent_swarm(log_level: str) -> None:
    """Run a swarm of CLI agents, each in its own work area."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_swarm.command("enhance")
@_ROOT_DIR_OPTION
@click.option("--task", "tasks", multiple=True, help="Work item text. Can be repeated.")
@click.option(
    "--role",
    type=click.Choice([role.value for role in AgentRole]),
    default=None,
    help="Force the agent role instead of inferring it from the task text.",
)
@click.option(
    "--from-backlog",
    is_flag=True,
    default=False,
    help="Take work items from the backlog command (AGENT_SWARM_BACKLOG_COMMAND).",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Max agents running at once (default: AGENT_SWARM_CONCURRENCY or 4).",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-agent timeout in seconds.",
)
@click.option(
    "--run-timeout",
    "run_timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Whole-run timeout in seconds.",
)
@click.option(
    "--agent-command",
    default=None,
    help="Agent command template, e.g. `claude -p {instructions}`.",
)
@click.option("--follow", is_flag=True, default=False, help="Stream agent output live.")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Print the execution plan without spawning agents.",
)
@click.pass_context
def enhance(  # noqa: PLR0913
    ctx: click.Context,
    root_dir: Path | None,
    tasks: tuple[str, ...],
    role: str | None,
    from_backlog: bool,
    concurrency: int | None,
    timeout_seconds: float | None,
    run_timeout_seconds: float | None,
    agent_command: str | None,
    follow: bool,
    dry_run: bool,
) -> None:
    """Run one agent per work item and report the outcome.

    Exit code is **0** when every agent completed, **1** on any failure or
    timeout, and **130** when the run was cancelled.
    """

    outcome = _run(
        SWARM_CONTROLLER.enhance,
        EnhanceCommand(
            root_dir=root_dir,
            tasks=tasks,
            role=role,
            from_backlog=from_backlog,
            concurrency=concurrency,
            timeout_seconds=timeout_seconds,
            run_timeout_seconds=run_timeout_seconds,
            agent_command=agent_command,
            follow=follow,
            dry_run=dry_run,
            echo=click.echo,
        ),
    )
    _finish(ctx, outcome)


@agent_swarm.command("status")
@_ROOT_DIR_OPTION
@click.option("--json", "as_json", is_flag=True, default=False, help="Print raw JSON.")
@click.pass_context
def status(ctx: click.Context, root_dir: Path | None, as_json: bool) -> None:
    """Show per-agent progress and the last run summary."""

    _finish(ctx, _run(SWARM_CONTROLLER.status, StatusCommand(root_dir=root_dir, as_json=as_json)))


@agent_swarm.command("cleanup")
@_ROOT_DIR_OPTION
@click.pass_context
def cleanup(ctx: click.Context, root_dir: Path | None) -> None:
    """Reclaim leftover work areas, branches, markers, and control files."""

    _finish(ctx, _run(SWARM_CONTROLLER.cleanup, CleanupCommand(root_dir=root_dir)))


def _control_command(action: ControlCommandType, help_text: str) -> None:
    @agent_swarm.command(action.value, help=help_text)
    @_ROOT_DIR_OPTION
    @click.argument("agent_id")
    @click.pass_context
    def _command(ctx: click.Context, root_dir: Path | None, agent_id: str) -> None:
        _finish(
            ctx,
            _run(
                SWARM_CONTROLLER.control,
                ControlCommand(root_dir=root_dir, agent_id=agent_id, action=action),
            ),
        )


_control_command(ControlCommandType.PAUSE, "Ask a running agent to pause.")
_control_command(ControlCommandType.RESUME, "Ask a paused agent to resume.")
_control_command(ControlCommandType.STOP, "Stop an agent; the swarm cancels it on the next tick.")


def _run(handler, command) -> CommandOutcome:
    try:
        return handler(command)
    except (ValueError, SwarmError) as error:
        raise click.ClickException(str(error)) from error


def _finish(ctx: click.Context, outcome: CommandOutcome) -> None:
    _emit_lines(outcome.lines)
    if outcome.exit_code:
        ctx.exit(outcome.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_swarm()
