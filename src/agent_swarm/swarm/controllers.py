"""Controllers for swarm CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path

from agent_swarm.config import Settings
from agent_swarm.swarm.backend import CliAgentRunner
from agent_swarm.swarm.backlog import CommandBacklog, TaskBacklog, detect_backlog_capability
from agent_swarm.swarm.cleanup import CleanupManager, CleanupReport
from agent_swarm.swarm.control import ControlAgent, ControlCommandType
from agent_swarm.swarm.errors import EXIT_FAILURE, EXIT_SUCCESS, BacklogUnavailableError
from agent_swarm.swarm.models import AgentRole, RunSummary, WorkItem, infer_role
from agent_swarm.swarm.notifications import (
    CommandSink,
    JsonlFileSink,
    LoggingSink,
    NotificationManager,
    NotificationSink,
)
from agent_swarm.swarm.orchestrator import Orchestrator
from agent_swarm.swarm.progress import ProgressTracker, load_status
from agent_swarm.swarm.retry import RetryHandler
from agent_swarm.swarm.streaming import OutputStreamer
from agent_swarm.swarm.workdir import RunLayout
from agent_swarm.swarm.worktree import (
    DirectoryWorktreeProvider,
    GitWorktreeProvider,
    WorktreeAllocator,
    WorktreeProvider,
)

logger = logging.getLogger(__name__)

_TITLE_MAX_CHARS = 72
_PREVIEW_MAX_CHARS = 100


@dataclass(slots=True)
class CommandOutcome:
    """Lines to print and the process exit code."""

    lines: list[str]
    exit_code: int = EXIT_SUCCESS


@dataclass(slots=True)
class EnhanceCommand:
    """CLI input for one enhancement run."""

    root_dir: Path | None
    tasks: tuple[str, ...] = ()
    role: str | None = None
    from_backlog: bool = False
    concurrency: int | None = None
    timeout_seconds: float | None = None
    run_timeout_seconds: float | None = None
    agent_command: str | None = None
    follow: bool = False
    dry_run: bool = False
    echo: Callable[[str], None] | None = field(default=None, repr=False)


@dataclass(slots=True)
class StatusCommand:
    """CLI input for status inspection."""

    root_dir: Path | None
    as_json: bool = False


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for orphan cleanup."""

    root_dir: Path | None


@dataclass(slots=True)
class ControlCommand:
    """CLI input for pause/resume/stop."""

    root_dir: Path | None
    agent_id: str
    action: ControlCommandType


class SwarmCliController:
    """Builds run components from settings and renders command results."""

    def enhance(self, command: EnhanceCommand) -> CommandOutcome:
        settings = Settings.from_env(root_dir=command.root_dir)
        if command.concurrency is not None:
            settings.orchestration.concurrency = command.concurrency
        if command.timeout_seconds is not None:
            settings.orchestration.agent_timeout_seconds = command.timeout_seconds
        if command.run_timeout_seconds is not None:
            settings.orchestration.run_timeout_seconds = command.run_timeout_seconds
        if command.agent_command:
            settings.agent.command_template = command.agent_command
        settings.validate()

        try:
            backlog = _backlog(settings) if command.from_backlog else None
            work_items = _collect_work_items(command, backlog=backlog)
        except BacklogUnavailableError as error:
            return CommandOutcome(lines=[f"Backlog unavailable: {error}"], exit_code=EXIT_FAILURE)
        if not work_items:
            return CommandOutcome(
                lines=["No work items to run. Pass --task or --from-backlog."],
                exit_code=EXIT_FAILURE,
            )
        if command.dry_run:
            return CommandOutcome(lines=_render_plan(work_items, settings=settings))

        layout = RunLayout(settings.root_dir)
        retry_handler = RetryHandler()
        streamer = OutputStreamer(
            buffer_lines=settings.orchestration.output_buffer_lines,
            on_line=_follow_printer(command.echo) if command.follow else None,
        )
        orchestrator = Orchestrator(
            layout=layout,
            runner=CliAgentRunner(settings.require_agent_command()),
            allocator=WorktreeAllocator(
                layout,
                _worktree_provider(settings, retry_handler=retry_handler),
            ),
            streamer=streamer,
            progress=ProgressTracker(layout),
            notifications=_notifications(settings, layout=layout),
            backlog=backlog,
            retry_policy=settings.retry.to_policy(),
            poll_interval=settings.orchestration.poll_interval_seconds,
            per_agent_timeout=settings.orchestration.agent_timeout_seconds,
            run_timeout=settings.orchestration.run_timeout_seconds,
            grace_seconds=settings.orchestration.grace_seconds,
        )
        summary = orchestrator.run(work_items, settings.orchestration.concurrency)
        return CommandOutcome(lines=render_summary_lines(summary), exit_code=summary.exit_code)

    def status(self, command: StatusCommand) -> CommandOutcome:
        settings = Settings.from_env(root_dir=command.root_dir)
        view = load_status(RunLayout(settings.root_dir))
        if command.as_json:
            payload = {"agents": view.agents, "run": view.run}
            return CommandOutcome(lines=[json.dumps(payload, indent=2, sort_keys=True)])

        if not view.agents and view.run is None:
            return CommandOutcome(lines=[f"No swarm status found under {settings.root_dir}"])
        lines = [f"Agents: {len(view.agents)}"]
        for entry in view.agents:
            message = entry.get("message") or ""
            lines.append(
                f"- {entry.get('agent_id')} status={entry.get('status')} "
                f"percent={entry.get('percent')} {message}".rstrip(),
            )
        if view.run is not None:
            counts = view.run.get("counts", {})
            rendered = " ".join(f"{key}={value}" for key, value in counts.items() if value)
            lines.append(
                f"Last run: exit_code={view.run.get('exit_code')} "
                f"cancelled={view.run.get('cancelled')} {rendered}".rstrip(),
            )
        return CommandOutcome(lines=lines)

    def cleanup(self, command: CleanupCommand) -> CommandOutcome:
        settings = Settings.from_env(root_dir=command.root_dir)
        layout = RunLayout(settings.root_dir)
        manager = CleanupManager(
            layout,
            WorktreeAllocator(layout, _worktree_provider(settings, retry_handler=RetryHandler())),
        )
        report = manager.reclaim_orphans()
        lines = render_cleanup_lines(report)
        return CommandOutcome(lines=lines, exit_code=EXIT_SUCCESS if report.ok else EXIT_FAILURE)

    def control(self, command: ControlCommand) -> CommandOutcome:
        settings = Settings.from_env(root_dir=command.root_dir)
        layout = RunLayout(settings.root_dir)
        layout.control_dir.mkdir(parents=True, exist_ok=True)
        intent = ControlAgent(layout).issue(command.agent_id, command.action)
        return CommandOutcome(
            lines=[
                f"Control intent written: agent_id={intent.agent_id} "
                f"command={intent.command.value} sequence={intent.sequence}",
                f"File: {layout.control_file(command.agent_id)}",
            ],
        )


def render_summary_lines(summary: RunSummary) -> list[str]:
    counts = " ".join(
        f"{status.value}={count}" for status, count in summary.counts.items() if count
    )
    lines = [f"Run summary: {counts}"]
    for agent in summary.agents:
        reason = f" reason={agent.failure_reason}" if agent.failure_reason else ""
        lines.append(
            f"- {agent.agent_id} [{agent.role.value}] {agent.status.value}{reason} "
            f"({agent.work_item.title})",
        )
    if summary.cancelled:
        lines.append(f"Run cancelled: {summary.cancel_reason}")
    if summary.run_timed_out:
        lines.append("Run timeout reached; unfinished agents were cancelled.")
    if summary.cleanup is not None:
        lines.extend(render_cleanup_lines(summary.cleanup))
    return lines


def render_cleanup_lines(report: CleanupReport) -> list[str]:
    lines = [
        f"Cleanup: agents={len(report.results)} removed={report.removed_count()} "
        f"ok={str(report.ok).lower()}",
    ]
    lines.extend(f"  cleanup error: {error}" for error in report.errors)
    return lines


def _collect_work_items(
    command: EnhanceCommand,
    *,
    backlog: TaskBacklog | None,
) -> list[WorkItem]:
    explicit_role = AgentRole(command.role) if command.role else None
    items: list[WorkItem] = []
    for index, text in enumerate(command.tasks, start=1):
        stripped = text.strip()
        if not stripped:
            continue
        items.append(
            WorkItem(
                item_id=f"task-{index}",
                title=_title_from(stripped),
                instructions=stripped,
                role=explicit_role or infer_role(stripped),
            ),
        )
    if backlog is not None:
        for item in backlog.list_work_items("backlog"):
            items.append(replace(item, role=explicit_role) if explicit_role else item)
    return items


def _backlog(settings: Settings) -> TaskBacklog:
    capability = detect_backlog_capability(settings.agent.backlog_command)
    if not capability.available or capability.command is None:
        raise BacklogUnavailableError(
            f"Backlog command is not available: {settings.agent.backlog_command!r}. "
            "Set AGENT_SWARM_BACKLOG_COMMAND.",
        )
    return CommandBacklog(capability.command, retry_policy=settings.retry.to_policy())


def _worktree_provider(settings: Settings, *, retry_handler: RetryHandler) -> WorktreeProvider:
    repo_dir = settings.repo_dir.resolve()
    if settings.orchestration.use_worktrees and (repo_dir / ".git").exists():
        return GitWorktreeProvider(
            repo_dir,
            retry_handler=retry_handler,
            retry_policy=settings.retry.to_policy(),
        )
    if settings.orchestration.use_worktrees:
        logger.info("No git repository at %s; using plain work directories", repo_dir)
    return DirectoryWorktreeProvider()


def _notifications(settings: Settings, *, layout: RunLayout) -> NotificationManager:
    sinks: list[NotificationSink] = [LoggingSink(), JsonlFileSink(layout.notifications_path)]
    if settings.notifications.command_template:
        sinks.append(
            CommandSink(
                settings.notifications.command_template,
                threshold=settings.notifications.threshold,
            ),
        )
    return NotificationManager(sinks, enabled=settings.notifications.enabled)


def _render_plan(work_items: list[WorkItem], *, settings: Settings) -> list[str]:
    lines = [
        f"Dry run: {len(work_items)} agent(s), concurrency={settings.orchestration.concurrency}, "
        f"timeout={settings.orchestration.agent_timeout_seconds:g}s",
    ]
    for item in work_items:
        preview = " ".join(item.instructions.split())
        if len(preview) > _PREVIEW_MAX_CHARS:
            preview = preview[: _PREVIEW_MAX_CHARS - 3] + "..."
        lines.append(f"- [{item.role.value}] {item.item_id}: {preview}")
    return lines


def _title_from(text: str) -> str:
    first_line = text.splitlines()[0].strip()
    if len(first_line) <= _TITLE_MAX_CHARS:
        return first_line
    return first_line[: _TITLE_MAX_CHARS - 3] + "..."


def _follow_printer(echo: Callable[[str], None] | None) -> Callable[[str, str], None] | None:
    if echo is None:
        return None

    def _print(agent_id: str, line: str) -> None:
        echo(f"[{agent_id}] {line}")

    return _print
