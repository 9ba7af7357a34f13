"""One enhancement run: leases, spawns, monitoring, shutdown, and cleanup."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from itertools import islice

from agent_swarm.swarm.backend.base import AgentRunner, AgentSpawnRequest
from agent_swarm.swarm.backend.cli_backend import build_agent_instructions
from agent_swarm.swarm.backlog import TaskBacklog
from agent_swarm.swarm.cleanup import CleanupManager, CleanupReport
from agent_swarm.swarm.context import RunContext
from agent_swarm.swarm.control import ControlAgent
from agent_swarm.swarm.errors import CancellationError, SpawnError, SwarmError
from agent_swarm.swarm.models import (
    Agent,
    AgentStatus,
    LifecycleEvent,
    RunSummary,
    WorkItem,
    utc_now,
)
from agent_swarm.swarm.monitor import Monitor
from agent_swarm.swarm.notifications import NotificationManager
from agent_swarm.swarm.progress import ProgressTracker
from agent_swarm.swarm.retry import RetryPolicy
from agent_swarm.swarm.shutdown import ShutdownCoordinator
from agent_swarm.swarm.streaming import OutputStreamer
from agent_swarm.swarm.workdir import RunLayout
from agent_swarm.swarm.worktree import WorktreeAllocator, WorktreeLease

logger = logging.getLogger(__name__)

RUN_TIMEOUT_REASON = "run timeout"

_BACKLOG_STATE_BY_STATUS = {
    AgentStatus.COMPLETED: "completed",
    AgentStatus.FAILED: "failed",
    AgentStatus.TIMED_OUT: "failed",
    AgentStatus.CANCELLED: "backlog",
}


class Orchestrator:  # noqa: PLR0902
    """Runs a batch of work items, one agent each, under a concurrency limit.

    An orchestrator owns exactly one ``RunContext`` and performs one run.
    ``cancel`` may be called from any thread.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        layout: RunLayout,
        runner: AgentRunner,
        allocator: WorktreeAllocator,
        streamer: OutputStreamer | None = None,
        progress: ProgressTracker | None = None,
        notifications: NotificationManager | None = None,
        control: ControlAgent | None = None,
        backlog: TaskBacklog | None = None,
        retry_policy: RetryPolicy | None = None,
        poll_interval: float = 5.0,
        per_agent_timeout: float | None = 3600.0,
        run_timeout: float | None = None,
        grace_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        install_signal_handlers: bool = True,
    ) -> None:
        self.layout = layout
        self.runner = runner
        self.allocator = allocator
        self.streamer = streamer or OutputStreamer()
        self.progress = progress or ProgressTracker(layout)
        self.notifications = notifications or NotificationManager()
        self.control = control or ControlAgent(layout)
        self.backlog = backlog
        self.poll_interval = poll_interval
        self.per_agent_timeout = per_agent_timeout
        self.run_timeout = run_timeout
        self.grace_seconds = grace_seconds
        self.install_signal_handlers = install_signal_handlers
        self.context = RunContext(
            layout=layout,
            retry_policy=retry_policy or RetryPolicy(),
            clock=clock,
        )
        self.monitor = Monitor(
            runner,
            control=self.control,
            streamer=self.streamer,
            grace_seconds=grace_seconds,
        )
        self.cleanup = CleanupManager(
            layout,
            allocator,
            runner=runner,
            control=self.control,
            grace_seconds=grace_seconds,
        )
        self.shutdown = ShutdownCoordinator(self.context, runner, grace_seconds=grace_seconds)
        self._cleanup_report: CleanupReport | None = None
        self._sequence = 0
        self._started = False

    def cancel(self, reason: str = "cancelled by user") -> bool:
        return self.context.cancel(reason)

    def run(self, work_items: Sequence[WorkItem], concurrency_limit: int) -> RunSummary:
        if not work_items:
            raise ValueError("At least one work item is required.")
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1.")
        if self._started:
            raise RuntimeError("Orchestrator.run may only be called once.")
        self._started = True

        context = self.context
        self.layout.ensure()
        context.set_run_timeout(self.run_timeout)
        run_stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
        for item in work_items:
            agent = self._build_agent(item, run_stamp=run_stamp)
            context.agents.append(agent)
            self.progress.register(agent)
        queue: deque[Agent] = deque(context.agents)
        logger.info(
            "Run started: agents=%s concurrency=%s per_agent_timeout=%s run_timeout=%s",
            len(context.agents),
            concurrency_limit,
            self.per_agent_timeout,
            self.run_timeout,
        )

        run_timed_out = False
        handlers = self.shutdown.install() if self.install_signal_handlers else nullcontext()
        with handlers:
            try:
                self._start_initial_batch(queue, concurrency_limit)
                for event in self.monitor.watch(
                    context.agents,
                    self.poll_interval,
                    self.per_agent_timeout,
                    context=context,
                ):
                    self._publish(event)
                    if event.is_terminal:
                        self._fill_slots(queue, concurrency_limit)

                if context.cancelled:
                    self.shutdown.shutdown(
                        context.agents,
                        self._cleanup_once,
                        on_event=self._publish,
                    )
                elif context.run_expired() and not all(a.is_terminal for a in context.agents):
                    run_timed_out = True
                    logger.warning("Run timeout reached; cancelling unfinished agents")
                    self.shutdown.shutdown(
                        context.agents,
                        self._cleanup_once,
                        reason=RUN_TIMEOUT_REASON,
                        on_event=self._publish,
                    )
            finally:
                # Still under our handlers: a signal here only sets the cancel flag.
                report = self._cleanup_once()

        self._settle_backlog(context.agents)
        summary = RunSummary(
            agents=list(context.agents),
            cleanup=report,
            cancelled=context.cancelled,
            cancel_reason=context.cancel_reason,
            run_timed_out=run_timed_out,
        )
        try:
            self.progress.write_run_summary(summary)
        except OSError as error:
            logger.warning("Failed to write run summary: %s", error)
        logger.info(
            "Run finished: exit_code=%s counts=%s cleanup_ok=%s",
            summary.exit_code,
            {status.value: count for status, count in summary.counts.items() if count},
            report.ok,
        )
        return summary

    def _build_agent(self, item: WorkItem, *, run_stamp: str) -> Agent:
        self._sequence += 1
        agent_id = f"{item.role.value}-{run_stamp}-{self._sequence}"
        return Agent(
            agent_id=agent_id,
            role=item.role,
            work_item=item,
            completion_marker_path=self.layout.completion_marker(agent_id),
        )

    def _start_initial_batch(self, queue: deque[Agent], concurrency_limit: int) -> None:
        batch = list(islice(queue, concurrency_limit))
        for _ in batch:
            queue.popleft()
        with ThreadPoolExecutor(
            max_workers=len(batch),
            thread_name_prefix="swarm-lease",
        ) as pool:
            futures = [(agent, pool.submit(self._acquire, agent)) for agent in batch]
            outcomes = [(agent, future.result()) for agent, future in futures]
        for agent, lease in outcomes:
            if lease is not None:
                self._spawn(agent, lease)
        self._fill_slots(queue, concurrency_limit)

    def _fill_slots(self, queue: deque[Agent], concurrency_limit: int) -> None:
        while queue and not self.context.cancelled:
            running = sum(
                1 for agent in self.context.agents if agent.status == AgentStatus.RUNNING
            )
            if running >= concurrency_limit:
                return
            agent = queue.popleft()
            lease = self._acquire(agent)
            if lease is not None:
                self._spawn(agent, lease)

    def _acquire(self, agent: Agent) -> WorktreeLease | None:
        """Allocate the agent's work area; lease failures fail only this agent."""

        try:
            lease = self.allocator.acquire(agent.agent_id, context=self.context)
        except CancellationError:
            logger.info("Lease acquisition cancelled: agent_id=%s", agent.agent_id)
            return None
        except (SwarmError, OSError) as error:
            self._fail_pending(agent, f"work area allocation failed: {error}")
            return None
        agent.work_area = lease.path
        agent.branch = lease.branch
        return lease

    def _spawn(self, agent: Agent, lease: WorktreeLease) -> None:
        if self.context.cancelled:
            return
        instructions = build_agent_instructions(agent.work_item, agent)
        request = AgentSpawnRequest(
            agent_id=agent.agent_id,
            role=agent.role.value,
            work_area=lease.path,
            instructions=instructions,
            instructions_file=self.layout.instructions_file(agent.agent_id),
            completion_marker=agent.completion_marker_path,
            output_log=self.layout.output_log(agent.agent_id),
            control_file=self.layout.control_file(agent.agent_id),
        )
        try:
            process = self.runner.spawn(request)
        except (SpawnError, OSError) as error:
            self._fail_pending(agent, f"spawn failed: {error}")
            return
        agent.mark_running(process, started_monotonic=self.context.clock())
        self.streamer.register(agent.agent_id, request.output_log)
        self._publish(LifecycleEvent.started(agent.agent_id))
        self._move_backlog_item(agent, "active")

    def _fail_pending(self, agent: Agent, reason: str) -> None:
        logger.error("Agent failed before start: agent_id=%s reason=%s", agent.agent_id, reason)
        agent.transition(AgentStatus.FAILED, reason=reason)
        self._publish(LifecycleEvent.failed(agent.agent_id, reason))

    def _publish(self, event: LifecycleEvent) -> None:
        self.progress.apply(event)
        self.notifications.notify(event)

    def _cleanup_once(self) -> CleanupReport:
        if self._cleanup_report is None:
            self._cleanup_report = self.cleanup.reclaim(self.context.agents)
        return self._cleanup_report

    def _settle_backlog(self, agents: Sequence[Agent]) -> None:
        for agent in agents:
            if agent.started_at is None:
                continue
            state = _BACKLOG_STATE_BY_STATUS.get(agent.status)
            if state is not None:
                self._move_backlog_item(agent, state)

    def _move_backlog_item(self, agent: Agent, state: str) -> None:
        if self.backlog is None:
            return
        try:
            self.backlog.move_item(agent.work_item.item_id, state)
        except (SwarmError, OSError, KeyError) as error:
            logger.warning(
                "Failed to move backlog item: item_id=%s state=%s error=%s",
                agent.work_item.item_id,
                state,
                error,
            )
