"""Single polling loop that turns process state and markers into lifecycle events."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor

from agent_swarm.swarm.backend.base import AgentRunner
from agent_swarm.swarm.context import RunContext
from agent_swarm.swarm.control import ControlAgent
from agent_swarm.swarm.models import Agent, AgentStatus, EventKind, LifecycleEvent
from agent_swarm.swarm.streaming import OutputStreamer

logger = logging.getLogger(__name__)

STOP_REASON = "stop requested"


class Monitor:
    """Watches running agents; one tick checks timeout, stop, exit code, then marker."""

    def __init__(
        self,
        runner: AgentRunner,
        *,
        control: ControlAgent | None = None,
        streamer: OutputStreamer | None = None,
        grace_seconds: float = 10.0,
    ) -> None:
        self.runner = runner
        self.control = control
        self.streamer = streamer
        self.grace_seconds = grace_seconds
        self._markers_seen: set[str] = set()

    def watch(
        self,
        agents: Sequence[Agent],
        poll_interval: float,
        per_agent_timeout: float | None,
        *,
        context: RunContext,
    ) -> Iterator[LifecycleEvent]:
        """Yield events until every agent is terminal, cancellation, or run deadline.

        ``agents`` is re-read on every tick, so the caller may start queued
        agents between events.
        """

        while True:
            yield from self.poll(agents, per_agent_timeout, context=context)
            if all(agent.is_terminal for agent in agents):
                return
            if context.cancelled:
                logger.info("Monitor stopping: cancellation requested")
                return
            if context.run_expired():
                logger.warning("Monitor stopping: run deadline reached")
                return
            if context.wait(poll_interval):
                return

    def poll(
        self,
        agents: Sequence[Agent],
        per_agent_timeout: float | None,
        *,
        context: RunContext,
    ) -> list[LifecycleEvent]:
        events: list[LifecycleEvent] = []
        running = [agent for agent in list(agents) if agent.status == AgentStatus.RUNNING]
        running_ids = {agent.agent_id for agent in running}
        if self.streamer is not None:
            events.extend(e for e in self.streamer.poll() if e.agent_id in running_ids)
        now = context.clock()
        finished: list[tuple[Agent, LifecycleEvent]] = []
        for agent in running:
            event = self._check(agent, now=now, per_agent_timeout=per_agent_timeout)
            if event is not None:
                finished.append((agent, event))
        self._terminate(
            [
                agent
                for agent, event in finished
                if event.kind in (EventKind.TIMED_OUT, EventKind.CANCELLED)
            ],
        )
        for agent, event in finished:
            self._markers_seen.discard(agent.agent_id)
            if self.streamer is not None:
                events.extend(self.streamer.flush(agent.agent_id))
            events.append(event)
        return events

    def _check(
        self,
        agent: Agent,
        *,
        now: float,
        per_agent_timeout: float | None,
    ) -> LifecycleEvent | None:
        if (
            per_agent_timeout is not None
            and agent.started_monotonic is not None
            and now - agent.started_monotonic >= per_agent_timeout
        ):
            logger.warning(
                "Agent timed out: agent_id=%s elapsed=%.1fs timeout=%.1fs",
                agent.agent_id,
                now - agent.started_monotonic,
                per_agent_timeout,
            )
            agent.transition(AgentStatus.TIMED_OUT, reason="per-agent timeout")
            return LifecycleEvent.timed_out(agent.agent_id)

        if self.control is not None and self.control.stop_requested(agent.agent_id):
            logger.info("Stop intent observed: agent_id=%s", agent.agent_id)
            agent.transition(AgentStatus.CANCELLED, reason=STOP_REASON)
            return LifecycleEvent.cancelled(agent.agent_id, STOP_REASON)

        exit_code = self._exit_code(agent)
        marker_present = agent.completion_marker_path.exists()
        if exit_code is not None:
            agent.exit_code = exit_code
            if exit_code == 0:
                if not marker_present:
                    logger.warning(
                        "Agent exited 0 without completion marker: agent_id=%s",
                        agent.agent_id,
                    )
                agent.transition(AgentStatus.COMPLETED)
                logger.info("Agent completed: agent_id=%s", agent.agent_id)
                return LifecycleEvent.completed(agent.agent_id)
            if marker_present:
                logger.warning(
                    "ambiguous_completion_marker: agent_id=%s exit_code=%s "
                    "marker=%s; treating as failed",
                    agent.agent_id,
                    exit_code,
                    agent.completion_marker_path,
                )
            reason = f"exit code {exit_code}"
            agent.transition(AgentStatus.FAILED, reason=reason)
            logger.warning("Agent failed: agent_id=%s reason=%s", agent.agent_id, reason)
            return LifecycleEvent.failed(agent.agent_id, reason)

        if marker_present:
            if not self._can_report_exit(agent):
                agent.transition(AgentStatus.COMPLETED)
                logger.info("Agent completed by marker: agent_id=%s", agent.agent_id)
                return LifecycleEvent.completed(agent.agent_id)
            if agent.agent_id not in self._markers_seen:
                self._markers_seen.add(agent.agent_id)
                logger.debug(
                    "Completion marker seen while process still running: agent_id=%s",
                    agent.agent_id,
                )
        return None

    def _can_report_exit(self, agent: Agent) -> bool:
        return agent.process is not None and self.runner.reports_exit_codes

    def _exit_code(self, agent: Agent) -> int | None:
        if not self._can_report_exit(agent):
            return None
        return self.runner.exit_code(agent.process)

    def _terminate(self, agents: Sequence[Agent]) -> None:
        """Stop the given agents' processes together; one grace period bounds the tick."""

        live = [agent for agent in agents if agent.process is not None]
        if not live:
            return
        with ThreadPoolExecutor(max_workers=len(live), thread_name_prefix="swarm-term") as pool:
            futures = {
                pool.submit(self.runner.terminate, agent.process, self.grace_seconds): agent
                for agent in live
            }
            for future, agent in futures.items():
                try:
                    future.result()
                except OSError as error:
                    logger.warning("Failed to terminate agent_id=%s: %s", agent.agent_id, error)
                    continue
                agent.exit_code = self.runner.exit_code(agent.process)
