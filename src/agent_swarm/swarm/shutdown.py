"""Signal interception and the graceful shutdown path of a run."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

from agent_swarm.swarm.backend.base import AgentRunner
from agent_swarm.swarm.cleanup import CleanupReport
from agent_swarm.swarm.context import RunContext
from agent_swarm.swarm.errors import InvalidTransitionError
from agent_swarm.swarm.models import Agent, AgentStatus, LifecycleEvent

logger = logging.getLogger(__name__)


class ShutdownCoordinator:
    """Turns SIGINT/SIGTERM or an explicit cancel into one orderly shutdown.

    Signal handlers only flip the run's cancellation flag; the supervisory
    thread notices it within one poll tick and calls ``shutdown``.
    """

    def __init__(
        self,
        context: RunContext,
        runner: AgentRunner,
        *,
        grace_seconds: float = 10.0,
    ) -> None:
        self.context = context
        self.runner = runner
        self.grace_seconds = grace_seconds
        self._lock = threading.Lock()
        self._started = False
        self._report: CleanupReport | None = None

    @contextmanager
    def install(self) -> Iterator[None]:
        """Install SIGINT/SIGTERM handlers for the duration of the block.

        Outside the main thread this is a no-op, since Python only allows
        signal handlers there.
        """

        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_shutdown(name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            logger.debug("Not in main thread; signal handlers not installed")
        try:
            yield
        finally:
            if installed:
                try:
                    signal.signal(signal.SIGINT, original_sigint)
                    signal.signal(signal.SIGTERM, original_sigterm)
                except ValueError:
                    pass

    def request_shutdown(self, signal_name: str) -> bool:
        """Record a shutdown request; repeated requests are ignored."""

        return self.context.cancel(f"signal {signal_name}")

    @property
    def in_progress(self) -> bool:
        return self._started

    def shutdown(
        self,
        agents: Sequence[Agent],
        cleanup: Callable[[], CleanupReport],
        *,
        reason: str | None = None,
        on_event: Callable[[LifecycleEvent], None] | None = None,
    ) -> CleanupReport:
        """Stop live agents, mark unfinished ones cancelled, then clean up once.

        A second call returns the first call's report without doing anything.
        """

        with self._lock:
            if self._started:
                logger.debug("Shutdown already performed; returning previous report")
                return self._report if self._report is not None else CleanupReport()
            self._started = True

        reason = reason or self.context.cancel_reason or "shutdown"
        logger.warning(
            "Shutting down: reason=%s live_agents=%s grace=%.1fs",
            reason,
            sum(1 for agent in agents if agent.status == AgentStatus.RUNNING),
            self.grace_seconds,
        )
        self._terminate_live(agents)

        for agent in agents:
            if agent.is_terminal:
                continue
            try:
                agent.transition(AgentStatus.CANCELLED, reason=reason)
            except InvalidTransitionError:
                logger.exception("Could not cancel agent_id=%s", agent.agent_id)
                continue
            if agent.process is not None:
                agent.exit_code = self.runner.exit_code(agent.process)
            if on_event is not None:
                on_event(LifecycleEvent.cancelled(agent.agent_id, reason))

        report = cleanup()
        with self._lock:
            self._report = report
        return report

    def _terminate_live(self, agents: Sequence[Agent]) -> None:
        live = [
            agent
            for agent in agents
            if agent.status == AgentStatus.RUNNING
            and agent.process is not None
            and self.runner.exit_code(agent.process) is None
        ]
        if not live:
            return
        # Parallel terminations: total wait is bounded by one grace period.
        with ThreadPoolExecutor(max_workers=len(live), thread_name_prefix="swarm-stop") as pool:
            futures = {
                pool.submit(self.runner.terminate, agent.process, self.grace_seconds): agent
                for agent in live
            }
            for future, agent in futures.items():
                try:
                    future.result()
                except OSError as error:
                    logger.warning("Failed to terminate agent_id=%s: %s", agent.agent_id, error)
