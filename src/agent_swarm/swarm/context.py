"""Explicit per-run state shared by orchestration components."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from agent_swarm.swarm.models import Agent
from agent_swarm.swarm.retry import RetryPolicy
from agent_swarm.swarm.workdir import RunLayout

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunContext:
    """Cancellation token, layout, policies, and agent collection for one run.

    Passed explicitly to every component call; components keep no ambient
    run state of their own.
    """

    layout: RunLayout
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    run_deadline: float | None = None
    clock: Callable[[], float] = time.monotonic
    agents: list[Agent] = field(default_factory=list)
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _cancel_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    cancel_reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self, reason: str) -> bool:
        """Set the cancellation flag; return True only for the first request."""

        with self._cancel_lock:
            if self._cancel_event.is_set():
                logger.debug("Cancellation already in progress; ignoring reason=%s", reason)
                return False
            self.cancel_reason = reason
            self._cancel_event.set()
        logger.info("Run cancellation requested: reason=%s", reason)
        return True

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancellation fired meanwhile."""

        if seconds <= 0:
            return self._cancel_event.is_set()
        return self._cancel_event.wait(timeout=seconds)

    def run_expired(self) -> bool:
        return self.run_deadline is not None and self.clock() >= self.run_deadline

    def set_run_timeout(self, seconds: float | None) -> None:
        self.run_deadline = None if seconds is None else self.clock() + seconds
