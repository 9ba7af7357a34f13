"""Domain models for agents, lifecycle events, and run summaries."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agent_swarm.swarm.errors import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    InvalidTransitionError,
)

if TYPE_CHECKING:
    from agent_swarm.swarm.cleanup import CleanupReport


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class AgentRole(str, Enum):
    """Specialisation an agent is spawned with."""

    PLANNER = "planner"
    BACKEND = "backend"
    FRONTEND = "frontend"
    QA = "qa"
    GENERIC = "generic"


class AgentStatus(str, Enum):
    """Agent lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        AgentStatus.COMPLETED,
        AgentStatus.FAILED,
        AgentStatus.TIMED_OUT,
        AgentStatus.CANCELLED,
    },
)

_ALLOWED_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.PENDING: frozenset(
        {AgentStatus.RUNNING, AgentStatus.FAILED, AgentStatus.CANCELLED},
    ),
    AgentStatus.RUNNING: TERMINAL_STATUSES,
}


_ROLE_KEYWORDS: tuple[tuple[AgentRole, tuple[str, ...]], ...] = (
    (AgentRole.QA, ("test", "qa", "spec", "coverage")),
    (AgentRole.PLANNER, ("plan", "design doc", "architecture", "breakdown")),
    (
        AgentRole.BACKEND,
        ("model", "database", "api", "service", "migration", "business logic"),
    ),
    (
        AgentRole.FRONTEND,
        ("ui", "view", "component", "form", "javascript", "template", "stimulus"),
    ),
)


def infer_role(text: str) -> AgentRole:
    """Pick the agent role from keywords in a work item description."""

    lowered = text.lower()
    for role, keywords in _ROLE_KEYWORDS:
        for keyword in keywords:
            if re.search(rf"\b{re.escape(keyword)}", lowered):
                return role
    return AgentRole.GENERIC


@dataclass(frozen=True, slots=True)
class WorkItem:
    """One unit of work assigned to a single agent."""

    item_id: str
    title: str
    instructions: str
    role: AgentRole = AgentRole.GENERIC
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True, slots=True)
class TaskBacklogCapability:
    """Backlog availability, resolved once at startup."""

    available: bool
    command: str | None = None


@dataclass(slots=True)
class Agent:
    """One spawned worker and its mutable lifecycle state."""

    agent_id: str
    role: AgentRole
    work_item: WorkItem
    completion_marker_path: Path
    work_area: Path | None = None
    branch: str | None = None
    status: AgentStatus = AgentStatus.PENDING
    process: Any = None
    started_at: datetime | None = None
    started_monotonic: float | None = None
    completed_at: datetime | None = None
    exit_code: int | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: AgentStatus, *, reason: str | None = None) -> None:
        """Move to ``new_status`` or raise if the state machine forbids it."""

        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Agent {self.agent_id}: {self.status.value} -> {new_status.value} not allowed",
            )
        self.status = new_status
        if new_status == AgentStatus.RUNNING:
            self.started_at = utc_now()
        if new_status in TERMINAL_STATUSES:
            self.completed_at = utc_now()
            if reason is not None:
                self.failure_reason = reason

    def mark_running(self, process: Any, *, started_monotonic: float) -> None:
        self.transition(AgentStatus.RUNNING)
        self.process = process
        self.started_monotonic = started_monotonic

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "role": self.role.value,
            "item_id": self.work_item.item_id,
            "title": self.work_item.title,
            "status": self.status.value,
            "work_area": str(self.work_area) if self.work_area is not None else None,
            "branch": self.branch,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "exit_code": self.exit_code,
            "failure_reason": self.failure_reason,
        }


class EventKind(str, Enum):
    """Lifecycle event tags."""

    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    """Typed notification of an agent state change."""

    kind: EventKind
    agent_id: str
    percent: int | None = None
    reason: str | None = None
    emitted_at: datetime = field(default_factory=utc_now, compare=False)

    @classmethod
    def started(cls, agent_id: str) -> LifecycleEvent:
        return cls(kind=EventKind.STARTED, agent_id=agent_id)

    @classmethod
    def progress(cls, agent_id: str, percent: int) -> LifecycleEvent:
        return cls(kind=EventKind.PROGRESS, agent_id=agent_id, percent=max(0, min(100, percent)))

    @classmethod
    def completed(cls, agent_id: str) -> LifecycleEvent:
        return cls(kind=EventKind.COMPLETED, agent_id=agent_id, percent=100)

    @classmethod
    def failed(cls, agent_id: str, reason: str) -> LifecycleEvent:
        return cls(kind=EventKind.FAILED, agent_id=agent_id, reason=reason)

    @classmethod
    def timed_out(cls, agent_id: str) -> LifecycleEvent:
        return cls(kind=EventKind.TIMED_OUT, agent_id=agent_id, reason="per-agent timeout")

    @classmethod
    def cancelled(cls, agent_id: str, reason: str) -> LifecycleEvent:
        return cls(kind=EventKind.CANCELLED, agent_id=agent_id, reason=reason)

    @property
    def is_terminal(self) -> bool:
        return self.kind not in {EventKind.STARTED, EventKind.PROGRESS}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "agent_id": self.agent_id,
            "percent": self.percent,
            "reason": self.reason,
            "emitted_at": self.emitted_at.isoformat(),
        }


@dataclass(slots=True)
class RunSummary:
    """Aggregate terminal-status report for one orchestration run."""

    agents: list[Agent]
    cleanup: CleanupReport | None = None
    cancelled: bool = False
    cancel_reason: str | None = None
    run_timed_out: bool = False

    @property
    def counts(self) -> dict[AgentStatus, int]:
        counter = Counter(agent.status for agent in self.agents)
        return {status: counter.get(status, 0) for status in AgentStatus}

    @property
    def success(self) -> bool:
        counts = self.counts
        return (
            not self.run_timed_out
            and counts[AgentStatus.FAILED] == 0
            and counts[AgentStatus.TIMED_OUT] == 0
        )

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        if not self.success:
            return EXIT_FAILURE
        if self.counts[AgentStatus.CANCELLED]:
            return EXIT_CANCELLED
        return EXIT_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "cancel_reason": self.cancel_reason,
            "run_timed_out": self.run_timed_out,
            "exit_code": self.exit_code,
            "counts": {status.value: count for status, count in self.counts.items()},
            "agents": [agent.to_dict() for agent in self.agents],
            "cleanup": self.cleanup.to_dict() if self.cleanup is not None else None,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
