"""Shared per-agent progress view with atomic on-disk snapshots."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any

from agent_swarm.swarm.models import (
    Agent,
    AgentStatus,
    EventKind,
    LifecycleEvent,
    RunSummary,
    utc_now,
)
from agent_swarm.swarm.workdir import RunLayout, load_json, write_json_atomic

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    EventKind.STARTED: AgentStatus.RUNNING,
    EventKind.PROGRESS: AgentStatus.RUNNING,
    EventKind.COMPLETED: AgentStatus.COMPLETED,
    EventKind.FAILED: AgentStatus.FAILED,
    EventKind.TIMED_OUT: AgentStatus.TIMED_OUT,
    EventKind.CANCELLED: AgentStatus.CANCELLED,
}


@dataclass(frozen=True, slots=True)
class ProgressEntry:
    """Last known progress of one agent."""

    agent_id: str
    percent: int = 0
    status: AgentStatus = AgentStatus.PENDING
    message: str | None = None
    role: str | None = None
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "percent": self.percent,
            "status": self.status.value,
            "message": self.message,
            "role": self.role,
            "updated_at": self.updated_at.isoformat(),
        }


class ProgressTracker:
    """Last-writer-wins progress map; every update lands in ``status/<id>.json``."""

    def __init__(self, layout: RunLayout, *, persist: bool = True) -> None:
        self.layout = layout
        self.persist = persist
        self._entries: dict[str, ProgressEntry] = {}
        self._lock = threading.Lock()

    def register(self, agent: Agent) -> ProgressEntry:
        entry = ProgressEntry(
            agent_id=agent.agent_id,
            status=agent.status,
            message=agent.work_item.title,
            role=agent.role.value,
        )
        return self._store(entry)

    def apply(self, event: LifecycleEvent) -> ProgressEntry:
        """Fold a lifecycle event into the agent's entry."""

        with self._lock:
            current = self._entries.get(event.agent_id) or ProgressEntry(agent_id=event.agent_id)
        percent = current.percent
        if event.percent is not None:
            percent = event.percent
        message = event.reason if event.reason is not None else current.message
        return self._store(
            replace(
                current,
                percent=percent,
                status=_STATUS_BY_KIND[event.kind],
                message=message,
                updated_at=event.emitted_at,
            ),
        )

    def update(
        self,
        agent_id: str,
        *,
        percent: int | None = None,
        status: AgentStatus | None = None,
        message: str | None = None,
    ) -> ProgressEntry:
        with self._lock:
            current = self._entries.get(agent_id) or ProgressEntry(agent_id=agent_id)
        return self._store(
            replace(
                current,
                percent=current.percent if percent is None else max(0, min(100, percent)),
                status=current.status if status is None else status,
                message=current.message if message is None else message,
                updated_at=utc_now(),
            ),
        )

    def snapshot(self) -> Mapping[str, ProgressEntry]:
        """Immutable copy of all entries, taken under the lock."""

        with self._lock:
            return MappingProxyType(dict(self._entries))

    def write_run_summary(self, summary: RunSummary) -> None:
        payload = summary.to_dict()
        payload["written_at"] = utc_now().isoformat()
        write_json_atomic(self.layout.run_summary_path, payload)

    def _store(self, entry: ProgressEntry) -> ProgressEntry:
        with self._lock:
            self._entries[entry.agent_id] = entry
        if self.persist:
            try:
                write_json_atomic(self.layout.status_file(entry.agent_id), entry.to_dict())
            except OSError as error:
                logger.warning(
                    "Failed to write status snapshot: agent_id=%s error=%s",
                    entry.agent_id,
                    error,
                )
        return entry


@dataclass(slots=True)
class StatusView:
    """Status files read back from a run root."""

    agents: list[dict[str, Any]]
    run: dict[str, Any] | None = None


def load_status(layout: RunLayout) -> StatusView:
    """Read per-agent snapshots and the last run summary, skipping unreadable files."""

    agents: list[dict[str, Any]] = []
    run: dict[str, Any] | None = None
    if not layout.status_dir.is_dir():
        return StatusView(agents=agents)
    for path in sorted(layout.status_dir.glob("*.json")):
        try:
            payload = load_json(path)
        except (OSError, json.JSONDecodeError, TypeError) as error:
            logger.warning("Skipping unreadable status file %s: %s", path, error)
            continue
        if path == layout.run_summary_path:
            run = payload
        else:
            agents.append(payload)
    return StatusView(agents=agents, run=run)
