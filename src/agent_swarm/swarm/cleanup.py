"""Idempotent reclamation of per-agent resources."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from agent_swarm.swarm.backend.base import AgentRunner
from agent_swarm.swarm.control import ControlAgent
from agent_swarm.swarm.errors import SwarmError
from agent_swarm.swarm.models import Agent
from agent_swarm.swarm.workdir import RunLayout, unlink_if_present
from agent_swarm.swarm.worktree import BRANCH_PREFIX, ReleaseOutcome, WorktreeAllocator, branch_for

logger = logging.getLogger(__name__)

_MARKER_SUFFIX = "_completed.txt"
_CONTROL_LOG_SUFFIX = ".log.jsonl"


class ResourceOutcome(str, Enum):
    REMOVED = "removed"
    ABSENT = "absent"
    FAILED = "failed"

    @classmethod
    def from_release(cls, outcome: ReleaseOutcome) -> ResourceOutcome:
        return cls.REMOVED if outcome == ReleaseOutcome.REMOVED else cls.ABSENT

    @classmethod
    def from_flag(cls, removed: bool) -> ResourceOutcome:
        return cls.REMOVED if removed else cls.ABSENT


@dataclass(slots=True)
class AgentCleanupResult:
    """Per-resource outcomes for one agent."""

    agent_id: str
    resources: dict[str, ResourceOutcome] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "resources": {name: outcome.value for name, outcome in self.resources.items()},
            "errors": list(self.errors),
        }


@dataclass(slots=True)
class CleanupReport:
    """Outcome of one reclaim pass."""

    results: list[AgentCleanupResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def errors(self) -> list[str]:
        return [
            f"{result.agent_id}: {error}" for result in self.results for error in result.errors
        ]

    def removed_count(self) -> int:
        return sum(
            1
            for result in self.results
            for outcome in result.resources.values()
            if outcome == ResourceOutcome.REMOVED
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "removed": self.removed_count(),
            "agents": [result.to_dict() for result in self.results],
        }


class CleanupManager:
    """Terminates leftovers and removes work areas, branches, markers, and control files.

    Every step treats an already missing resource as success, so running a
    reclaim twice converges on the same end state.
    """

    def __init__(
        self,
        layout: RunLayout,
        allocator: WorktreeAllocator,
        *,
        runner: AgentRunner | None = None,
        control: ControlAgent | None = None,
        grace_seconds: float = 10.0,
    ) -> None:
        self.layout = layout
        self.allocator = allocator
        self.runner = runner
        self.control = control or ControlAgent(layout)
        self.grace_seconds = grace_seconds

    def reclaim(self, agents: Iterable[Agent]) -> CleanupReport:
        report = CleanupReport()
        for agent in agents:
            result = AgentCleanupResult(agent_id=agent.agent_id)
            self._stop_process(agent, result)
            if agent.work_area is not None:
                self._release(
                    result,
                    path=agent.work_area,
                    branch=agent.branch,
                )
            self._remove_files(agent.agent_id, result)
            report.results.append(result)
        self._log_report("reclaim", report)
        return report

    def reclaim_orphans(self, layout: RunLayout | None = None) -> CleanupReport:
        """Reclaim everything left under a run root, e.g. after a crash."""

        layout = layout or self.layout
        work_areas: dict[str, tuple[Path, str | None]] = {}
        uses_branches = self.allocator.provider.uses_branches
        if layout.worktrees_dir.is_dir():
            for path in sorted(layout.worktrees_dir.iterdir()):
                if path.is_dir():
                    branch = branch_for(path.name) if uses_branches else None
                    work_areas[path.name] = (path.resolve(), branch)
        for entry in self.allocator.provider.list_swarm_worktrees():
            agent_id = (entry.branch or "").removeprefix(BRANCH_PREFIX) or entry.path.name
            work_areas.setdefault(agent_id, (entry.path, entry.branch))

        agent_ids = set(work_areas)
        agent_ids.update(_ids_from(layout.completed_dir, "*" + _MARKER_SUFFIX, _MARKER_SUFFIX))
        agent_ids.update(
            _ids_from(layout.control_dir, "*" + _CONTROL_LOG_SUFFIX, _CONTROL_LOG_SUFFIX),
        )
        agent_ids.update(_ids_from(layout.control_dir, "*.json", ".json"))

        report = CleanupReport()
        for agent_id in sorted(agent_ids):
            result = AgentCleanupResult(agent_id=agent_id)
            if agent_id in work_areas:
                path, branch = work_areas[agent_id]
                self._release(result, path=path, branch=branch)
            self._remove_files(agent_id, result, layout=layout)
            report.results.append(result)
        self._log_report("reclaim_orphans", report)
        return report

    def _stop_process(self, agent: Agent, result: AgentCleanupResult) -> None:
        if agent.process is None or self.runner is None:
            return
        try:
            if self.runner.exit_code(agent.process) is None:
                logger.warning(
                    "Terminating live agent during cleanup: agent_id=%s",
                    agent.agent_id,
                )
                self.runner.terminate(agent.process, self.grace_seconds)
                result.resources["process"] = ResourceOutcome.REMOVED
            else:
                result.resources["process"] = ResourceOutcome.ABSENT
        except (SwarmError, OSError) as error:
            result.resources["process"] = ResourceOutcome.FAILED
            result.errors.append(f"process: {error}")

    def _release(self, result: AgentCleanupResult, *, path: Path, branch: str | None) -> None:
        lease = self.allocator.lease_for(result.agent_id, path=path, branch=branch)
        try:
            result.resources["work_area"] = ResourceOutcome.from_release(
                lease.provider.remove_worktree(lease.path),
            )
        except (SwarmError, OSError) as error:
            result.resources["work_area"] = ResourceOutcome.FAILED
            result.errors.append(f"work_area: {error}")
        if lease.branch is None:
            return
        try:
            result.resources["branch"] = ResourceOutcome.from_release(
                lease.provider.delete_branch(lease.branch),
            )
        except (SwarmError, OSError) as error:
            result.resources["branch"] = ResourceOutcome.FAILED
            result.errors.append(f"branch: {error}")

    def _remove_files(
        self,
        agent_id: str,
        result: AgentCleanupResult,
        *,
        layout: RunLayout | None = None,
    ) -> None:
        layout = layout or self.layout
        try:
            result.resources["marker"] = ResourceOutcome.from_flag(
                unlink_if_present(layout.completion_marker(agent_id)),
            )
        except OSError as error:
            result.resources["marker"] = ResourceOutcome.FAILED
            result.errors.append(f"marker: {error}")
        control = self.control if layout == self.layout else ControlAgent(layout)
        try:
            result.resources["control"] = ResourceOutcome.from_flag(control.clear(agent_id))
        except OSError as error:
            result.resources["control"] = ResourceOutcome.FAILED
            result.errors.append(f"control: {error}")

    def _log_report(self, operation: str, report: CleanupReport) -> None:
        if report.ok:
            logger.info(
                "Cleanup finished: operation=%s agents=%s removed=%s",
                operation,
                len(report.results),
                report.removed_count(),
            )
            return
        for error in report.errors:
            logger.warning("Cleanup problem: operation=%s %s", operation, error)


def _ids_from(directory: Path, pattern: str, suffix: str) -> list[str]:
    if not directory.is_dir():
        return []
    return [path.name.removesuffix(suffix) for path in directory.glob(pattern)]
