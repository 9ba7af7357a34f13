"""Isolated work-area leases backed by git worktrees or plain directories."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from agent_swarm.swarm.errors import (
    CleanupError,
    CommandError,
    RetryExhaustedError,
    SpawnError,
)
from agent_swarm.swarm.retry import RetryHandler, RetryPolicy

if TYPE_CHECKING:
    from agent_swarm.swarm.context import RunContext
    from agent_swarm.swarm.workdir import RunLayout

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "swarm/"

_GIT_ERRORS = (CommandError, RetryExhaustedError)


class ReleaseOutcome(str, Enum):
    """Result of releasing one leased resource."""

    REMOVED = "removed"
    ABSENT = "absent"


@dataclass(frozen=True, slots=True)
class WorktreeEntry:
    """One entry of ``git worktree list --porcelain``."""

    path: Path
    branch: str | None = None
    head: str | None = None


class WorktreeProvider(Protocol):
    """Creates and removes isolated work areas."""

    uses_branches: bool

    def create_worktree(
        self,
        path: Path,
        branch: str | None,
        *,
        context: RunContext | None = None,
    ) -> Path:
        """Materialize an exclusive work area at ``path``."""

    def remove_worktree(self, path: Path) -> ReleaseOutcome:
        """Remove the work area; a missing one is not an error."""

    def delete_branch(self, branch: str) -> ReleaseOutcome:
        """Delete the lease branch; a missing one is not an error."""

    def list_swarm_worktrees(self) -> list[WorktreeEntry]:
        """List work areas owned by swarm branches."""


class DirectoryWorktreeProvider:
    """Plain directories for projects without git."""

    uses_branches = False

    def create_worktree(
        self,
        path: Path,
        branch: str | None,
        *,
        context: RunContext | None = None,
    ) -> Path:
        del branch, context
        path.mkdir(parents=True, exist_ok=False)
        return path

    def remove_worktree(self, path: Path) -> ReleaseOutcome:
        if not path.exists():
            return ReleaseOutcome.ABSENT
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return ReleaseOutcome.ABSENT
        except OSError as error:
            raise CleanupError(f"Failed to remove work area {path}: {error}") from error
        return ReleaseOutcome.REMOVED

    def delete_branch(self, branch: str) -> ReleaseOutcome:
        del branch
        return ReleaseOutcome.ABSENT

    def list_swarm_worktrees(self) -> list[WorktreeEntry]:
        return []


class GitWorktreeProvider:
    """``git worktree`` per agent on a dedicated ``swarm/<agent_id>`` branch."""

    uses_branches = True

    def __init__(
        self,
        repo_dir: Path,
        *,
        retry_handler: RetryHandler | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.repo_dir = repo_dir
        self._retry = retry_handler or RetryHandler()
        self._policy = retry_policy or RetryPolicy()

    def create_worktree(
        self,
        path: Path,
        branch: str | None,
        *,
        context: RunContext | None = None,
    ) -> Path:
        if path.exists():
            raise SpawnError(f"Work area already exists: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._git("rev-parse", "--verify", "HEAD", context=context)
        except _GIT_ERRORS as error:
            raise SpawnError(
                f"Repository at {self.repo_dir} has no commits; git worktree needs one.",
            ) from error
        argv = ["worktree", "add", str(path)]
        if branch is not None:
            argv[2:2] = ["-b", branch]
        self._git(*argv, context=context)
        logger.info("Created worktree: path=%s branch=%s", path, branch)
        return path

    def remove_worktree(self, path: Path) -> ReleaseOutcome:
        registered = any(entry.path == path.resolve() for entry in self._list_worktrees())
        if not registered and not path.exists():
            return ReleaseOutcome.ABSENT
        if registered:
            try:
                self._git("worktree", "remove", "--force", str(path))
            except _GIT_ERRORS as error:
                logger.warning("git worktree remove failed for %s: %s", path, error)
        if path.exists():
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            except OSError as error:
                raise CleanupError(f"Failed to remove worktree {path}: {error}") from error
        try:
            self._git("worktree", "prune")
        except _GIT_ERRORS as error:
            logger.debug("git worktree prune failed: %s", error)
        return ReleaseOutcome.REMOVED

    def delete_branch(self, branch: str) -> ReleaseOutcome:
        try:
            self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        except _GIT_ERRORS:
            return ReleaseOutcome.ABSENT
        try:
            self._git("branch", "-D", branch)
        except _GIT_ERRORS as error:
            if "not found" in str(error).lower():
                return ReleaseOutcome.ABSENT
            raise CleanupError(f"Failed to delete branch {branch}: {error}") from error
        logger.info("Deleted branch: %s", branch)
        return ReleaseOutcome.REMOVED

    def list_swarm_worktrees(self) -> list[WorktreeEntry]:
        return [
            entry
            for entry in self._list_worktrees()
            if entry.branch is not None and entry.branch.startswith(BRANCH_PREFIX)
        ]

    def _list_worktrees(self) -> list[WorktreeEntry]:
        try:
            result = self._git("worktree", "list", "--porcelain")
        except _GIT_ERRORS as error:
            logger.warning("Failed to list worktrees: %s", error)
            return []
        return parse_worktree_list(result.stdout)

    def _git(self, *args: str, context: RunContext | None = None):
        return self._retry.run_command(
            ["git", *args],
            self._policy,
            cwd=self.repo_dir,
            context=context,
        )


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    """Parse ``git worktree list --porcelain`` output."""

    entries: list[WorktreeEntry] = []
    current: dict[str, str] = {}
    for raw_line in [*output.splitlines(), ""]:
        line = raw_line.strip()
        if not line:
            if "worktree" in current:
                entries.append(
                    WorktreeEntry(
                        path=Path(current["worktree"]).resolve(),
                        branch=current.get("branch"),
                        head=current.get("HEAD"),
                    ),
                )
            current = {}
            continue
        key, _, value = line.partition(" ")
        if key == "branch":
            value = value.removeprefix("refs/heads/")
        current[key] = value
    return entries


@dataclass(slots=True)
class WorktreeLease:
    """Exclusive work area held by one agent for the duration of a run."""

    agent_id: str
    path: Path
    branch: str | None
    provider: WorktreeProvider


class WorktreeAllocator:
    """Hands out uniquely named leases under the run's worktrees directory."""

    def __init__(self, layout: RunLayout, provider: WorktreeProvider) -> None:
        self.layout = layout
        self.provider = provider

    def acquire(self, agent_id: str, *, context: RunContext | None = None) -> WorktreeLease:
        path = self.layout.work_area(agent_id).resolve()
        branch = branch_for(agent_id) if self.provider.uses_branches else None
        self.provider.create_worktree(path, branch, context=context)
        return WorktreeLease(agent_id=agent_id, path=path, branch=branch, provider=self.provider)

    def lease_for(self, agent_id: str, *, path: Path, branch: str | None) -> WorktreeLease:
        """Rebuild a lease for an already allocated work area (cleanup path)."""

        return WorktreeLease(agent_id=agent_id, path=path, branch=branch, provider=self.provider)


def branch_for(agent_id: str) -> str:
    return f"{BRANCH_PREFIX}{agent_id}"
