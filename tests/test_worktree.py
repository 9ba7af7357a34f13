from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from agent_swarm.swarm.errors import SpawnError
from agent_swarm.swarm.retry import RetryPolicy
from agent_swarm.swarm.workdir import RunLayout
from agent_swarm.swarm.worktree import (
    DirectoryWorktreeProvider,
    GitWorktreeProvider,
    ReleaseOutcome,
    WorktreeAllocator,
    branch_for,
    parse_worktree_list,
)

pytestmark = [
    allure.epic("Swarm Core"),
    allure.feature("Worktrees"),
]

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

_NO_RETRY = RetryPolicy(max_attempts=1, base_delay_seconds=0)


def _git(repo: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.email=swarm@example.com", "-c", "user.name=swarm", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _git(path, "init", "-q")
    return path


def test_parse_worktree_list_porcelain() -> None:
    output = (
        "worktree /repo\n"
        "HEAD 1111111111111111111111111111111111111111\n"
        "branch refs/heads/main\n"
        "\n"
        "worktree /repo/.agent_swarm/worktrees/qa-1\n"
        "HEAD 2222222222222222222222222222222222222222\n"
        "branch refs/heads/swarm/qa-1\n"
        "\n"
        "worktree /tmp/detached\n"
        "HEAD 3333333333333333333333333333333333333333\n"
        "detached\n"
    )

    entries = parse_worktree_list(output)

    assert [entry.branch for entry in entries] == ["main", "swarm/qa-1", None]
    assert entries[1].path == Path("/repo/.agent_swarm/worktrees/qa-1").resolve()
    assert entries[2].head == "3333333333333333333333333333333333333333"


def test_directory_allocator_creates_unique_areas(layout) -> None:
    allocator = WorktreeAllocator(layout, DirectoryWorktreeProvider())

    first = allocator.acquire("qa-1")
    second = allocator.acquire("qa-2")

    assert first.path != second.path
    assert first.path.is_dir() and second.path.is_dir()
    assert first.branch is None
    with pytest.raises(FileExistsError):
        allocator.acquire("qa-1")


def test_branch_naming() -> None:
    assert branch_for("backend-20260101T000000Z-3") == "swarm/backend-20260101T000000Z-3"


@requires_git
def test_git_worktree_lifecycle(repo: Path) -> None:
    _git(repo, "commit", "-q", "--allow-empty", "-m", "init")
    layout = RunLayout(repo / ".agent_swarm")
    provider = GitWorktreeProvider(repo, retry_policy=_NO_RETRY)
    allocator = WorktreeAllocator(layout, provider)

    lease = allocator.acquire("qa-1")

    assert lease.branch == "swarm/qa-1"
    assert (lease.path / ".git").exists()
    assert [entry.branch for entry in provider.list_swarm_worktrees()] == ["swarm/qa-1"]

    assert provider.remove_worktree(lease.path) == ReleaseOutcome.REMOVED
    assert provider.delete_branch("swarm/qa-1") == ReleaseOutcome.REMOVED
    assert not lease.path.exists()
    assert provider.list_swarm_worktrees() == []
    assert provider.remove_worktree(lease.path) == ReleaseOutcome.ABSENT
    assert provider.delete_branch("swarm/qa-1") == ReleaseOutcome.ABSENT


@requires_git
def test_git_repository_without_commits_cannot_lease(repo: Path) -> None:
    allocator = WorktreeAllocator(
        RunLayout(repo / ".agent_swarm"),
        GitWorktreeProvider(repo, retry_policy=_NO_RETRY),
    )

    with pytest.raises(SpawnError, match="no commits"):
        allocator.acquire("qa-1")
