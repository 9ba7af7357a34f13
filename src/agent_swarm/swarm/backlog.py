"""Task backlog adapters: where work items come from and where they go after a run."""

from __future__ import annotations

import json
import logging
import shlex
import shutil
from collections.abc import Iterable
from typing import Any, Protocol

from agent_swarm.swarm.errors import BacklogUnavailableError, CommandError, RetryExhaustedError
from agent_swarm.swarm.models import AgentRole, TaskBacklogCapability, WorkItem, infer_role
from agent_swarm.swarm.retry import RetryHandler, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_BACKLOG_COMMAND = "swarm-tasks"


class TaskBacklog(Protocol):
    def list_work_items(self, state: str = "backlog") -> list[WorkItem]:
        """Return work items in ``state``; raise ``BacklogUnavailableError`` on failure."""

    def move_item(self, item_id: str, new_state: str) -> None:
        """Move an item to ``new_state``."""


def detect_backlog_capability(command: str | None) -> TaskBacklogCapability:
    """Resolve once whether the backlog command is installed."""

    if not command or not command.strip():
        return TaskBacklogCapability(available=False)
    executable = shlex.split(command)[0]
    if shutil.which(executable) is None:
        logger.info("Backlog command not found on PATH: %s", executable)
        return TaskBacklogCapability(available=False, command=command)
    return TaskBacklogCapability(available=True, command=command)


class CommandBacklog:
    """Backlog behind an external ``swarm-tasks``-style command.

    ``<command> list <state> --json`` must print a JSON list of objects with
    ``id`` and ``title``/``content``; ``<command> move <id> <state>`` moves one.
    """

    def __init__(
        self,
        command: str,
        *,
        retry_handler: RetryHandler | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("Backlog command is empty.")
        self._retry = retry_handler or RetryHandler()
        self._policy = retry_policy or RetryPolicy()

    def list_work_items(self, state: str = "backlog") -> list[WorkItem]:
        try:
            result = self._retry.run_command([*self.argv, "list", state, "--json"], self._policy)
        except (CommandError, RetryExhaustedError) as error:
            raise BacklogUnavailableError(f"Failed to list backlog items: {error}") from error
        if not result.stdout.strip():
            return []
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as error:
            raise BacklogUnavailableError(
                f"Backlog command returned invalid JSON: {error}",
            ) from error
        if not isinstance(payload, list):
            raise BacklogUnavailableError("Backlog command must return a JSON list.")
        return [
            _work_item_from_task(task)
            for task in payload
            if isinstance(task, dict) and "id" in task
        ]

    def move_item(self, item_id: str, new_state: str) -> None:
        self._retry.run_command([*self.argv, "move", item_id, new_state], self._policy)
        logger.info("Moved backlog item: item_id=%s state=%s", item_id, new_state)


class StaticBacklog:
    """In-memory backlog, e.g. for explicit ``--task`` items and tests."""

    def __init__(self, items: Iterable[WorkItem] = (), *, state: str = "backlog") -> None:
        self._items = {item.item_id: item for item in items}
        self.states: dict[str, str] = {item_id: state for item_id in self._items}

    def list_work_items(self, state: str = "backlog") -> list[WorkItem]:
        return [item for item_id, item in self._items.items() if self.states[item_id] == state]

    def move_item(self, item_id: str, new_state: str) -> None:
        if item_id not in self._items:
            raise KeyError(item_id)
        self.states[item_id] = new_state


def _work_item_from_task(task: dict[str, Any]) -> WorkItem:
    title = str(task.get("title") or task.get("content") or task.get("id"))
    description = str(task.get("description") or task.get("content") or title)
    raw_role = task.get("role")
    try:
        role = AgentRole(raw_role) if raw_role else infer_role(f"{title}\n{description}")
    except ValueError:
        role = infer_role(f"{title}\n{description}")
    return WorkItem(
        item_id=str(task["id"]),
        title=title,
        instructions=description,
        role=role,
        metadata={
            key: task[key] for key in ("priority", "effort", "tags", "state") if key in task
        },
    )
