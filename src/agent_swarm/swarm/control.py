"""File-based pause/resume/stop intents for running agents.

Delivery is best-effort: an intent is a JSON file the agent may or may not
read, and there is no acknowledgement channel. The only intent the swarm
itself acts on is ``stop``, which the monitor turns into a cancellation.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

from agent_swarm.swarm.models import utc_now
from agent_swarm.swarm.workdir import RunLayout, load_json, unlink_if_present, write_json_atomic

logger = logging.getLogger(__name__)


class ControlCommandType(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


@dataclass(frozen=True, slots=True)
class ControlIntent:
    """Last control request issued for one agent."""

    agent_id: str
    command: ControlCommandType
    issued_at: str
    sequence: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "command": self.command.value,
            "issued_at": self.issued_at,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ControlIntent:
        return cls(
            agent_id=str(payload["agent_id"]),
            command=ControlCommandType(payload["command"]),
            issued_at=str(payload["issued_at"]),
            sequence=int(payload["sequence"]),
        )


class ControlAgent:
    """Writes control intents under ``control/`` and reads them back."""

    def __init__(self, layout: RunLayout) -> None:
        self.layout = layout
        self._lock = threading.Lock()

    def pause(self, agent_id: str) -> ControlIntent:
        return self.issue(agent_id, ControlCommandType.PAUSE)

    def resume(self, agent_id: str) -> ControlIntent:
        return self.issue(agent_id, ControlCommandType.RESUME)

    def stop(self, agent_id: str) -> ControlIntent:
        return self.issue(agent_id, ControlCommandType.STOP)

    def issue(self, agent_id: str, command: ControlCommandType) -> ControlIntent:
        with self._lock:
            previous = self.current_intent(agent_id)
            intent = ControlIntent(
                agent_id=agent_id,
                command=command,
                issued_at=utc_now().isoformat(),
                sequence=(previous.sequence + 1) if previous is not None else 1,
            )
            write_json_atomic(self.layout.control_file(agent_id), intent.to_dict())
            log_path = self.layout.control_log(agent_id)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(intent.to_dict(), sort_keys=True) + "\n")
        logger.info(
            "Control intent issued: agent_id=%s command=%s sequence=%s",
            agent_id,
            command.value,
            intent.sequence,
        )
        return intent

    def current_intent(self, agent_id: str) -> ControlIntent | None:
        path = self.layout.control_file(agent_id)
        if not path.exists():
            return None
        try:
            return ControlIntent.from_dict(load_json(path))
        except (OSError, json.JSONDecodeError, TypeError, KeyError, ValueError) as error:
            logger.warning("Ignoring unreadable control file %s: %s", path, error)
            return None

    def stop_requested(self, agent_id: str) -> bool:
        intent = self.current_intent(agent_id)
        return intent is not None and intent.command == ControlCommandType.STOP

    def clear(self, agent_id: str) -> bool:
        """Remove control artifacts; return True if anything was deleted."""

        removed_intent = unlink_if_present(self.layout.control_file(agent_id))
        removed_log = unlink_if_present(self.layout.control_log(agent_id))
        return removed_intent or removed_log
