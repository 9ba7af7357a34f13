"""Best-effort fan-out of lifecycle events to notification sinks."""

from __future__ import annotations

import json
import logging
import shlex
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from agent_swarm.swarm.commands import run_command
from agent_swarm.swarm.models import EventKind, LifecycleEvent, utc_now

logger = logging.getLogger(__name__)

_HISTORY_LIMIT = 100
_COMMAND_SINK_TIMEOUT_SECONDS = 10


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}

_PRIORITY_BY_KIND = {
    EventKind.FAILED: Priority.CRITICAL,
    EventKind.TIMED_OUT: Priority.CRITICAL,
    EventKind.COMPLETED: Priority.HIGH,
    EventKind.CANCELLED: Priority.HIGH,
    EventKind.STARTED: Priority.MEDIUM,
    EventKind.PROGRESS: Priority.LOW,
}


def priority_for(kind: EventKind) -> Priority:
    return _PRIORITY_BY_KIND[kind]


def describe_event(event: LifecycleEvent) -> str:
    """One-line human message for an event."""

    if event.kind == EventKind.STARTED:
        return f"Agent {event.agent_id} started"
    if event.kind == EventKind.PROGRESS:
        return f"Agent {event.agent_id} at {event.percent}%"
    if event.kind == EventKind.COMPLETED:
        return f"Agent {event.agent_id} completed"
    if event.kind == EventKind.TIMED_OUT:
        return f"Agent {event.agent_id} timed out"
    verb = "failed" if event.kind == EventKind.FAILED else "was cancelled"
    suffix = f": {event.reason}" if event.reason else ""
    return f"Agent {event.agent_id} {verb}{suffix}"


@dataclass(frozen=True, slots=True)
class Notification:
    """Event plus the derived priority and message handed to sinks."""

    event: LifecycleEvent
    priority: Priority
    message: str
    title: str = "agent-swarm"
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_event(cls, event: LifecycleEvent) -> Notification:
        return cls(event=event, priority=priority_for(event.kind), message=describe_event(event))

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "created_at": self.created_at.isoformat(),
            "event": self.event.to_dict(),
        }


class NotificationSink(Protocol):
    def deliver(self, notification: Notification) -> None:
        """Deliver one notification; may raise."""


class LoggingSink:
    """Writes every notification to the module logger."""

    def deliver(self, notification: Notification) -> None:
        level = logging.WARNING if notification.priority == Priority.CRITICAL else logging.INFO
        logger.log(
            level,
            "Notification: priority=%s %s",
            notification.priority.value,
            notification.message,
        )


class JsonlFileSink:
    """Appends notifications as JSON lines."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def deliver(self, notification: Notification) -> None:
        line = json.dumps(notification.to_dict(), ensure_ascii=False, sort_keys=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


class CommandSink:
    """Runs a desktop-notifier style command for important notifications.

    The template may use ``{title}``, ``{message}`` and ``{priority}``, e.g.
    ``notify-send {title} {message}``.
    """

    def __init__(self, command_template: str, *, threshold: Priority = Priority.HIGH) -> None:
        self.command_template = command_template
        self.threshold = threshold

    def deliver(self, notification: Notification) -> None:
        if notification.priority.rank < self.threshold.rank:
            return
        rendered = self.command_template.format(
            title=shlex.quote(notification.title),
            message=shlex.quote(notification.message),
            priority=shlex.quote(notification.priority.value),
        )
        run_command(shlex.split(rendered), timeout=_COMMAND_SINK_TIMEOUT_SECONDS)


class NotificationManager:
    """Fans events out to sinks; sink failures are logged and dropped."""

    def __init__(
        self,
        sinks: list[NotificationSink] | None = None,
        *,
        enabled: bool = True,
        history_limit: int = _HISTORY_LIMIT,
    ) -> None:
        self.sinks: list[NotificationSink] = list(sinks or [])
        self.enabled = enabled
        self._history: deque[Notification] = deque(maxlen=history_limit)
        self._lock = threading.Lock()

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def notify(self, event: LifecycleEvent) -> Notification | None:
        if not self.enabled:
            return None
        notification = Notification.from_event(event)
        with self._lock:
            self._history.append(notification)
        for sink in self.sinks:
            try:
                sink.deliver(notification)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Notification sink failed: sink=%s agent_id=%s error=%s",
                    type(sink).__name__,
                    event.agent_id,
                    error,
                )
        return notification

    def recent(self, limit: int = 10) -> list[Notification]:
        with self._lock:
            items = list(self._history)
        return items[-limit:] if limit > 0 else []
