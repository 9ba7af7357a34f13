"""Live agent output tailing into bounded per-agent ring buffers."""

from __future__ import annotations

import codecs
import logging
import re
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from agent_swarm.swarm.models import LifecycleEvent

logger = logging.getLogger(__name__)

PROGRESS_PATTERN = re.compile(r"^\s*\[progress\]\s+(\d{1,3})\b", re.IGNORECASE)
_MAX_READ_BYTES = 1 << 20


@dataclass(slots=True)
class _TailState:
    path: Path
    lines: deque[str]
    offset: int = 0
    remainder: str = ""
    last_percent: int | None = None
    closed: bool = False
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"),
    )


class OutputStreamer:
    """Tails each agent's log file; old lines drop when a buffer is full.

    Agents write to files, so a slow consumer never blocks the producing
    process.
    """

    def __init__(
        self,
        *,
        buffer_lines: int = 200,
        on_line: Callable[[str, str], None] | None = None,
    ) -> None:
        if buffer_lines < 1:
            raise ValueError("buffer_lines must be >= 1.")
        self.buffer_lines = buffer_lines
        self._on_line = on_line
        self._states: dict[str, _TailState] = {}
        self._lock = threading.Lock()

    def register(self, agent_id: str, log_path: Path) -> None:
        with self._lock:
            self._states[agent_id] = _TailState(
                path=log_path,
                lines=deque(maxlen=self.buffer_lines),
            )

    def poll(self) -> list[LifecycleEvent]:
        """Read newly appended output; return progress events parsed from it."""

        with self._lock:
            states = list(self._states.items())
        events: list[LifecycleEvent] = []
        for agent_id, state in states:
            if state.closed:
                continue
            events.extend(self._read_new(agent_id, state, final=False))
        return events

    def flush(self, agent_id: str) -> list[LifecycleEvent]:
        """Drain remaining output, including a trailing line without newline.

        A flushed stream is closed: later polls no longer read its log, while
        its buffered lines stay available.
        """

        with self._lock:
            state = self._states.get(agent_id)
        if state is None or state.closed:
            return []
        events: list[LifecycleEvent] = []
        offset = -1
        while state.offset != offset:
            offset = state.offset
            events.extend(self._read_new(agent_id, state, final=False))
        events.extend(self._read_new(agent_id, state, final=True))
        state.closed = True
        return events

    def lines(self, agent_id: str) -> list[str]:
        with self._lock:
            state = self._states.get(agent_id)
            return list(state.lines) if state is not None else []

    def snapshot(self) -> dict[str, list[str]]:
        with self._lock:
            return {agent_id: list(state.lines) for agent_id, state in self._states.items()}

    def _read_new(self, agent_id: str, state: _TailState, *, final: bool) -> list[LifecycleEvent]:
        try:
            with state.path.open("rb") as handle:
                handle.seek(state.offset)
                chunk = handle.read(_MAX_READ_BYTES)
        except FileNotFoundError:
            return []
        except OSError as error:
            logger.debug("Failed to read output for agent_id=%s: %s", agent_id, error)
            return []

        state.offset += len(chunk)
        text = state.remainder + state.decoder.decode(chunk, final=final)
        parts = text.split("\n")
        state.remainder = "" if final else parts.pop()
        events: list[LifecycleEvent] = []
        for raw in parts:
            line = raw.rstrip("\r")
            if not line.strip():
                continue
            state.lines.append(line)
            self._forward(agent_id, line)
            match = PROGRESS_PATTERN.match(line)
            if match is None:
                continue
            percent = min(100, int(match.group(1)))
            if percent != state.last_percent:
                state.last_percent = percent
                events.append(LifecycleEvent.progress(agent_id, percent))
        return events

    def _forward(self, agent_id: str, line: str) -> None:
        if self._on_line is None:
            return
        try:
            self._on_line(agent_id, line)
        except Exception:  # noqa: BLE001
            logger.debug("Output forwarder failed for agent_id=%s", agent_id, exc_info=True)
