"""Run-root layout helpers for file-signalled agent execution."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass(frozen=True, slots=True)
class RunLayout:
    """Deterministic directory layout under one run root."""

    root_dir: Path

    @property
    def worktrees_dir(self) -> Path:
        return self.root_dir / "worktrees"

    @property
    def completed_dir(self) -> Path:
        return self.root_dir / "completed"

    @property
    def status_dir(self) -> Path:
        return self.root_dir / "status"

    @property
    def logs_dir(self) -> Path:
        return self.root_dir / "logs"

    @property
    def instructions_dir(self) -> Path:
        return self.root_dir / "instructions"

    @property
    def control_dir(self) -> Path:
        return self.root_dir / "control"

    @property
    def notifications_path(self) -> Path:
        return self.root_dir / "notifications.jsonl"

    @property
    def run_summary_path(self) -> Path:
        return self.status_dir / "run.json"

    def work_area(self, agent_id: str) -> Path:
        return self.worktrees_dir / agent_id

    def completion_marker(self, agent_id: str) -> Path:
        return self.completed_dir / f"{agent_id}_completed.txt"

    def status_file(self, agent_id: str) -> Path:
        return self.status_dir / f"{agent_id}.json"

    def output_log(self, agent_id: str) -> Path:
        return self.logs_dir / f"{agent_id}.log"

    def instructions_file(self, agent_id: str) -> Path:
        return self.instructions_dir / f"{agent_id}.md"

    def control_file(self, agent_id: str) -> Path:
        return self.control_dir / f"{agent_id}.json"

    def control_log(self, agent_id: str) -> Path:
        return self.control_dir / f"{agent_id}.log.jsonl"

    def ensure(self) -> None:
        """Create every shared directory of the layout."""

        for directory in (
            self.worktrees_dir,
            self.completed_dir,
            self.status_dir,
            self.logs_dir,
            self.instructions_dir,
            self.control_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Replace ``path`` with JSON payload so concurrent readers never see a partial file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2, sort_keys=True)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def unlink_if_present(path: Path) -> bool:
    """Delete a file; return False when it was already gone."""

    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
