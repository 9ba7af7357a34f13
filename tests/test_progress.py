from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from agent_swarm.swarm.models import (
    Agent,
    AgentRole,
    AgentStatus,
    LifecycleEvent,
    RunSummary,
    WorkItem,
)
from agent_swarm.swarm.progress import ProgressTracker, load_status
from agent_swarm.swarm.workdir import RunLayout

pytestmark = [
    allure.epic("Swarm Core"),
    allure.feature("Progress"),
]


def _agent(layout, agent_id: str = "qa-1") -> Agent:
    return Agent(
        agent_id=agent_id,
        role=AgentRole.QA,
        work_item=WorkItem(item_id="1", title="Write tests", instructions="Write tests"),
        completion_marker_path=layout.completion_marker(agent_id),
    )


def test_events_fold_into_entries_and_files(layout) -> None:
    tracker = ProgressTracker(layout)
    tracker.register(_agent(layout))

    tracker.apply(LifecycleEvent.started("qa-1"))
    tracker.apply(LifecycleEvent.progress("qa-1", 40))
    entry = tracker.apply(LifecycleEvent.failed("qa-1", "exit code 2"))

    assert entry.status == AgentStatus.FAILED
    assert entry.percent == 40
    assert entry.message == "exit code 2"
    assert entry.role == "qa"
    payload = json.loads(layout.status_file("qa-1").read_text("utf-8"))
    assert payload["status"] == "failed"
    assert payload["percent"] == 40
    assert [path.name for path in layout.status_dir.iterdir()] == ["qa-1.json"]


def test_snapshot_is_an_immutable_copy(layout) -> None:
    tracker = ProgressTracker(layout, persist=False)
    tracker.update("qa-1", percent=10)

    snapshot = tracker.snapshot()
    tracker.update("qa-1", percent=90)

    assert snapshot["qa-1"].percent == 10
    with pytest.raises(TypeError):
        snapshot["qa-2"] = snapshot["qa-1"]  # type: ignore[index]
    assert not layout.status_file("qa-1").exists()


def test_update_clamps_percent(layout) -> None:
    tracker = ProgressTracker(layout, persist=False)
    assert tracker.update("qa-1", percent=250).percent == 100
    assert tracker.update("qa-1", percent=-3).percent == 0


def test_load_status_reads_agents_and_run_summary(layout) -> None:
    tracker = ProgressTracker(layout)
    agent = _agent(layout)
    tracker.register(agent)
    tracker.register(_agent(layout, "qa-2"))
    tracker.write_run_summary(RunSummary(agents=[agent]))

    view = load_status(layout)

    assert [entry["agent_id"] for entry in view.agents] == ["qa-1", "qa-2"]
    assert view.run is not None
    assert view.run["exit_code"] == 0
    assert "written_at" in view.run


def test_load_status_skips_corrupt_files(layout) -> None:
    ProgressTracker(layout).register(_agent(layout))
    layout.status_file("broken").write_text("{not json", "utf-8")

    view = load_status(layout)

    assert [entry["agent_id"] for entry in view.agents] == ["qa-1"]


def test_load_status_without_run_root(tmp_path: Path) -> None:
    view = load_status(RunLayout(tmp_path / "missing"))
    assert view.agents == []
    assert view.run is None
