from __future__ import annotations

import allure
import pytest

from agent_swarm.swarm.models import EventKind
from agent_swarm.swarm.streaming import OutputStreamer

pytestmark = [
    allure.epic("Swarm Core"),
    allure.feature("Output Streaming"),
]


def _append(path, text: str) -> None:
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text)


def test_ring_buffer_keeps_only_newest_lines(tmp_path) -> None:
    log_path = tmp_path / "agent.log"
    log_path.write_text("".join(f"line {index}\n" for index in range(10)), "utf-8")
    streamer = OutputStreamer(buffer_lines=3)
    streamer.register("generic-1", log_path)

    streamer.poll()

    assert streamer.lines("generic-1") == ["line 7", "line 8", "line 9"]


def test_partial_line_waits_for_newline_until_flush(tmp_path) -> None:
    log_path = tmp_path / "agent.log"
    log_path.write_text("first\nsecond half", "utf-8")
    streamer = OutputStreamer()
    streamer.register("generic-1", log_path)

    streamer.poll()
    assert streamer.lines("generic-1") == ["first"]

    _append(log_path, " done\nthird")
    streamer.poll()
    assert streamer.lines("generic-1") == ["first", "second half done"]

    streamer.flush("generic-1")
    assert streamer.lines("generic-1")[-1] == "third"


def test_progress_events_only_when_percent_changes(tmp_path) -> None:
    log_path = tmp_path / "agent.log"
    log_path.write_text("[progress] 10\n[progress] 10\nnoise\n[PROGRESS] 250\n", "utf-8")
    streamer = OutputStreamer()
    streamer.register("generic-1", log_path)

    events = streamer.poll()

    assert [(event.kind, event.percent) for event in events] == [
        (EventKind.PROGRESS, 10),
        (EventKind.PROGRESS, 100),
    ]
    assert streamer.poll() == []


def test_multibyte_characters_split_across_reads(tmp_path) -> None:
    log_path = tmp_path / "agent.log"
    encoded = "héllo\n".encode()
    log_path.write_bytes(encoded[:2])
    streamer = OutputStreamer()
    streamer.register("generic-1", log_path)

    streamer.poll()
    with log_path.open("ab") as handle:
        handle.write(encoded[2:])
    streamer.poll()

    assert streamer.lines("generic-1") == ["héllo"]


def test_forwarder_errors_do_not_stop_tailing(tmp_path) -> None:
    log_path = tmp_path / "agent.log"
    log_path.write_text("a\nb\n", "utf-8")
    seen = []

    def _forward(agent_id: str, line: str) -> None:
        seen.append((agent_id, line))
        raise RuntimeError("terminal closed")

    streamer = OutputStreamer(on_line=_forward)
    streamer.register("generic-1", log_path)
    streamer.poll()

    assert seen == [("generic-1", "a"), ("generic-1", "b")]
    assert streamer.lines("generic-1") == ["a", "b"]


def test_missing_log_and_unknown_agent(tmp_path) -> None:
    streamer = OutputStreamer()
    streamer.register("generic-1", tmp_path / "not-yet.log")

    assert streamer.poll() == []
    assert streamer.flush("unknown") == []
    assert streamer.lines("unknown") == []
    assert streamer.snapshot() == {"generic-1": []}


def test_buffer_size_must_be_positive() -> None:
    with pytest.raises(ValueError, match="buffer_lines"):
        OutputStreamer(buffer_lines=0)
