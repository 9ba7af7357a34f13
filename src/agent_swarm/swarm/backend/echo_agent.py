"""Local demo agent for runner integration tests and smoke runs.

Behaviour comes from the command line, and a line of the form
``echo-agent: sleep=2 exit=1 marker=no progress=4`` in the instructions
file overrides it per work item.
"""

from __future__ import annotations

import argparse
import os
import re
import sys
import time
from pathlib import Path

_DIRECTIVE = re.compile(r"^echo-agent:(?P<options>.*)$", re.MULTILINE)


def main(argv: list[str] | None = None) -> int:
    """Simulate an agent: report progress, optionally write the marker, exit."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--instructions-file", default=None)
    parser.add_argument("--marker", default=os.getenv("AGENT_SWARM_COMPLETION_MARKER"))
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--progress", type=int, default=2, help="Progress lines to print.")
    parser.add_argument("--no-marker", action="store_true")
    args = parser.parse_args(argv)

    agent_id = os.getenv("AGENT_SWARM_AGENT_ID", "echo")
    if args.instructions_file:
        text = Path(args.instructions_file).read_text("utf-8")
        first_line = text.strip().splitlines()[0] if text.strip() else ""
        print(f"{agent_id}: {first_line}", flush=True)
        _apply_directive(args, text)

    steps = max(1, args.progress)
    for step in range(1, steps + 1):
        if args.sleep:
            time.sleep(args.sleep / steps)
        print(f"[progress] {step * 100 // steps}", flush=True)

    if args.marker and not args.no_marker:
        marker = Path(args.marker)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(f"{agent_id} done\n", "utf-8")
    return args.exit_code


def _apply_directive(args: argparse.Namespace, text: str) -> None:
    match = _DIRECTIVE.search(text)
    if match is None:
        return
    for token in match.group("options").split():
        key, _, value = token.partition("=")
        if key == "sleep":
            args.sleep = float(value)
        elif key == "exit":
            args.exit_code = int(value)
        elif key == "progress":
            args.progress = int(value)
        elif key == "marker":
            args.no_marker = value.lower() in {"no", "false", "0"}


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
