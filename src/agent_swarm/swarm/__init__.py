"""Swarm orchestration core for file-signalled CLI agents.

Why poll instead of an event loop?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Agents are opaque external processes (claude, codex, gemini, or a local
script) that report completion by writing a marker file into the run root.
A single supervisory loop that checks ``Popen.poll()`` and the marker
directory once per tick is enough to drive every state transition, and it
keeps shutdown latency bounded by one poll interval.
"""
