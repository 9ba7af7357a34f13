"""Multi-agent orchestration core: spawn, monitor, retry, and clean up CLI agents."""

__version__ = "0.4.0"
