"""Agent runner implementations."""

from agent_swarm.swarm.backend.base import AgentProcess, AgentRunner, AgentSpawnRequest
from agent_swarm.swarm.backend.cli_backend import CliAgentRunner, build_agent_instructions

__all__ = [
    "AgentProcess",
    "AgentRunner",
    "AgentSpawnRequest",
    "CliAgentRunner",
    "build_agent_instructions",
]
