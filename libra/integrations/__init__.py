"""Metadata provider agents and the fan-out layer for Libra."""

from .agent import Agent
from .agents_manager import AgentsManager
from .contracts import (AgentCapability, AgentError, AgentFanoutResponse,
                        AgentNotFoundError, AgentResult, AgentSchemas)

__all__ = [
    "Agent",
    "AgentCapability",
    "AgentError",
    "AgentFanoutResponse",
    "AgentNotFoundError",
    "AgentResult",
    "AgentSchemas",
    "AgentsManager",
]
