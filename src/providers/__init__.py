"""Agent providers."""

from src.providers.opencode import OpenCodeClient, OpenCodeProvider
from src.providers.ports import AgentResponse, AgentUsage, Provider

__all__ = [
    "AgentResponse",
    "AgentUsage",
    "OpenCodeClient",
    "OpenCodeProvider",
    "Provider",
]
