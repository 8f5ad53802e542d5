"""Ports (interfaces) for agent providers.

The relay depends on these contracts rather than concrete provider clients.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

from src.core.request_queue import AbortSignal

ProgressCallback = Callable[[str], Awaitable[None] | None]


@dataclass(frozen=True)
class AgentUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    total_cost_usd: float = 0.0
    num_turns: int = 0
    model: str = "unknown"

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
        )


@dataclass
class AgentResponse:
    text: str
    tools_used: list[str] = field(default_factory=list)
    usage: AgentUsage | None = None
    cancelled: bool = False


class Provider(Protocol):
    """An agent backend reachable by session key."""

    name: str

    async def send_to_agent(
        self,
        session_key: str,
        message: str,
        *,
        signal: AbortSignal | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResponse: ...

    def clear_conversation(self, session_key: str) -> None: ...

    def get_cached_usage(self, session_key: str) -> AgentUsage | None: ...
