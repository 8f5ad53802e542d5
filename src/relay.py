"""Agent relay.

Glue between a chat front-end and an agent provider: every message goes
through the request queue so each session runs one agent call at a time, and
the cancel/reset commands map onto the queue's two cancellation semantics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.core.request_queue import AbortSignal, RequestQueue
from src.providers.ports import AgentResponse, ProgressCallback, Provider
from src.sessions import SessionManager

log = logging.getLogger("relay")

CANCELLED_TEXT = "Request cancelled."


@dataclass(frozen=True)
class CancelOutcome:
    cleared: int
    interrupted: bool

    @property
    def any(self) -> bool:
        return self.interrupted or self.cleared > 0

    def describe(self) -> str:
        if not self.any:
            return "Nothing to cancel."
        parts: list[str] = []
        if self.interrupted:
            parts.append("stopped the running request")
        if self.cleared:
            parts.append(f"dropped {self.cleared} queued message(s)")
        text = " and ".join(parts)
        return text[0].upper() + text[1:] + "."


@dataclass(frozen=True)
class SessionStatus:
    processing: bool
    queued: int


class AgentRelay:
    def __init__(
        self,
        queue: RequestQueue,
        provider: Provider,
        sessions: SessionManager,
        *,
        working_dir: str,
    ):
        self.queue = queue
        self.provider = provider
        self.sessions = sessions
        self.working_dir = working_dir

    async def send(
        self,
        session_key: str,
        message: str,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResponse:
        """Run ``message`` through the provider once the session is free."""
        if self.sessions.get(session_key) is None:
            self.sessions.create(session_key, self.working_dir)

        position = self.queue.get_queue_position(session_key)
        if self.queue.is_processing(session_key):
            log.info(f"[{session_key}] queued behind {position} waiting call(s)")

        async def _call() -> AgentResponse:
            return await self._call_provider(session_key, message, on_progress)

        return await self.queue.submit(session_key, message, _call)

    async def _call_provider(
        self,
        session_key: str,
        message: str,
        on_progress: ProgressCallback | None,
    ) -> AgentResponse:
        signal = AbortSignal()
        self.queue.register_signal(session_key, signal)
        try:
            return await self.provider.send_to_agent(
                session_key, message, signal=signal, on_progress=on_progress
            )
        except Exception as e:
            if not self.queue.is_cancelled(session_key):
                raise
            log.info(f"[{session_key}] stopped by user ({type(e).__name__}: {e})")
            self.queue.clear_cancelled(session_key)
            return AgentResponse(text=CANCELLED_TEXT, cancelled=True)

    async def cancel(self, session_key: str) -> CancelOutcome:
        """Drop queued messages and ask the running one to stop."""
        cleared = self.queue.clear_queue(session_key)
        interrupted = await self.queue.cancel_request(session_key)
        outcome = CancelOutcome(cleared=cleared, interrupted=interrupted)
        log.info(f"[{session_key}] cancel: {outcome.describe()}")
        return outcome

    async def reset(self, session_key: str) -> CancelOutcome:
        """Tear down the running call and forget the conversation."""
        cleared = self.queue.clear_queue(session_key)
        interrupted = await self.queue.reset_request(session_key)
        self.provider.clear_conversation(session_key)
        self.sessions.clear(session_key)
        outcome = CancelOutcome(cleared=cleared, interrupted=interrupted)
        log.info(f"[{session_key}] reset: {outcome.describe()}")
        return outcome

    def status(self, session_key: str) -> SessionStatus:
        return SessionStatus(
            processing=self.queue.is_processing(session_key),
            queued=self.queue.get_queue_position(session_key),
        )
