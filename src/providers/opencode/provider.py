"""OpenCode provider.

One remote OpenCode session per relay session key. While a message is in
flight the provider registers two cancel paths with the request queue:

- a cooperative interrupt that POSTs ``/session/{id}/abort`` (the remote
  session stays resumable)
- the caller's abort signal, which cancels the whole exchange; once it
  fires the caches are left alone
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass

import aiohttp

from src.bounded_map import BoundedMap
from src.core.request_queue import AbortSignal, RequestQueue
from src.providers.opencode.client import OpenCodeClient
from src.providers.opencode.errors import OpenCodeProtocolError, OpenCodeRunError
from src.providers.ports import AgentResponse, AgentUsage, ProgressCallback
from src.sessions import SessionManager

log = logging.getLogger("opencode")

CANCELLED_TEXT = "Request cancelled."
EMPTY_TEXT = "No response from OpenCode."


@dataclass
class _RunState:
    session_id: str | None = None


def _aborted(signal: AbortSignal | None) -> bool:
    return signal is not None and signal.aborted


class _SessionInterrupt:
    """Cooperative interrupt for one remote OpenCode session."""

    def __init__(
        self, client: OpenCodeClient, http: aiohttp.ClientSession, session_id: str
    ):
        self._client = client
        self._http = http
        self.session_id = session_id

    async def interrupt(self) -> None:
        if self._http.closed:
            raise RuntimeError(f"HTTP session closed before aborting {self.session_id}")
        await self._client.abort_session(self._http, self.session_id)


def build_model_payload(model: str | None) -> dict | None:
    """Split "provider/model" into OpenCode's model selector.

    A bare model id is treated as an Anthropic model.
    """
    if not model:
        return None
    provider_id, slash, model_id = model.partition("/")
    if slash and provider_id and model_id:
        return {"providerID": provider_id, "modelID": model_id}
    return {"providerID": "anthropic", "modelID": model}


def build_http_timeout(total_s: float) -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(total=float(total_s))


class OpenCodeProvider:
    name = "opencode"

    def __init__(
        self,
        client: OpenCodeClient,
        queue: RequestQueue,
        *,
        sessions: SessionManager | None = None,
        model: str | None = None,
        agent: str | None = None,
        cache_size: int = 1000,
        http_timeout_s: float = 600.0,
    ):
        self._client = client
        self._queue = queue
        self._sessions = sessions
        self.model = model
        self.agent = agent
        self._http_timeout_s = http_timeout_s

        # Bounded: a long-running relay sees many chats and never tears them down.
        self._session_ids: BoundedMap[str, str] = BoundedMap(cache_size)
        self._usage: BoundedMap[str, AgentUsage] = BoundedMap(cache_size)

    def clear_conversation(self, session_key: str) -> None:
        self._session_ids.delete(session_key)
        self._usage.delete(session_key)

    def get_cached_usage(self, session_key: str) -> AgentUsage | None:
        return self._usage.get(session_key)

    def get_remote_session_id(self, session_key: str) -> str | None:
        return self._session_ids.get(session_key)

    async def send_to_agent(
        self,
        session_key: str,
        message: str,
        *,
        signal: AbortSignal | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResponse:
        if signal is not None and signal.aborted:
            return AgentResponse(text=CANCELLED_TEXT, cancelled=True)

        log.info(f"OpenCode [{session_key}]: {message[:50]}...")
        async with aiohttp.ClientSession(
            auth=self._client.auth,
            timeout=build_http_timeout(self._http_timeout_s),
        ) as http:
            state = _RunState()
            # The signal cancels the whole exchange, not just the message request,
            # so nothing past this point can touch the caches after a reset.
            run_task = asyncio.create_task(
                self._run(http, session_key, message, state, signal, on_progress)
            )
            if signal is not None:
                signal.add_callback(run_task.cancel)

            try:
                response = await run_task
            except asyncio.CancelledError:
                if signal is None or not signal.aborted:
                    raise
                if state.session_id:
                    await self._abort_after_signal(http, state.session_id)
                return AgentResponse(text=CANCELLED_TEXT, cancelled=True)

        if signal is not None and signal.aborted:
            return AgentResponse(text=CANCELLED_TEXT, cancelled=True)
        return response

    async def _run(
        self,
        http: aiohttp.ClientSession,
        session_key: str,
        message: str,
        state: _RunState,
        signal: AbortSignal | None,
        on_progress: ProgressCallback | None,
    ) -> AgentResponse:
        session_id = await self._ensure_session(http, session_key)
        state.session_id = session_id
        self._queue.register_interrupt(
            session_key, _SessionInterrupt(self._client, http, session_id)
        )

        response = await self._client.send_message(
            http,
            session_id,
            message,
            build_model_payload(self.model),
            self.agent,
        )
        text, tools = self._parse_message(response)
        if text and on_progress is not None and not _aborted(signal):
            result = on_progress(text)
            if inspect.isawaitable(result):
                await result

        usage = await self._fetch_usage(http, session_id, response)
        if usage is not None and not _aborted(signal):
            self._usage[session_key] = usage
        return AgentResponse(text=text or EMPTY_TEXT, tools_used=tools, usage=usage)

    async def _ensure_session(
        self, http: aiohttp.ClientSession, session_key: str
    ) -> str:
        session_id = self._session_ids.get(session_key)
        if session_id:
            return session_id

        record = self._sessions.get(session_key) if self._sessions else None
        if record and record.provider_session_id:
            session_id = record.provider_session_id
        else:
            await self._client.check_health(http)
            session_id = await self._client.create_session(http, f"relay {session_key}")
            log.info(f"Created OpenCode session {session_id} for {session_key}")
            if self._sessions:
                self._sessions.set_provider_session_id(session_key, session_id)

        self._session_ids[session_key] = session_id
        return session_id

    async def _abort_after_signal(
        self, http: aiohttp.ClientSession, session_id: str
    ) -> None:
        # The HTTP request is gone but the server may still be generating.
        try:
            await self._client.abort_session(http, session_id)
        except Exception as e:
            log.debug(f"Abort after signal failed for {session_id}: {e}")

    def _parse_message(self, response: object) -> tuple[str, list[str]]:
        if not isinstance(response, dict):
            raise OpenCodeProtocolError(
                "message response is not an object",
                payload_preview=str(response)[:200],
            )

        info = response.get("info")
        if isinstance(info, dict) and isinstance(info.get("error"), dict):
            err = info["error"]
            data = err.get("data") if isinstance(err.get("data"), dict) else {}
            error = OpenCodeRunError(
                str(err.get("name") or "UnknownError"),
                data.get("message") if isinstance(data.get("message"), str) else None,
            )
            if error.aborted:
                log.info("OpenCode reported the message as aborted")
            raise error

        text_parts: list[str] = []
        tools: list[str] = []
        parts = response.get("parts")
        for part in parts if isinstance(parts, list) else []:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text" and isinstance(part.get("text"), str):
                text_parts.append(part["text"])
            elif part.get("type") == "tool":
                tool = part.get("tool")
                if isinstance(tool, str) and tool not in tools:
                    tools.append(tool)
        return "".join(text_parts), tools

    async def _fetch_usage(
        self, http: aiohttp.ClientSession, session_id: str, response: dict
    ) -> AgentUsage | None:
        """Best-effort usage snapshot for the last assistant message."""
        info = response.get("info")
        if not isinstance(info, dict) or not isinstance(info.get("tokens"), dict):
            return None

        num_turns = 1
        try:
            messages = await self._client.get_session_messages(http, session_id)
            assistants = [
                m
                for m in messages
                if isinstance(m.get("info"), dict) and m["info"].get("role") == "assistant"
            ]
            num_turns = max(1, len(assistants))
        except Exception as e:
            log.debug(f"Failed to count turns for {session_id}: {e}")

        tokens = info["tokens"]
        cache = tokens.get("cache") if isinstance(tokens.get("cache"), dict) else {}
        return AgentUsage(
            input_tokens=_as_int(tokens.get("input")),
            output_tokens=_as_int(tokens.get("output")),
            cache_read_tokens=_as_int(cache.get("read")),
            cache_write_tokens=_as_int(cache.get("write")),
            total_cost_usd=float(info.get("cost") or 0.0),
            num_turns=num_turns,
            model=str(info.get("modelID") or self.model or "unknown"),
        )


def _as_int(value: object) -> int:
    return int(value) if isinstance(value, (int, float)) else 0
