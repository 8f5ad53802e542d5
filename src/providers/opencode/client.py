"""HTTP client for the OpenCode server."""

from __future__ import annotations

import json
import logging

import aiohttp

from src.providers.opencode.errors import (
    OpenCodeError,
    OpenCodeHTTPError,
    OpenCodeProtocolError,
)

log = logging.getLogger("opencode")


class OpenCodeClient:
    """HTTP transport for OpenCode."""

    def __init__(
        self,
        server_url: str,
        *,
        username: str = "opencode",
        password: str | None = None,
    ):
        self.server_url = server_url.rstrip("/")
        self._auth = aiohttp.BasicAuth(username, password) if password else None

    @property
    def auth(self) -> aiohttp.BasicAuth | None:
        return self._auth

    def _make_url(self, path: str) -> str:
        return f"{self.server_url}{path}"

    async def request_json(
        self, session: aiohttp.ClientSession, method: str, url: str, **kwargs
    ) -> object | None:
        async with session.request(method, url, **kwargs) as resp:
            if resp.status == 204:
                return None
            text = await resp.text()
            if resp.status >= 400:
                detail = text.strip() or resp.reason
                raise OpenCodeHTTPError(resp.status, method=method, url=url, detail=detail)
            if not text:
                return None
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text

    async def check_health(self, session: aiohttp.ClientSession) -> None:
        url = self._make_url("/global/health")
        response = await self.request_json(session, "GET", url)
        if isinstance(response, dict) and response.get("healthy") is True:
            return
        raise OpenCodeError("OpenCode server unhealthy or unreachable")

    async def create_session(
        self, session: aiohttp.ClientSession, title: str | None
    ) -> str:
        payload: dict[str, object] = {}
        if title:
            payload["title"] = title
        url = self._make_url("/session")
        response = await self.request_json(session, "POST", url, json=payload)
        if isinstance(response, dict):
            session_id = response.get("id") or response.get("sessionID")
            if isinstance(session_id, str) and session_id:
                return session_id
        raise OpenCodeProtocolError(
            "session creation returned no id", payload_preview=str(response)[:200]
        )

    async def send_message(
        self,
        session: aiohttp.ClientSession,
        session_id: str,
        prompt: str,
        model_payload: dict | None = None,
        agent: str | None = None,
    ) -> object | None:
        body: dict[str, object] = {"parts": [{"type": "text", "text": prompt}]}
        if model_payload:
            body["model"] = model_payload
        if agent:
            body["agent"] = agent
        url = self._make_url(f"/session/{session_id}/message")
        return await self.request_json(session, "POST", url, json=body)

    async def abort_session(
        self, session: aiohttp.ClientSession, session_id: str
    ) -> None:
        """Ask the server to stop the running message; the session survives."""
        url = self._make_url(f"/session/{session_id}/abort")
        await self.request_json(session, "POST", url)
        log.info(f"Aborted OpenCode session {session_id}")

    async def get_session_messages(
        self, session: aiohttp.ClientSession, session_id: str
    ) -> list[dict]:
        """Return the server's stored message list for a session."""
        url = self._make_url(f"/session/{session_id}/message")
        data = await self.request_json(session, "GET", url)
        if isinstance(data, list):
            return [x for x in data if isinstance(x, dict)]
        return []
