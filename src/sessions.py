"""In-memory session registry.

Maps a session key to its conversation and working directory. The request
queue reports call starts here (``update_activity``); providers record the
remote session id they resumed or created.
"""

from __future__ import annotations

import logging
import os
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

_log = logging.getLogger("sessions")

_HOME_PREFIXES = ("/Users/", "/home/")
_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class Session:
    """Session record."""

    conversation_id: str
    working_directory: str
    provider_session_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    last_message_preview: str = ""


def resolve_working_directory(stored_path: str, home: str | None = None) -> str:
    """Map a stored path onto this machine.

    Paths saved on another OS (e.g. /Users/x/proj saved on macOS, running on
    Linux) are remapped onto the current home; anything else unresolvable
    falls back to the home directory itself.
    """
    home = home or str(Path.home())
    if os.path.exists(stored_path):
        return stored_path

    for prefix in _HOME_PREFIXES:
        if not stored_path.startswith(prefix):
            continue
        rest = stored_path[len(prefix) :]
        _, slash, tail = rest.partition("/")
        remapped = f"{home}/{tail}" if slash else home
        if os.path.exists(remapped):
            return remapped

    return home


def generate_conversation_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"conv_{int(time.time() * 1000)}_{suffix}"


class SessionManager:
    def __init__(self, *, preview_chars: int = 100):
        self._sessions: dict[str, Session] = {}
        self._preview_chars = preview_chars

    def get(self, session_key: str) -> Session | None:
        return self._sessions.get(session_key)

    def create(
        self,
        session_key: str,
        working_directory: str,
        conversation_id: str | None = None,
    ) -> Session:
        session = Session(
            conversation_id=conversation_id or generate_conversation_id(),
            working_directory=resolve_working_directory(working_directory),
        )
        self._sessions[session_key] = session
        _log.info(
            f"Session {session_key} -> {session.conversation_id} "
            f"({session.working_directory})"
        )
        return session

    def update_activity(self, session_key: str, preview: str | None = None) -> None:
        session = self._sessions.get(session_key)
        if not session:
            return
        session.last_activity = datetime.now()
        if preview:
            session.last_message_preview = preview[: self._preview_chars]

    def set_working_directory(self, session_key: str, directory: str) -> Session:
        existing = self._sessions.get(session_key)
        if existing:
            existing.working_directory = directory
            existing.last_activity = datetime.now()
            return existing
        return self.create(session_key, directory)

    def set_provider_session_id(self, session_key: str, session_id: str) -> None:
        session = self._sessions.get(session_key)
        if not session:
            return
        session.provider_session_id = session_id
        session.last_activity = datetime.now()

    def clear(self, session_key: str) -> None:
        self._sessions.pop(session_key, None)

    def __len__(self) -> int:
        return len(self._sessions)
