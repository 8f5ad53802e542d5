"""Session key helpers.

A plain chat uses its chat id as the key ("12345"). A forum thread inside a
chat gets its own key ("12345:42") so each thread runs an independent session.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SessionKeyInfo:
    chat_id: int
    thread_id: int | None = None

    @property
    def session_key(self) -> str:
        return build_session_key(self.chat_id, self.thread_id)


def build_session_key(chat_id: int, thread_id: int | None = None) -> str:
    if thread_id is None:
        return str(chat_id)
    return f"{chat_id}:{thread_id}"


def parse_session_key(key: str) -> SessionKeyInfo:
    chat, sep, thread = key.partition(":")
    if not sep:
        return SessionKeyInfo(chat_id=int(chat))
    return SessionKeyInfo(chat_id=int(chat), thread_id=int(thread))
