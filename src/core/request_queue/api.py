"""Public API for the request queue.

This module is the stable boundary between:
- providers/relay code that submits work and registers cancel handles
- the concrete queue implementation (queue.py)

Code outside the queue should depend on these types/protocols, not on
RequestQueue internals.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

log = logging.getLogger("queue")


class QueueClearedError(RuntimeError):
    """Raised into every waiting call discarded by ``clear_queue``."""

    def __init__(self, session_key: str):
        self.session_key = session_key
        super().__init__("Queue cleared")


class Interruptible(Protocol):
    """Cooperative handle for a resumable remote run.

    ``interrupt()`` asks the remote side to stop without destroying its state,
    so the same remote session can take the next prompt.
    """

    async def interrupt(self) -> None: ...


class ActivityPort(Protocol):
    def update_activity(self, session_key: str, preview: str | None = None) -> None: ...


class AbortSignal:
    """One-shot, non-resumable abort token.

    Callbacks registered with ``add_callback`` run once, synchronously, when
    ``abort()`` is first called. A callback added after the abort runs
    immediately.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], object]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], object]) -> None:
        if self.aborted:
            self._run_callback(callback)
            return
        self._callbacks.append(callback)

    def abort(self) -> None:
        if self.aborted:
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)

    async def wait(self) -> None:
        await self._event.wait()

    def _run_callback(self, callback: Callable[[], object]) -> None:
        try:
            callback()
        except Exception as e:
            log.warning(f"Abort callback failed: {type(e).__name__}: {e}")
