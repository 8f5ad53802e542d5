"""RequestQueue.

This is the single place that owns, per session key:
- serialization (FIFO of pending calls + one in-flight slot)
- cancellation bookkeeping (interrupt handle, abort signal, cancelled flag)

All bookkeeping is synchronous, so it is atomic with respect to other queue
operations on the same event loop. The only suspension points are inside the
submitted operation and inside ``Interruptible.interrupt()``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from src.core.request_queue.api import (
    AbortSignal,
    ActivityPort,
    Interruptible,
    QueueClearedError,
)

log = logging.getLogger("queue")

T = TypeVar("T")


@dataclass(frozen=True)
class _QueuedCall:
    payload: str
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class _SessionState:
    queue: deque[_QueuedCall] = field(default_factory=deque)
    processing: bool = False
    interrupt: Interruptible | None = None
    signal: AbortSignal | None = None
    cancelled: bool = False
    task: asyncio.Task | None = None


class RequestQueue:
    """Per-session serialized execution of agent calls.

    Calls for one session key start strictly in submission order and never
    overlap. Different keys are fully independent.
    """

    def __init__(self, *, activity: ActivityPort | None = None):
        self._states: dict[str, _SessionState] = {}
        self._activity = activity
        self.shutting_down = False

    def _state(self, session_key: str) -> _SessionState:
        state = self._states.get(session_key)
        if state is None:
            state = _SessionState()
            self._states[session_key] = state
        return state

    # -----------------
    # Execution
    # -----------------

    def submit(
        self,
        session_key: str,
        payload: str,
        operation: Callable[[], Awaitable[T]],
    ) -> asyncio.Future[T]:
        """Queue ``operation`` for ``session_key``.

        Returns a future that settles with the operation's result or error, or
        with ``QueueClearedError`` if the call is discarded before it starts.
        """
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        if self.shutting_down:
            future.set_exception(RuntimeError("Request queue is shut down"))
            return future

        state = self._state(session_key)
        state.queue.append(
            _QueuedCall(payload=payload, operation=operation, future=future)
        )
        if state.processing:
            position = self.get_queue_position(session_key)
            log.debug(f"Queued call for {session_key} (position {position})")
        self._drain(session_key, state)
        return future

    def _drain(self, session_key: str, state: _SessionState) -> None:
        if state.processing:
            return
        call = self._next_call(state)
        if call is None:
            return
        state.processing = True
        state.task = asyncio.create_task(
            self._worker(session_key, state, call), name=f"queue:{session_key}"
        )

    @staticmethod
    def _next_call(state: _SessionState) -> _QueuedCall | None:
        # Callers that stopped waiting (cancelled future) are skipped.
        while state.queue:
            call = state.queue.popleft()
            if call.future.cancelled():
                continue
            return call
        return None

    async def _worker(
        self, session_key: str, state: _SessionState, call: _QueuedCall | None
    ) -> None:
        try:
            while call is not None:
                waited = time.monotonic() - call.enqueued_at
                log.debug(f"Starting call for {session_key} after {waited:.3f}s in queue")
                self._mark_activity(session_key, call.payload)
                try:
                    await self._run_call(call)
                finally:
                    self._clear_cancel_state(state)
                call = None if self.shutting_down else self._next_call(state)
        finally:
            state.processing = False
            state.task = None

    async def _run_call(self, call: _QueuedCall) -> None:
        try:
            result = await call.operation()
        except asyncio.CancelledError:
            if not call.future.done():
                call.future.cancel()
            if self.shutting_down:
                raise
        except Exception as e:
            if not call.future.done():
                call.future.set_exception(e)
        else:
            if not call.future.done():
                call.future.set_result(result)

    def _mark_activity(self, session_key: str, payload: str) -> None:
        if self._activity is None:
            return
        try:
            self._activity.update_activity(session_key, payload)
        except Exception as e:
            log.warning(f"Failed to mark activity for {session_key}: {e}")

    @staticmethod
    def _clear_cancel_state(state: _SessionState) -> None:
        state.interrupt = None
        state.signal = None
        state.cancelled = False

    def get_queue_position(self, session_key: str) -> int:
        """Number of calls waiting behind the in-flight one."""
        state = self._states.get(session_key)
        if state is None:
            return 0
        return sum(1 for call in state.queue if not call.future.cancelled())

    def is_processing(self, session_key: str) -> bool:
        state = self._states.get(session_key)
        return bool(state and state.processing)

    def clear_queue(self, session_key: str) -> int:
        """Reject every waiting call; the in-flight call is left alone."""
        state = self._states.get(session_key)
        if state is None:
            return 0

        count = 0
        while state.queue:
            call = state.queue.popleft()
            if not call.future.done():
                call.future.set_exception(QueueClearedError(session_key))
                count += 1
        if count:
            log.info(f"Cleared {count} queued call(s) for {session_key}")
        return count

    def shutdown(self) -> None:
        if self.shutting_down:
            return
        self.shutting_down = True
        for session_key, state in self._states.items():
            self.clear_queue(session_key)
            if state.signal is not None:
                state.signal.abort()
            task = state.task
            if task and not task.done():
                task.cancel()

    # -----------------
    # Cancellation registry
    # -----------------

    def register_interrupt(self, session_key: str, handle: Interruptible) -> bool:
        state = self._states.get(session_key)
        if state is None or not state.processing:
            log.warning(f"Ignoring interrupt handle for idle session {session_key}")
            return False
        state.interrupt = handle
        return True

    def register_signal(self, session_key: str, signal: AbortSignal) -> bool:
        state = self._states.get(session_key)
        if state is None or not state.processing:
            log.warning(f"Ignoring abort signal for idle session {session_key}")
            return False
        state.signal = signal
        return True

    def is_cancelled(self, session_key: str) -> bool:
        state = self._states.get(session_key)
        return bool(state and state.cancelled)

    def clear_cancelled(self, session_key: str) -> None:
        state = self._states.get(session_key)
        if state is not None:
            state.cancelled = False

    async def cancel_request(self, session_key: str) -> bool:
        """Soft cancel: ask the in-flight call to wind down.

        Prefers the cooperative interrupt so a resumable remote session stays
        usable; fires the abort signal only when no interrupt handle exists.
        """
        state = self._states.get(session_key)
        if state is None:
            return False

        handle = state.interrupt
        if handle is not None:
            # Flag first: the call's own error handling checks it once the
            # interrupted run comes back.
            state.cancelled = True
            await self._interrupt(session_key, handle, reason="cancel")
            if state.interrupt is handle:
                state.interrupt = None
            return True

        signal = state.signal
        if signal is not None:
            state.cancelled = True
            signal.abort()
            state.signal = None
            return True

        return False

    async def reset_request(self, session_key: str) -> bool:
        """Hard reset: interrupt and also fire the abort signal."""
        state = self._states.get(session_key)
        if state is None:
            return False

        handle = state.interrupt
        signal = state.signal
        if handle is None and signal is None:
            return False

        state.cancelled = True
        if handle is not None:
            await self._interrupt(session_key, handle, reason="reset")
            if state.interrupt is handle:
                state.interrupt = None
        if signal is not None:
            signal.abort()
            if state.signal is signal:
                state.signal = None
        return True

    async def _interrupt(
        self, session_key: str, handle: Interruptible, *, reason: str
    ) -> None:
        try:
            await handle.interrupt()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.debug(
                f"[{reason}] interrupt() failed for {session_key}: "
                f"{type(e).__name__}: {e}"
            )
