"""Request queue (core serialization + cancellation).

This package implements per-session-key:
- serialized agent calls (one in flight, the rest FIFO)
- soft cancel (cooperative interrupt) and hard reset (interrupt + abort)
- unconditional cleanup of cancel bookkeeping when a call settles

Providers and the relay talk to it through the types in ``api``.
"""

from src.core.request_queue.api import (
    AbortSignal,
    ActivityPort,
    Interruptible,
    QueueClearedError,
)
from src.core.request_queue.queue import RequestQueue

__all__ = [
    "AbortSignal",
    "ActivityPort",
    "Interruptible",
    "QueueClearedError",
    "RequestQueue",
]
