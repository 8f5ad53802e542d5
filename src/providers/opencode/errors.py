"""Failures raised while relaying a message to an OpenCode server.

Everything derives from ``OpenCodeError`` so the CLI can print one line per
failure. ``OpenCodeRunError`` carries the server's error name, which is how a
remote abort shows up after ``/session/{id}/abort``.
"""

from __future__ import annotations

ABORTED_ERROR_NAME = "MessageAbortedError"


def _with_detail(head: str, detail: str | None) -> str:
    detail = (detail or "").strip()
    return f"{head}: {detail}" if detail else head


class OpenCodeError(RuntimeError):
    """Base class for relay-side OpenCode failures."""


class OpenCodeHTTPError(OpenCodeError):
    """Non-2xx reply; ``detail`` holds the response body when there is one."""

    def __init__(
        self,
        status: int,
        *,
        method: str,
        url: str,
        detail: str | None = None,
    ):
        self.status = int(status)
        self.method = method
        self.url = url
        self.detail = detail
        super().__init__(
            _with_detail(f"OpenCode HTTP {self.status} {method} {url}", detail)
        )


class OpenCodeProtocolError(OpenCodeError):
    """Reply that is not the JSON shape the relay expects."""

    def __init__(self, message: str, *, payload_preview: str | None = None):
        self.message = message
        self.payload_preview = payload_preview
        text = f"OpenCode protocol error: {message}"
        if payload_preview:
            text += f" (payload={payload_preview!r})"
        super().__init__(text)


class OpenCodeRunError(OpenCodeError):
    """The server finished the message with ``info.error`` set."""

    def __init__(self, name: str, message: str | None = None):
        self.name = name
        self.message = message
        super().__init__(_with_detail(f"OpenCode error: {name}", message))

    @property
    def aborted(self) -> bool:
        return self.name == ABORTED_ERROR_NAME
