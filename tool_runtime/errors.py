"""Structured error types for tool_runtime.

Callers (the agent loop) catch specific error types instead of parsing
transport exceptions:

    from tool_runtime.errors import ToolRateLimitError, ToolTimeoutError

    try:
        result = await episode.invoke("tasks_by_project", {})
    except ToolRateLimitError as exc:
        # Loop guard tripped. The handler was never invoked.
        ...
    except ToolTimeoutError:
        # Deadline elapsed. The pooled connection was dropped.
        ...

Nothing in this package retries on its own; every error below propagates to
the immediate caller.
"""

from __future__ import annotations

from typing import Any

import httpx


class ToolRuntimeError(Exception):
    """Base for all tool_runtime errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class ToolConnectionError(ToolRuntimeError):
    """Spawn/connect failure or an unrecoverable transport failure."""


class ToolProtocolError(ToolRuntimeError):
    """The remote side returned a JSON-RPC error object (or an unparsable reply)."""

    def __init__(
        self,
        message: str,
        *,
        code: int = -1,
        data: Any = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.code = code
        self.data = data


class ToolTimeoutError(ToolRuntimeError, TimeoutError):
    """Deadline elapsed with no matching response."""

    def __init__(self, timeout_s: float, original: Exception | None = None) -> None:
        super().__init__(format_timeout(timeout_s), original=original)
        self.timeout_s = timeout_s


class ToolRateLimitError(ToolRuntimeError):
    """Loop guard triggered: the same tool was called too often in the window."""

    def __init__(
        self,
        tool_name: str,
        call_count: int,
        *,
        window_s: float,
        threshold: int,
    ) -> None:
        super().__init__(
            f"Rate limit exceeded: tool {tool_name!r} called {call_count} times "
            f"in {window_s:g} seconds (max {threshold} calls per {window_s:g}s). "
            "Wait a moment before retrying or reduce the number of calls."
        )
        self.tool_name = tool_name
        self.call_count = call_count
        self.window_s = window_s
        self.threshold = threshold


class ToolValidationError(ToolRuntimeError, ValueError):
    """Arguments or server configuration rejected before dispatch."""

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


def format_timeout(timeout_s: float) -> str:
    """Render a deadline the way every timeout message states it: ``Timeout (10s)``."""
    return f"Timeout ({timeout_s:g}s)"


def wrap_error(error: Exception, *, timeout_s: float | None = None) -> ToolRuntimeError:
    """Wrap a transport exception in the matching ToolRuntimeError subclass.

    ToolRuntimeError instances are returned unchanged.
    """
    if isinstance(error, ToolRuntimeError):
        return error

    if isinstance(error, httpx.TimeoutException):
        return ToolTimeoutError(timeout_s or 0.0, original=error)
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        return ToolConnectionError(
            f"HTTP {response.status_code}: {response.reason_phrase}", original=error,
        )
    if isinstance(error, httpx.TransportError):
        return ToolConnectionError(str(error) or type(error).__name__, original=error)
    if isinstance(error, TimeoutError):
        return ToolTimeoutError(timeout_s or 0.0, original=error)
    if isinstance(error, (OSError, EOFError)):
        return ToolConnectionError(str(error) or type(error).__name__, original=error)
    return ToolRuntimeError(str(error), original=error)
