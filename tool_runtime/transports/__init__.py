"""Tool-server transports keyed by ``ServerIdentity.transport``."""

from tool_runtime.transports.base import Connection, PendingRequest
from tool_runtime.transports.http import HttpConnection
from tool_runtime.transports.stdio import StdioConnection

TRANSPORTS: dict[str, type[Connection]] = {
    "stdio": StdioConnection,
    "http": HttpConnection,
}

__all__ = [
    "Connection",
    "HttpConnection",
    "PendingRequest",
    "StdioConnection",
    "TRANSPORTS",
]
