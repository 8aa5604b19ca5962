"""JSON-RPC 2.0 envelopes for the tool-server protocol.

Pure helpers, no I/O. The only state is the request-id counter, which lives
on a ``JsonRpcCodec`` instance (one per ProtocolClient) so that independently
constructed clients never share or collide on ids.

Stdio framing is newline-delimited JSON: one compact JSON object per line.
"""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass
from typing import Any, Mapping

from tool_runtime.errors import ToolProtocolError

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "tool_runtime"
CLIENT_VERSION = "0.1.0"


@dataclass(frozen=True)
class RpcErrorInfo:
    """The ``error`` member of a JSON-RPC response."""

    code: int
    message: str
    data: Any = None


class JsonRpcCodec:
    """Builds request envelopes with ids from a per-instance counter."""

    def __init__(self, start: int = 1) -> None:
        self._ids = itertools.count(start)

    def next_id(self) -> int:
        return next(self._ids)

    def build_request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        id: int | str | None = None,  # noqa: A002
    ) -> dict[str, Any]:
        """Create a request; ``id`` is auto-assigned when omitted."""
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.next_id() if id is None else id,
            "method": method,
            "params": dict(params or {}),
        }

    def build_initialize_request(self) -> dict[str, Any]:
        """Capability handshake sent once per new connection."""
        return self.build_request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {
                    "roots": {"listChanged": False},
                    "sampling": {},
                },
                "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
            },
        )


def build_notification(method: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Create a notification (no id, no response expected)."""
    envelope: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        envelope["params"] = dict(params)
    return envelope


def is_error(response: Mapping[str, Any] | None) -> bool:
    return isinstance(response, Mapping) and "error" in response


def extract_error(response: Mapping[str, Any] | None) -> RpcErrorInfo | None:
    if not is_error(response):
        return None
    error = response["error"]  # type: ignore[index]
    if not isinstance(error, Mapping):
        return RpcErrorInfo(code=-1, message=str(error) if error else "Unknown error")
    code = error.get("code")
    return RpcErrorInfo(
        code=code if isinstance(code, int) and code != 0 else -1,
        message=str(error.get("message") or "Unknown error"),
        data=error.get("data"),
    )


def extract_result(response: Mapping[str, Any]) -> Any:
    """Return ``result``, or raise ToolProtocolError with the remote error verbatim."""
    info = extract_error(response)
    if info is not None:
        raise ToolProtocolError(
            f"JSON-RPC Error {info.code}: {info.message}",
            code=info.code,
            data=info.data,
        )
    return response.get("result")


def is_response(message: Mapping[str, Any]) -> bool:
    """True for a reply to one of our requests (has an id and no method)."""
    return "id" in message and message.get("id") is not None and "method" not in message


def encode_message(envelope: Mapping[str, Any]) -> bytes:
    return (json.dumps(envelope, separators=(",", ":"), default=str) + "\n").encode("utf-8")


def decode_message(line: bytes | str) -> dict[str, Any]:
    """Parse one framed line. Raises ToolProtocolError on anything but a JSON object."""
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    try:
        message = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolProtocolError(f"Invalid JSON-RPC message: {text[:200]!r}", original=exc) from exc
    if not isinstance(message, dict):
        raise ToolProtocolError(f"JSON-RPC message must be an object: {text[:200]!r}")
    return message
