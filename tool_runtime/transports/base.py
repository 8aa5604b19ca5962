"""Transport-neutral connection contract.

A connection is exclusively owned by the ConnectionPool and shared by every
concurrent call to its server. Subclasses move envelopes; the base class does
the handshake and result extraction.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from tool_runtime.config import DEFAULT_CALL_TIMEOUT_S
from tool_runtime.errors import ToolTimeoutError
from tool_runtime.jsonrpc import JsonRpcCodec, build_notification, extract_result
from tool_runtime.models import ServerIdentity

logger = logging.getLogger(__name__)

ClosedCallback = Callable[["Connection"], None]


@dataclass
class PendingRequest:
    """An in-flight request awaiting the response with the same id."""

    id: int | str
    method: str
    future: asyncio.Future[dict[str, Any]]
    deadline: float


class Connection(ABC):
    """Live channel to one tool server."""

    transport: str = ""

    def __init__(
        self,
        server: ServerIdentity,
        codec: JsonRpcCodec | None = None,
        on_closed: ClosedCallback | None = None,
    ) -> None:
        self.server = server
        self.server_id = server.id
        self.codec = codec or JsonRpcCodec()
        self.on_closed = on_closed
        self.server_info: dict[str, Any] = {}
        self._closed = False

    @property
    def is_alive(self) -> bool:
        return not self._closed

    async def connect(self, timeout: float) -> dict[str, Any]:
        """Open the channel and perform the initialize handshake.

        Returns the server's handshake result. ``timeout`` covers the whole
        handshake; the connection is closed again if it fails.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        await self._open()
        try:
            envelope = self.codec.build_initialize_request()
            result = extract_result(
                await self._exchange(envelope, max(deadline - loop.time(), 0.0)),
            )
            self.server_info = result if isinstance(result, dict) else {}
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ToolTimeoutError(timeout)
            await self.notify("notifications/initialized", timeout=remaining)
        except BaseException:
            await self.close()
            raise
        logger.info(
            "Connected to tool server %s over %s (%s)",
            self.server_id,
            self.transport,
            self.server_info.get("serverInfo", {}).get("name", "unknown"),
        )
        return self.server_info

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None,
        timeout: float,
    ) -> Any:
        """Send one request and return its ``result`` (ToolProtocolError on error)."""
        envelope = self.codec.build_request(method, params)
        return extract_result(await self._exchange(envelope, timeout))

    async def notify(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float = DEFAULT_CALL_TIMEOUT_S,
    ) -> None:
        await self._send_notification(build_notification(method, params), timeout)

    def _mark_closed(self) -> bool:
        """Flip to closed exactly once and fire ``on_closed``. False if already closed."""
        if self._closed:
            return False
        self._closed = True
        if self.on_closed is not None:
            try:
                self.on_closed(self)
            except Exception:
                logger.warning("on_closed callback failed for %s", self.server_id, exc_info=True)
        return True

    @abstractmethod
    async def _open(self) -> None: ...

    @abstractmethod
    async def _exchange(self, envelope: dict[str, Any], timeout: float) -> dict[str, Any]:
        """Send a request envelope and return the raw response envelope."""

    @abstractmethod
    async def _send_notification(self, envelope: dict[str, Any], timeout: float) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    def __repr__(self) -> str:
        state = "alive" if self.is_alive else "closed"
        return f"<{type(self).__name__} {self.server_id} {state}>"
