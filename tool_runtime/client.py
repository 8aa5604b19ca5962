"""Protocol client: the single entry point for talking to third-party tool servers.

Connections are created lazily on first use, pooled per server id, and shared
by concurrent calls. Concurrent first calls to the same server wait on one
in-flight connect rather than spawning the server twice.

Usage:
    client = ProtocolClient(RuntimeConfig())
    result = await client.call_tool(server, "search", {"q": "x"})
    tools = await client.list_tools(server)
    await client.aclose()

Failure policy:
    ToolConnectionError / ToolTimeoutError  -> pooled connection dropped and closed
    ToolProtocolError                      -> connection kept (remote said "no")
Nothing is retried here.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import httpx

from tool_runtime.config import RuntimeConfig
from tool_runtime.errors import ToolConnectionError, ToolTimeoutError, ToolValidationError
from tool_runtime.jsonrpc import JsonRpcCodec
from tool_runtime.models import ServerIdentity
from tool_runtime.pool import ConnectionPool, close_quietly
from tool_runtime.transports import TRANSPORTS, Connection

logger = logging.getLogger(__name__)


class ProtocolClient:
    """Transport-agnostic façade over the connection pool."""

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        pool: ConnectionPool | None = None,
        codec: JsonRpcCodec | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.pool = pool or ConnectionPool(
            idle_timeout_s=self.config.pool_idle_timeout_s,
            sweep_interval_s=self.config.pool_sweep_interval_s,
        )
        self.codec = codec or JsonRpcCodec()
        self._http_transport = http_transport
        self._connecting: dict[str, asyncio.Task[Connection]] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def call_tool(
        self,
        server: ServerIdentity | None,
        tool_name: str,
        args: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke ``tool_name`` on ``server`` via ``tools/call``.

        ``timeout`` bounds the whole call, including a first-use connect.
        """
        return await self._request(
            server,
            "tools/call",
            {"name": tool_name, "arguments": dict(args or {})},
            self.config.call_timeout_s if timeout is None else timeout,
        )

    async def list_tools(
        self, server: ServerIdentity | None, timeout: float | None = None,
    ) -> dict[str, Any]:
        result = await self._request(
            server, "tools/list", {},
            self.config.check_timeout_s if timeout is None else timeout,
        )
        return _tool_listing(result)

    async def initialize(
        self, server: ServerIdentity | None, timeout: float | None = None,
    ) -> dict[str, Any]:
        """Ensure a handshaken connection; return its server info plus the tool list."""
        timeout = self.config.call_timeout_s if timeout is None else timeout
        server = _validate(server)
        connection, result = await self._with_failure_policy(server, ("tools/list", {}), timeout)
        return {**connection.server_info, "tools": _tool_listing(result)["tools"]}

    async def test_connection(
        self, server: ServerIdentity | None, timeout: float | None = None,
    ) -> dict[str, Any]:
        """Connectivity check: handshake plus tool listing on the short deadline."""
        timeout = self.config.check_timeout_s if timeout is None else timeout
        info = await self.initialize(server, timeout)
        tools = info.pop("tools")
        return {"success": True, "serverInfo": info, "tools": tools}

    async def close_connection(self, server: ServerIdentity | str) -> bool:
        """Drop and close the pooled connection (server edited or deleted)."""
        server_id = server if isinstance(server, str) else server.id
        return await self.pool.remove(server_id)

    async def aclose(self) -> None:
        for task in list(self._connecting.values()):
            task.cancel()
        await self.pool.clear()

    async def __aenter__(self) -> "ProtocolClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def _request(
        self,
        server: ServerIdentity | None,
        method: str,
        params: dict[str, Any],
        timeout: float,
    ) -> Any:
        server = _validate(server)
        _, result = await self._with_failure_policy(server, (method, params), timeout)
        return result

    async def _with_failure_policy(
        self,
        server: ServerIdentity,
        call: tuple[str, dict[str, Any]],
        timeout: float,
    ) -> tuple[Connection, Any]:
        """Run ``call`` on the pooled connection under one overall deadline.

        Connect and request share ``timeout``; whatever the connect uses is
        gone for the request. Expiry anywhere surfaces as ``Timeout (<timeout>s)``.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        connection: Connection | None = None
        try:
            try:
                connection = await asyncio.wait_for(self._get_connection(server, timeout), timeout)
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ToolTimeoutError(timeout)
                method, params = call
                result = await asyncio.wait_for(
                    connection.request(method, params, remaining), remaining,
                )
            except (asyncio.TimeoutError, ToolTimeoutError) as exc:
                raise ToolTimeoutError(timeout, original=exc) from exc
            return connection, result
        except (ToolConnectionError, ToolTimeoutError) as exc:
            logger.warning("Tool server %s failed (%s); dropping connection", server.id, exc)
            if connection is not None:
                self.pool.discard(server.id, connection)
                await close_quietly(server.id, connection)
            raise

    async def _get_connection(self, server: ServerIdentity, timeout: float) -> Connection:
        connection = self.pool.get(server.id)
        if connection is not None:
            if connection.is_alive:
                return connection
            await self.pool.remove(server.id)

        task = self._connecting.get(server.id)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._connect(server, timeout), name=f"tool_runtime.connect.{server.id}",
            )
            self._connecting[server.id] = task
            task.add_done_callback(lambda done, sid=server.id: self._forget_connect(sid, done))
        # Shielded so one caller's cancellation does not abort the shared connect.
        return await asyncio.shield(task)

    def _forget_connect(self, server_id: str, task: asyncio.Task[Connection]) -> None:
        if self._connecting.get(server_id) is task:
            del self._connecting[server_id]
        if not task.cancelled():
            task.exception()  # retrieved by the awaiting callers

    async def _connect(self, server: ServerIdentity, timeout: float) -> Connection:
        connection_cls = TRANSPORTS[server.transport]
        kwargs: dict[str, Any] = {}
        if server.transport == "http":
            kwargs["http_transport"] = self._http_transport
        connection = connection_cls(
            server, self.codec, on_closed=self._on_connection_closed, **kwargs,
        )
        await connection.connect(timeout)
        self.pool.set(server.id, connection)
        return connection

    def _on_connection_closed(self, connection: Connection) -> None:
        if self.pool.discard(connection.server_id, connection):
            logger.info("Tool server %s connection closed; removed from pool", connection.server_id)


def _validate(server: ServerIdentity | None) -> ServerIdentity:
    if server is None:
        raise ToolValidationError("Server configuration is required")
    if not getattr(server, "id", None):
        raise ToolValidationError("Server configuration is missing an id")
    if server.transport not in TRANSPORTS:
        raise ToolValidationError(f"Unsupported transport: {server.transport}")
    if not server.enabled:
        raise ToolValidationError(f"Server {server.id} is disabled")
    return server


def _tool_listing(result: Any) -> dict[str, Any]:
    if not isinstance(result, dict):
        return {"tools": []}
    result.setdefault("tools", [])
    return result
