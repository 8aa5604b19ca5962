"""HTTP transport: each JSON-RPC request is an independent POST."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from tool_runtime.errors import ToolConnectionError, ToolProtocolError, wrap_error
from tool_runtime.transports.base import Connection

logger = logging.getLogger(__name__)


class HttpConnection(Connection):
    """Stateless channel; the pooled object only keeps the httpx client warm.

    ``http_transport`` accepts any httpx transport (``httpx.MockTransport`` in tests).
    """

    transport = "http"

    def __init__(
        self,
        *args: Any,
        http_transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        if self.server.http is None:
            raise ToolConnectionError(f"Server {self.server_id} has no http parameters")
        self.url = self.server.http.url
        self.headers = {"Content-Type": "application/json", **self.server.http.headers}
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None

    async def _open(self) -> None:
        self._client = httpx.AsyncClient(headers=self.headers, transport=self._http_transport)

    async def _post(self, envelope: dict[str, Any], timeout: float) -> httpx.Response:
        if self._closed or self._client is None:
            raise ToolConnectionError("Connection closed")
        try:
            response = await self._client.post(self.url, json=envelope, timeout=timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise wrap_error(exc, timeout_s=timeout) from exc
        return response

    async def _exchange(self, envelope: dict[str, Any], timeout: float) -> dict[str, Any]:
        response = await self._post(envelope, timeout)
        try:
            body = response.json()
        except ValueError as exc:
            raise ToolProtocolError(
                f"Invalid JSON response from {self.server_id}: {response.text[:200]!r}",
                original=exc,
            ) from exc
        if not isinstance(body, dict):
            raise ToolProtocolError(f"Unexpected JSON-RPC response from {self.server_id}: {body!r}")
        return body

    async def _send_notification(self, envelope: dict[str, Any], timeout: float) -> None:
        # Any 2xx is accepted; notifications carry no response.
        await self._post(envelope, timeout)

    async def close(self) -> None:
        self._mark_closed()
        client, self._client = self._client, None
        if client is not None:
            logger.debug("Closing http client for %s", self.server_id)
            await client.aclose()
