"""Stdio transport: a long-lived subprocess speaking newline-delimited JSON-RPC.

One reader task owns stdout and resolves pending futures by response id, so
any number of requests may be in flight on the same pipe.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any

from tool_runtime.errors import ToolConnectionError, ToolProtocolError, ToolTimeoutError
from tool_runtime.jsonrpc import decode_message, encode_message
from tool_runtime.transports.base import Connection, PendingRequest

logger = logging.getLogger(__name__)

KILL_GRACE_S = 1.0
"""Seconds between SIGTERM and SIGKILL when closing."""

STDIO_STREAM_LIMIT = 16 * 1024 * 1024
"""Max bytes in one framed line (large tool results)."""

CLOSED_MESSAGE = "Connection closed"


class StdioConnection(Connection):
    transport = "stdio"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._process: asyncio.subprocess.Process | None = None
        self._pending: dict[int | str, PendingRequest] = {}
        self._reader: asyncio.Task[None] | None = None
        self._stderr_reader: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()

    @property
    def is_alive(self) -> bool:
        return (
            not self._closed
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def _open(self) -> None:
        params = self.server.stdio
        if params is None:
            raise ToolConnectionError(f"Server {self.server_id} has no stdio parameters")
        env = {**os.environ, **params.env}
        logger.info("Spawning tool server %s: %s %s", self.server_id, params.command, params.args)
        try:
            self._process = await asyncio.create_subprocess_exec(
                params.command,
                *params.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STDIO_STREAM_LIMIT,
            )
        except OSError as exc:
            self._closed = True
            raise ToolConnectionError(
                f"Failed to start tool server {self.server_id}: {exc}", original=exc,
            ) from exc
        loop = asyncio.get_running_loop()
        self._reader = loop.create_task(
            self._read_stdout(), name=f"tool_runtime.stdio.{self.server_id}.stdout",
        )
        self._stderr_reader = loop.create_task(
            self._drain_stderr(), name=f"tool_runtime.stdio.{self.server_id}.stderr",
        )

    async def _write(self, envelope: dict[str, Any]) -> None:
        if not self.is_alive or self._process is None or self._process.stdin is None:
            raise ToolConnectionError(CLOSED_MESSAGE)
        data = encode_message(envelope)
        async with self._write_lock:
            try:
                self._process.stdin.write(data)
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise ToolConnectionError(CLOSED_MESSAGE, original=exc) from exc

    async def _exchange(self, envelope: dict[str, Any], timeout: float) -> dict[str, Any]:
        request_id = envelope["id"]
        if request_id in self._pending:
            raise ToolProtocolError(f"Request id {request_id!r} is already in flight")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._pending[request_id] = PendingRequest(
            id=request_id,
            method=envelope.get("method", ""),
            future=future,
            deadline=loop.time() + timeout,
        )
        try:
            await self._write(envelope)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Request %s (%s) to %s timed out after %gs",
                request_id, envelope.get("method"), self.server_id, timeout,
            )
            raise ToolTimeoutError(timeout, original=exc) from exc
        finally:
            self._pending.pop(request_id, None)
            if future.done() and not future.cancelled():
                future.exception()  # mark retrieved

    async def _send_notification(self, envelope: dict[str, Any], timeout: float) -> None:
        try:
            await asyncio.wait_for(self._write(envelope), timeout)
        except asyncio.TimeoutError as exc:
            raise ToolTimeoutError(timeout, original=exc) from exc

    # -- background readers --------------------------------------------------

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    break
                line = line.strip()
                if line:
                    self._dispatch(line)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Reading from tool server %s failed", self.server_id, exc_info=True)
        finally:
            self._fail_pending(CLOSED_MESSAGE)

    def _dispatch(self, line: bytes) -> None:
        try:
            message = decode_message(line)
        except ToolProtocolError:
            logger.warning("Ignoring non-JSON output from %s: %r", self.server_id, line[:200])
            return
        if "method" in message:
            logger.debug("Ignoring server-initiated %s from %s", message["method"], self.server_id)
            return
        request_id = message.get("id")
        if request_id is None:
            logger.debug("Ignoring message without id from %s: %s", self.server_id, message)
            return
        pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.warning("Unmatched response id %r from %s", request_id, self.server_id)
            return
        if not pending.future.done():
            pending.future.set_result(message)

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        while True:
            line = await stderr.readline()
            if not line:
                return
            logger.debug("[%s stderr] %s", self.server_id, line.decode(errors="replace").rstrip())

    def _fail_pending(self, reason: str) -> None:
        """Reject every pending request once and report the connection as closed."""
        if not self._mark_closed():
            return
        pending, self._pending = self._pending, {}
        for request in pending.values():
            if not request.future.done():
                request.future.set_exception(ToolConnectionError(reason))
        if pending:
            logger.warning(
                "Tool server %s closed with %d pending request(s)", self.server_id, len(pending),
            )

    # -- teardown ------------------------------------------------------------

    async def close(self) -> None:
        self._fail_pending(CLOSED_MESSAGE)
        process = self._process
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), KILL_GRACE_S)
            except asyncio.TimeoutError:
                logger.warning("Tool server %s ignored SIGTERM; killing", self.server_id)
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        for task in (self._reader, self._stderr_reader):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
