"""Tool-call middleware: loop guard plus audit logging around every handler.

Usage::

    guard = LoopGuard()
    audit = AuditLogger(SqliteAuditStore(path))
    middleware = ToolMiddleware(guard, audit)

    handler = middleware.wrap("tasks_by_project", tasks_by_project)
    result = await handler({"projectId": "p42"}, memory)

The guard rejects the 11th call of the same tool inside a 2 second window
with ToolRateLimitError. Every attempt, including a rejected one, produces
one ToolCallLog, tagged with the tool's side-effect policy from the catalog.
Handler errors propagate unchanged.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Mapping

from tool_runtime.audit import AuditStore
from tool_runtime.catalog import TOOL_CATALOG, Policy, ToolSpec, tool_policy
from tool_runtime.config import (
    DEFAULT_AUDIT_QUEUE_SIZE,
    DEFAULT_LOOP_PRUNE_INTERVAL_S,
    DEFAULT_LOOP_THRESHOLD,
    DEFAULT_LOOP_WINDOW_S,
)
from tool_runtime.errors import ToolRateLimitError
from tool_runtime.memory import Memory
from tool_runtime.models import ToolCallLog

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("tool_runtime.audit")

ToolHandler = Callable[[dict[str, Any], Memory], Any]
WrappedHandler = Callable[[dict[str, Any], Memory], Awaitable[Any]]

MAX_ERROR_CHARS = 500


# ---------------------------------------------------------------------------
# Loop guard
# ---------------------------------------------------------------------------


class LoopGuard:
    """Per-tool sliding window of recent call timestamps."""

    def __init__(
        self,
        window_s: float = DEFAULT_LOOP_WINDOW_S,
        threshold: int = DEFAULT_LOOP_THRESHOLD,
        prune_interval_s: float = DEFAULT_LOOP_PRUNE_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_s = window_s
        self.threshold = threshold
        self.prune_interval_s = prune_interval_s
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}
        self._pruner: asyncio.Task[None] | None = None

    def _trim(self, window: deque[float], now: float) -> None:
        while window and now - window[0] >= self.window_s:
            window.popleft()

    def check(self, tool_name: str) -> None:
        """Record a call, or raise ToolRateLimitError without recording it."""
        now = self._clock()
        window = self._windows.setdefault(tool_name, deque())
        self._trim(window, now)
        if len(window) >= self.threshold:
            raise ToolRateLimitError(
                tool_name, len(window), window_s=self.window_s, threshold=self.threshold,
            )
        window.append(now)

    def recent_count(self, tool_name: str) -> int:
        window = self._windows.get(tool_name)
        if not window:
            return 0
        self._trim(window, self._clock())
        return len(window)

    def prune(self) -> int:
        """Drop stale timestamps and empty windows. Returns windows removed."""
        now = self._clock()
        removed = 0
        for tool_name in list(self._windows):
            window = self._windows[tool_name]
            self._trim(window, now)
            if not window:
                del self._windows[tool_name]
                removed += 1
        return removed

    def tracked_tools(self) -> list[str]:
        return list(self._windows)

    @property
    def running(self) -> bool:
        return self._pruner is not None and not self._pruner.done()

    def start(self) -> None:
        if self.running:
            return
        self._pruner = asyncio.get_running_loop().create_task(
            self._prune_loop(), name="tool_runtime.loop_guard.prune",
        )

    async def stop(self) -> None:
        task, self._pruner = self._pruner, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self.prune_interval_s)
            self.prune()


# ---------------------------------------------------------------------------
# Audit logger
# ---------------------------------------------------------------------------


class AuditLogger:
    """Non-blocking hand-off of ToolCallLogs to an AuditStore.

    ``submit`` never blocks and never raises. A full queue drops the record
    (counted in ``dropped``). Store failures are logged and swallowed.
    """

    def __init__(
        self,
        store: AuditStore | None,
        max_queue: int = DEFAULT_AUDIT_QUEUE_SIZE,
    ) -> None:
        self.store = store
        self.dropped = 0
        self.written = 0
        self._queue: asyncio.Queue[ToolCallLog] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, log: ToolCallLog) -> bool:
        if self.store is None:
            return False
        try:
            self._queue.put_nowait(log)
        except asyncio.QueueFull:
            self.dropped += 1
            audit_logger.warning(
                "Audit queue full; dropped log for %s (%d dropped so far)",
                log.tool_name, self.dropped,
            )
            return False
        return True

    def start(self) -> None:
        if self.running or self.store is None:
            return
        self._worker = asyncio.get_running_loop().create_task(
            self._run(), name="tool_runtime.audit.worker",
        )

    async def drain(self) -> None:
        """Wait until every submitted log has been written (or failed)."""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            await self._write(self._queue.get_nowait())
            self._queue.task_done()

    async def stop(self) -> None:
        await self.drain()
        task, self._worker = self._worker, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while True:
            log = await self._queue.get()
            try:
                await self._write(log)
            finally:
                self._queue.task_done()

    async def _write(self, log: ToolCallLog) -> None:
        assert self.store is not None
        try:
            await asyncio.to_thread(self.store.insert, log)
            self.written += 1
        except Exception:
            audit_logger.warning("Failed to write audit log for %s", log.tool_name, exc_info=True)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def result_size(result: Any) -> int:
    """Length of the serialized result. ``{"output": str}`` envelopes count the output."""
    if result is None:
        return 0
    if isinstance(result, Mapping) and isinstance(result.get("output"), str):
        return len(result["output"])
    if isinstance(result, str):
        return len(result)
    try:
        return len(json.dumps(result, default=str))
    except (TypeError, ValueError):
        return len(str(result))


def _memory_keys(memory: Any) -> list[str]:
    if not isinstance(memory, Memory):
        return sorted(memory) if isinstance(memory, Mapping) else []
    return sorted(
        f"{category}.{key}"
        for category in ("ids", "lists", "entities")
        for key in memory.category(category) or {}
    )


class ToolMiddleware:
    def __init__(
        self,
        loop_guard: LoopGuard | None = None,
        audit_logger: AuditLogger | None = None,
        source: str = "chat",
        catalog: Mapping[str, ToolSpec] | None = None,
    ) -> None:
        self.loop_guard = loop_guard
        self.audit_logger = audit_logger
        self.source = source
        self.catalog = TOOL_CATALOG if catalog is None else catalog

    def wrap(
        self,
        tool_name: str,
        handler: ToolHandler,
        source: str | None = None,
        policy: Policy | None = None,
    ) -> WrappedHandler:
        """Wrap ``handler(args, memory)`` with the loop guard and audit logging.

        ``policy`` overrides the middleware catalog's classification.
        """
        call_source = source or self.source
        call_policy = policy or tool_policy(tool_name, self.catalog)

        async def wrapped(args: dict[str, Any], memory: Memory) -> Any:
            started = time.perf_counter()
            success = False
            error: str | None = None
            result: Any = None
            try:
                if self.loop_guard is not None:
                    self.loop_guard.check(tool_name)
                result = handler(args, memory)
                if inspect.isawaitable(result):
                    result = await result
                success = True
                return result
            except BaseException as exc:
                error = str(exc) or type(exc).__name__
                raise
            finally:
                self._record(
                    tool_name,
                    args,
                    memory,
                    success=success,
                    error=error,
                    duration_ms=(time.perf_counter() - started) * 1000.0,
                    size=result_size(result) if success else 0,
                    source=call_source,
                    policy=call_policy,
                )

        wrapped.__name__ = f"wrapped_{tool_name}"
        return wrapped

    def _record(
        self,
        tool_name: str,
        args: Mapping[str, Any] | None,
        memory: Any,
        *,
        success: bool,
        error: str | None,
        duration_ms: float,
        size: int,
        source: str,
        policy: Policy,
    ) -> None:
        truncated = error[:MAX_ERROR_CHARS] if error else None
        logger.info(
            "[tool-call] %s",
            json.dumps({
                "tool_name": tool_name,
                "success": success,
                "duration": f"{duration_ms:.1f}ms",
                "result_size": size,
                "policy": policy,
                "error": truncated[:100] if truncated else None,
            }),
        )
        if self.audit_logger is None:
            return
        try:
            log = ToolCallLog(
                tool_name=tool_name,
                args=dict(args or {}),
                success=success,
                error=truncated,
                duration_ms=duration_ms,
                result_size=size,
                source=source,
                metadata={
                    "memory_keys": _memory_keys(memory),
                    "policy": policy,
                    "read_only": policy == "read_only",
                },
            )
        except Exception:
            audit_logger.warning("Could not build audit log for %s", tool_name, exc_info=True)
            return
        self.audit_logger.submit(log)
