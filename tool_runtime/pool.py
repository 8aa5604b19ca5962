"""Pooled tool-server connections keyed by server id.

At most one live connection per server id. Entries idle longer than
``idle_timeout_s`` are evicted by a periodic sweep (never on access).

Usage:
    pool = ConnectionPool()
    pool.start()
    ...
    await pool.stop()   # cancels the sweep and closes every connection
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from tool_runtime.config import DEFAULT_POOL_IDLE_TIMEOUT_S, DEFAULT_POOL_SWEEP_INTERVAL_S

logger = logging.getLogger(__name__)


class Closable(Protocol):
    async def close(self) -> None: ...


@dataclass
class _PoolEntry:
    connection: Any
    last_used: float


class ConnectionPool:
    """Map of server id to live connection with idle eviction."""

    def __init__(
        self,
        idle_timeout_s: float = DEFAULT_POOL_IDLE_TIMEOUT_S,
        sweep_interval_s: float = DEFAULT_POOL_SWEEP_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout_s = idle_timeout_s
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._entries: dict[str, _PoolEntry] = {}
        self._sweeper: asyncio.Task[None] | None = None

    def __contains__(self, server_id: object) -> bool:
        return server_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def server_ids(self) -> list[str]:
        return list(self._entries)

    def get(self, server_id: str) -> Any | None:
        """Return the pooled connection (marking it used), or None."""
        entry = self._entries.get(server_id)
        if entry is None:
            return None
        entry.last_used = self._clock()
        return entry.connection

    def set(self, server_id: str, connection: Closable) -> None:
        self._entries[server_id] = _PoolEntry(connection, self._clock())

    def discard(self, server_id: str, connection: Any) -> bool:
        """Drop the entry only if it still holds ``connection``. Does not close."""
        entry = self._entries.get(server_id)
        if entry is None or entry.connection is not connection:
            return False
        del self._entries[server_id]
        return True

    async def remove(self, server_id: str, close: bool = True) -> bool:
        entry = self._entries.pop(server_id, None)
        if entry is None:
            return False
        if close:
            await close_quietly(server_id, entry.connection)
        return True

    async def clear(self, close: bool = True) -> None:
        entries = list(self._entries.items())
        self._entries.clear()
        if close:
            for server_id, entry in entries:
                await close_quietly(server_id, entry.connection)

    async def sweep(self) -> list[str]:
        """Evict and close every entry idle past the threshold."""
        now = self._clock()
        stale = [
            server_id
            for server_id, entry in self._entries.items()
            if now - entry.last_used > self.idle_timeout_s
        ]
        evicted = []
        for server_id in stale:
            entry = self._entries.pop(server_id, None)
            if entry is None:
                continue
            evicted.append(server_id)
            logger.info("Evicting idle tool server connection %s", server_id)
            await close_quietly(server_id, entry.connection)
        return evicted

    # -- background sweep ----------------------------------------------------

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def start(self) -> None:
        """Start the periodic sweep. Must be called from a running loop."""
        if self.running:
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_loop(), name="tool_runtime.pool.sweep",
        )

    async def stop(self, close: bool = True) -> None:
        task, self._sweeper = self._sweeper, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.clear(close=close)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                await self.sweep()
            except Exception:
                logger.warning("Connection pool sweep failed", exc_info=True)


async def close_quietly(server_id: str, connection: Any) -> None:
    try:
        await connection.close()
    except Exception:
        logger.warning("Error closing connection for %s", server_id, exc_info=True)
