"""Pydantic models shared across the runtime.

- ``ServerIdentity``: how to reach one third-party tool server
- ``ToolCallLog``: one audited tool invocation (append-only)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class StdioParams(BaseModel):
    """Subprocess launch parameters for the stdio transport."""

    model_config = ConfigDict(extra="forbid")

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class HttpParams(BaseModel):
    """Endpoint for the HTTP transport. Every request is a POST to ``url``."""

    model_config = ConfigDict(extra="forbid")

    url: str
    headers: dict[str, str] = Field(default_factory=dict)


class ServerIdentity(BaseModel):
    """A configured tool server. ``id`` is the pool key."""

    model_config = ConfigDict(extra="forbid")

    id: str
    name: str = ""
    transport: Literal["stdio", "http"]
    stdio: StdioParams | None = None
    http: HttpParams | None = None
    enabled: bool = True

    @model_validator(mode="after")
    def _check_transport_params(self) -> "ServerIdentity":
        if not self.id.strip():
            raise ValueError("server id must be non-empty")
        if self.transport == "stdio":
            if self.stdio is None or not self.stdio.command.strip():
                raise ValueError(f"stdio server {self.id!r} requires a command")
        elif self.http is None or not self.http.url.strip():
            raise ValueError(f"http server {self.id!r} requires a url")
        if not self.name:
            self.name = self.id
        return self

    @property
    def params(self) -> StdioParams | HttpParams:
        return self.stdio if self.transport == "stdio" else self.http  # type: ignore[return-value]


def server_from_entry(name: str, entry: Mapping[str, Any]) -> ServerIdentity:
    """Build a ServerIdentity from one ``mcpServers`` entry.

    ``{"command": ..., "args": [...], "env": {...}}`` is a stdio server,
    ``{"url": ..., "headers": {...}}`` an http server. An explicit
    ``transport`` key wins over the inference.
    """
    transport = entry.get("transport") or ("http" if entry.get("url") else "stdio")
    data: dict[str, Any] = {
        "id": str(entry.get("id") or name),
        "name": str(entry.get("name") or name),
        "transport": transport,
        "enabled": bool(entry.get("enabled", True)),
    }
    if transport == "stdio":
        data["stdio"] = {
            "command": entry.get("command", ""),
            "args": list(entry.get("args") or []),
            "env": dict(entry.get("env") or {}),
        }
    else:
        data["http"] = {
            "url": entry.get("url", ""),
            "headers": dict(entry.get("headers") or {}),
        }
    return ServerIdentity.model_validate(data)


def servers_from_mapping(config: Mapping[str, Any]) -> list[ServerIdentity]:
    """Parse the ``{"mcpServers": {name: entry}}`` layout into identities.

    A bare ``{name: entry}`` mapping is accepted too.
    """
    servers = config.get("mcpServers", config)
    if not isinstance(servers, Mapping):
        raise ValueError("mcpServers must be a mapping of server name to entry")
    identities = []
    for name, entry in servers.items():
        if not isinstance(entry, Mapping):
            raise ValueError(f"server entry {name!r} must be a mapping")
        identities.append(server_from_entry(str(name), entry))
    return identities


class ToolCallLog(BaseModel):
    """One audited tool invocation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    success: bool
    error: str | None = None
    duration_ms: float = 0.0
    result_size: int = 0
    source: str = "chat"
    timestamp: datetime = Field(default_factory=now_utc)
    metadata: dict[str, Any] = Field(default_factory=dict)
