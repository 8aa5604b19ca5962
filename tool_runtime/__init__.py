"""Tool-calling runtime for a conversational agent.

Calls workspace tools and third-party tool servers (JSON-RPC 2.0 over a
subprocess pipe or HTTP), with pooled connections, a loop guard, an audit
trail, argument binding from agent memory, and stop conditions.

Usage:
    from tool_runtime import AgentEpisode, LocalHandlers, RuntimeConfig, ToolRegistry, ToolRuntime

    async with ToolRuntime(RuntimeConfig.from_env()) as runtime:
        registry = ToolRegistry(runtime.client)
        registry.register_many(LocalHandlers(store).as_registry())
        for server in load_server_config("servers.json"):
            registry.register_remote(server, "search", alias=f"{server.id}_search")

        episode = AgentEpisode(runtime, registry)
        await episode.invoke("project_by_name", {"name": "Panorama"})
        await episode.invoke("tasks_by_project", {})   # projectId bound from memory
        if episode.stop_satisfied(["ids.projectId", "lists.tasks"]):
            ...
"""

__version__ = "0.1.0"

from tool_runtime.audit import AuditStore, SqliteAuditStore, get_tool_call_stats
from tool_runtime.binder import ArgumentBinder, bind_args
from tool_runtime.catalog import (
    TOOL_CATALOG,
    ToolSpec,
    infer_policy,
    is_read_only,
    tool_policy,
    validate_tool_args,
)
from tool_runtime.client import ProtocolClient
from tool_runtime.config import RuntimeConfig, load_server_config
from tool_runtime.errors import (
    ToolConnectionError,
    ToolProtocolError,
    ToolRateLimitError,
    ToolRuntimeError,
    ToolTimeoutError,
    ToolValidationError,
    wrap_error,
)
from tool_runtime.handlers import DocumentStore, LocalHandlers
from tool_runtime.jsonrpc import JsonRpcCodec
from tool_runtime.memory import Memory
from tool_runtime.middleware import AuditLogger, LoopGuard, ToolMiddleware
from tool_runtime.models import ServerIdentity, ToolCallLog, servers_from_mapping
from tool_runtime.orchestrator import (
    AgentEpisode,
    Plan,
    PlanOutcome,
    PlanStep,
    ToolRegistry,
    ToolRuntime,
    planner_json_schema,
)
from tool_runtime.pool import ConnectionPool
from tool_runtime.responses import build_error_response, build_success_response, to_mcp_result
from tool_runtime.stop import evaluate_stop_condition

__all__ = [
    "AgentEpisode",
    "ArgumentBinder",
    "AuditLogger",
    "AuditStore",
    "ConnectionPool",
    "DocumentStore",
    "JsonRpcCodec",
    "LocalHandlers",
    "LoopGuard",
    "Memory",
    "Plan",
    "PlanOutcome",
    "PlanStep",
    "ProtocolClient",
    "RuntimeConfig",
    "ServerIdentity",
    "SqliteAuditStore",
    "TOOL_CATALOG",
    "ToolCallLog",
    "ToolConnectionError",
    "ToolMiddleware",
    "ToolProtocolError",
    "ToolRateLimitError",
    "ToolRegistry",
    "ToolRuntime",
    "ToolRuntimeError",
    "ToolSpec",
    "ToolTimeoutError",
    "ToolValidationError",
    "__version__",
    "bind_args",
    "build_error_response",
    "build_success_response",
    "evaluate_stop_condition",
    "get_tool_call_stats",
    "infer_policy",
    "is_read_only",
    "load_server_config",
    "planner_json_schema",
    "servers_from_mapping",
    "to_mcp_result",
    "tool_policy",
    "validate_tool_args",
    "wrap_error",
]
