"""Agent-facing orchestration: runtime context, tool registry, and episodes.

Usage::

    async with ToolRuntime(RuntimeConfig.from_env()) as runtime:
        registry = ToolRegistry(runtime.client)
        registry.register_many(LocalHandlers(store).as_registry())
        registry.register_remote(search_server, "web_search")

        episode = AgentEpisode(runtime, registry, memory={"ids": {"projectId": "p42"}})
        await episode.invoke("tasks_by_project", {})
        outcome = await episode.run_plan({
            "steps": [{"tool": "notes_by_project", "args": {}}],
            "stopWhen": {"have": ["lists.notes"]},
        })

Control flow of one ``invoke``: bind arguments from memory, validate against
the catalog, run the handler under the middleware (loop guard + audit log).
Handlers fold their results into the episode's memory.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import httpx
from pydantic import BaseModel, ConfigDict, Field

from tool_runtime.audit import AuditStore, SqliteAuditStore
from tool_runtime.binder import ArgumentBinder
from tool_runtime.catalog import TOOL_CATALOG, ToolSpec, tool_policy, validate_tool_args
from tool_runtime.client import ProtocolClient
from tool_runtime.config import DEFAULT_MAX_PLAN_STEPS, RuntimeConfig
from tool_runtime.errors import ToolValidationError
from tool_runtime.memory import Memory
from tool_runtime.middleware import AuditLogger, LoopGuard, ToolHandler, ToolMiddleware
from tool_runtime.models import ServerIdentity
from tool_runtime.pool import ConnectionPool
from tool_runtime.stop import evaluate_stop_condition

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


class ToolRuntime:
    """Owns the pool, loop guard, audit logger, client and middleware.

    One per process (or per test). ``async with`` starts the background
    tasks and tears everything down on exit.
    """

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        audit_store: AuditStore | None = None,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        if audit_store is None and self.config.audit_enabled:
            audit_store = SqliteAuditStore(self.config.audit_db_path)
        self.audit_store = audit_store
        self.pool = ConnectionPool(
            idle_timeout_s=self.config.pool_idle_timeout_s,
            sweep_interval_s=self.config.pool_sweep_interval_s,
        )
        self.loop_guard = LoopGuard(
            window_s=self.config.loop_window_s,
            threshold=self.config.loop_threshold,
            prune_interval_s=self.config.loop_prune_interval_s,
        )
        self.audit_logger = AuditLogger(audit_store, max_queue=self.config.audit_queue_size)
        self.client = ProtocolClient(self.config, pool=self.pool, http_transport=http_transport)
        self.middleware = ToolMiddleware(self.loop_guard, self.audit_logger)
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self.pool.start()
        self.loop_guard.start()
        self.audit_logger.start()
        self._started = True

    async def aclose(self) -> None:
        await self.loop_guard.stop()
        await self.audit_logger.stop()
        await self.client.aclose()
        await self.pool.stop()
        self._started = False

    async def __aenter__(self) -> "ToolRuntime":
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Tool name to handler. Remote tools dispatch through the ProtocolClient."""

    def __init__(self, client: ProtocolClient | None = None) -> None:
        self.client = client
        self._handlers: dict[str, ToolHandler] = {}
        self._remote: dict[str, tuple[ServerIdentity, str]] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def register_local(self, name: str, handler: ToolHandler) -> None:
        self._handlers[name] = handler

    def register_many(self, handlers: Mapping[str, ToolHandler]) -> None:
        for name, handler in handlers.items():
            self.register_local(name, handler)

    def register_remote(
        self,
        server: ServerIdentity,
        tool_name: str,
        alias: str | None = None,
    ) -> str:
        """Expose ``tool_name`` on ``server`` as ``alias`` (default: the tool name).

        The raw result is stored at ``memory.entities[<registered name>]``.
        """
        if self.client is None:
            raise ToolValidationError("register_remote needs a ProtocolClient")
        client = self.client
        name = alias or tool_name

        async def call_remote(args: dict[str, Any], memory: Memory) -> Any:
            result = await client.call_tool(server, tool_name, args)
            memory.set_entity(name, result)
            return result

        call_remote.__name__ = f"remote_{server.id}_{tool_name}"
        self._handlers[name] = call_remote
        self._remote[name] = (server, tool_name)
        return name

    def remote_target(self, name: str) -> tuple[ServerIdentity, str] | None:
        return self._remote.get(name)

    def get(self, name: str) -> ToolHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise ToolValidationError(f"Unknown tool: {name}") from None


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanStep(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tool: str
    args: dict[str, Any] = Field(default_factory=dict)


class StopWhen(BaseModel):
    model_config = ConfigDict(extra="forbid")

    have: list[str] = Field(default_factory=list)


class Plan(BaseModel):
    """Tool steps proposed by the planner, plus the artifacts that end the plan."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    steps: list[PlanStep] = Field(default_factory=list)
    stop_when: StopWhen = Field(default_factory=StopWhen, alias="stopWhen")


@dataclass
class StepRecord:
    tool: str
    args: dict[str, Any]
    result: Any = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class PlanOutcome:
    records: list[StepRecord] = field(default_factory=list)
    stopped_early: bool = False
    memory: Memory = field(default_factory=Memory)


def planner_json_schema(
    tool_names: Iterable[str],
    max_steps: int = DEFAULT_MAX_PLAN_STEPS,
) -> dict[str, Any]:
    """JSON schema for ``Plan`` with the tool enum filled in."""
    schema = copy.deepcopy(Plan.model_json_schema(by_alias=True))
    step_schema = schema.get("$defs", {}).get("PlanStep", {})
    step_schema.setdefault("properties", {}).setdefault("tool", {})["enum"] = sorted(set(tool_names))
    schema.setdefault("properties", {}).setdefault("steps", {})["maxItems"] = max_steps
    return schema


# ---------------------------------------------------------------------------
# Episode
# ---------------------------------------------------------------------------


class AgentEpisode:
    """One agent task: its memory plus the tools it may call."""

    def __init__(
        self,
        runtime: ToolRuntime,
        registry: ToolRegistry,
        catalog: Mapping[str, ToolSpec] | None = None,
        memory: Memory | Mapping[str, Any] | None = None,
        source: str = "chat",
        binder: ArgumentBinder | None = None,
    ) -> None:
        self.runtime = runtime
        self.registry = registry
        self.catalog = TOOL_CATALOG if catalog is None else catalog
        self.memory = Memory.from_mapping(copy.deepcopy(memory) if isinstance(memory, Mapping) else memory)
        self.source = source
        self.binder = binder or ArgumentBinder()

    async def invoke(self, tool_name: str, raw_args: Mapping[str, Any] | None = None) -> Any:
        handler = self.registry.get(tool_name)
        args = self.binder.bind(tool_name, raw_args, self.memory)
        if tool_name in self.catalog:
            validate_tool_args(tool_name, args, self.catalog)
        wrapped = self.runtime.middleware.wrap(
            tool_name, handler, source=self.source, policy=tool_policy(tool_name, self.catalog),
        )
        return await wrapped(args, self.memory)

    def stop_satisfied(self, required_paths: Iterable[str] | None) -> bool:
        return evaluate_stop_condition(required_paths, self.memory)

    async def run_plan(
        self,
        plan: Plan | Mapping[str, Any],
        continue_on_error: bool = False,
    ) -> PlanOutcome:
        """Run steps in order until the stop condition holds or steps run out."""
        plan = plan if isinstance(plan, Plan) else Plan.model_validate(plan)
        limit = self.runtime.config.max_plan_steps
        steps = plan.steps[:limit]
        if len(plan.steps) > limit:
            logger.info("Plan truncated from %d to %d steps", len(plan.steps), limit)

        outcome = PlanOutcome(memory=self.memory)
        for step in steps:
            if self.stop_satisfied(plan.stop_when.have):
                break
            record = StepRecord(tool=step.tool, args=dict(step.args))
            try:
                record.result = await self.invoke(step.tool, step.args)
            except Exception as exc:
                if not continue_on_error:
                    raise
                record.error = str(exc) or type(exc).__name__
                logger.info("Plan step %s failed: %s", step.tool, record.error)
            outcome.records.append(record)
        outcome.stopped_early = len(outcome.records) < len(steps)
        return outcome
