"""End-to-end tests for tool_runtime.orchestrator: runtime, registry, episodes, plans."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from tool_runtime.catalog import TOOL_CATALOG, ToolSpec
from tool_runtime.config import RuntimeConfig
from tool_runtime.errors import ToolRateLimitError, ToolValidationError
from tool_runtime.handlers import LocalHandlers
from tool_runtime.memory import Memory
from tool_runtime.orchestrator import (
    AgentEpisode,
    Plan,
    ToolRegistry,
    ToolRuntime,
    planner_json_schema,
)
from tool_runtime.responses import parse_output


@pytest.fixture
def registry(workspace):
    registry = ToolRegistry()
    registry.register_many(LocalHandlers(workspace).as_registry())
    return registry


# ---------------------------------------------------------------------------
# invoke
# ---------------------------------------------------------------------------


class TestInvoke:
    @pytest.mark.asyncio
    async def test_project_scoped_call_binds_from_memory(self, quiet_config, audit_store, workspace, registry):
        async with ToolRuntime(quiet_config, audit_store) as runtime:
            episode = AgentEpisode(runtime, registry, memory={"ids": {"projectId": "p42"}})
            response = await episode.invoke("tasks_by_project", {})
            await runtime.audit_logger.drain()

        assert workspace.queries[-1] == ("tasks", {"projectId": "p42", "status": {"$ne": "done"}})
        assert [t["id"] for t in parse_output(response)["data"]["tasks"]] == ["t1"]
        [log] = audit_store.logs
        assert log.tool_name == "tasks_by_project"
        assert log.success is True
        assert log.args == {"projectId": "p42"}
        assert log.result_size == len(response["output"])
        assert episode.memory.lists["tasks"][0]["id"] == "t1"

    @pytest.mark.asyncio
    async def test_memory_chains_across_calls(self, quiet_config, audit_store, registry):
        async with ToolRuntime(quiet_config, audit_store) as runtime:
            episode = AgentEpisode(runtime, registry)
            await episode.invoke("project_by_name", {"name": "panorama"})
            await episode.invoke("notes_by_project", {})
            assert episode.stop_satisfied(["ids.projectId", "lists.notes"])
            assert episode.memory.lists["notes"] == [{"id": "n1", "title": "Kickoff"}]

    @pytest.mark.asyncio
    async def test_missing_required_arg_fails_before_dispatch(self, quiet_config, audit_store, workspace, registry):
        async with ToolRuntime(quiet_config, audit_store) as runtime:
            episode = AgentEpisode(runtime, registry)
            with pytest.raises(ToolValidationError) as exc_info:
                await episode.invoke("tasks_by_project", {})
            await runtime.audit_logger.drain()
        assert exc_info.value.missing == ["projectId"]
        assert workspace.queries == []
        assert audit_store.logs == []

    @pytest.mark.asyncio
    async def test_unknown_tool(self, quiet_config, registry):
        async with ToolRuntime(quiet_config) as runtime:
            with pytest.raises(ToolValidationError, match="Unknown tool"):
                await AgentEpisode(runtime, registry).invoke("format_disk", {})

    @pytest.mark.asyncio
    async def test_uncatalogued_local_tool_skips_validation(self, quiet_config, registry):
        registry.register_local("shout", lambda args, memory: str(args.get("text", "")).upper())
        async with ToolRuntime(quiet_config) as runtime:
            assert await AgentEpisode(runtime, registry).invoke("shout", {"text": "hi"}) == "HI"

    @pytest.mark.asyncio
    async def test_side_effect_class_is_logged(self, quiet_config, audit_store, registry):
        registry.register_local("archive_project", lambda args, memory: {"archived": args["projectId"]})
        registry.register_local("delete_note", lambda args, memory: None)
        catalog = {**TOOL_CATALOG, "archive_project": ToolSpec(required_args=("projectId",), read_only=False)}
        async with ToolRuntime(quiet_config, audit_store) as runtime:
            episode = AgentEpisode(runtime, registry, catalog=catalog, memory={"ids": {"projectId": "p42"}})
            await episode.invoke("tasks_by_project", {})
            await episode.invoke("archive_project", {})
            await episode.invoke("delete_note", {"noteId": "n1"})
            await runtime.audit_logger.drain()
        classes = {log.tool_name: (log.metadata["policy"], log.metadata["read_only"]) for log in audit_store.logs}
        assert classes == {
            "tasks_by_project": ("read_only", True),
            "archive_project": ("write", False),
            "delete_note": ("delete", False),
        }

    @pytest.mark.asyncio
    async def test_loop_guard_trips(self, audit_store, registry):
        config = RuntimeConfig(audit_enabled=False, loop_threshold=3)
        async with ToolRuntime(config, audit_store) as runtime:
            episode = AgentEpisode(runtime, registry)
            for _ in range(3):
                await episode.invoke("people_list", {})
            with pytest.raises(ToolRateLimitError) as exc_info:
                await episode.invoke("people_list", {})
            await episode.invoke("teams_list", {})
            await runtime.audit_logger.drain()
        assert exc_info.value.call_count == 3
        assert [log.success for log in audit_store.logs] == [True, True, True, False, True]

    @pytest.mark.asyncio
    async def test_memory_mapping_is_copied(self, quiet_config, registry):
        seed = {"ids": {"projectId": "p42"}}
        async with ToolRuntime(quiet_config) as runtime:
            episode = AgentEpisode(runtime, registry, memory=seed)
            await episode.invoke("project_by_name", {"name": "Garden (v2)"})
        assert episode.memory.ids["projectId"] == "p7"
        assert seed == {"ids": {"projectId": "p42"}}


# ---------------------------------------------------------------------------
# Runtime lifecycle
# ---------------------------------------------------------------------------


class TestToolRuntime:
    @pytest.mark.asyncio
    async def test_background_tasks(self, quiet_config, audit_store):
        runtime = ToolRuntime(quiet_config, audit_store)
        async with runtime:
            assert runtime.pool.running
            assert runtime.loop_guard.running
            assert runtime.audit_logger.running
        assert not runtime.pool.running
        assert not runtime.loop_guard.running
        assert not runtime.audit_logger.running

    def test_sqlite_store_when_enabled(self, tmp_path):
        config = RuntimeConfig(audit_db_path=tmp_path / "calls.db")
        runtime = ToolRuntime(config)
        assert runtime.audit_store.db_path == tmp_path / "calls.db"

    def test_no_store_when_disabled(self, quiet_config):
        assert ToolRuntime(quiet_config).audit_store is None

    @pytest.mark.asyncio
    async def test_sqlite_end_to_end(self, tmp_path, registry):
        config = RuntimeConfig(audit_db_path=tmp_path / "calls.db")
        async with ToolRuntime(config) as runtime:
            await AgentEpisode(runtime, registry).invoke("people_list", {})
            await runtime.audit_logger.drain()
            rows = runtime.audit_store.query(since=datetime.now(timezone.utc) - timedelta(minutes=5))
        assert [row.tool_name for row in rows] == ["people_list"]
        runtime.audit_store.close()


# ---------------------------------------------------------------------------
# Remote tools
# ---------------------------------------------------------------------------


class TestRemoteTools:
    @pytest.mark.asyncio
    async def test_register_remote(self, quiet_config, audit_store, echo_server):
        async with ToolRuntime(quiet_config, audit_store) as runtime:
            registry = ToolRegistry(runtime.client)
            name = registry.register_remote(echo_server, "echo", alias="echo_remote")
            assert name == "echo_remote"
            assert registry.remote_target("echo_remote") == (echo_server, "echo")
            episode = AgentEpisode(runtime, registry, memory={"ids": {"projectId": "p42"}})
            result = await episode.invoke("echo_remote", {"projectId": {"var": "ids.projectId"}})
            await runtime.audit_logger.drain()
        assert json.loads(result["content"][0]["text"]) == {"projectId": "p42"}
        assert episode.memory.entities["echo_remote"] == result
        assert audit_store.logs[0].tool_name == "echo_remote"
        assert audit_store.logs[0].success is True

    def test_register_remote_needs_client(self, echo_server):
        with pytest.raises(ToolValidationError):
            ToolRegistry().register_remote(echo_server, "echo")

    def test_registry_helpers(self, registry):
        assert "tasks_filter" in registry
        assert "nope" not in registry
        assert registry.names()[0] == "collection_query"
        assert registry.remote_target("tasks_filter") is None


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class TestRunPlan:
    @pytest.mark.asyncio
    async def test_stops_when_artifacts_present(self, quiet_config, workspace, registry):
        plan = {
            "steps": [
                {"tool": "project_by_name", "args": {"name": "Panorama"}},
                {"tool": "tasks_by_project", "args": {}},
                {"tool": "notes_by_project", "args": {}},
            ],
            "stopWhen": {"have": ["ids.projectId", "lists.tasks"]},
        }
        async with ToolRuntime(quiet_config) as runtime:
            outcome = await AgentEpisode(runtime, registry).run_plan(plan)
        assert [r.tool for r in outcome.records] == ["project_by_name", "tasks_by_project"]
        assert all(r.success for r in outcome.records)
        assert outcome.stopped_early is True
        assert outcome.memory.ids["projectId"] == "p42"
        assert [c for c, _ in workspace.queries] == ["projects", "tasks"]

    @pytest.mark.asyncio
    async def test_already_satisfied(self, quiet_config, registry):
        memory = Memory(lists={"tasks": [{"id": "t"}]})
        async with ToolRuntime(quiet_config) as runtime:
            episode = AgentEpisode(runtime, registry, memory=memory)
            outcome = await episode.run_plan(Plan(steps=[{"tool": "people_list"}], stop_when={"have": ["lists.*"]}))
        assert outcome.records == []
        assert outcome.stopped_early is True

    @pytest.mark.asyncio
    async def test_runs_all_steps_without_stop_condition(self, quiet_config, registry):
        plan = {"steps": [{"tool": "people_list"}, {"tool": "teams_list"}]}
        async with ToolRuntime(quiet_config) as runtime:
            outcome = await AgentEpisode(runtime, registry).run_plan(plan)
        assert len(outcome.records) == 2
        assert outcome.stopped_early is False

    @pytest.mark.asyncio
    async def test_truncates_to_max_steps(self, registry):
        config = RuntimeConfig(audit_enabled=False, max_plan_steps=2)
        plan = {"steps": [{"tool": "people_list"}] * 4}
        async with ToolRuntime(config) as runtime:
            outcome = await AgentEpisode(runtime, registry).run_plan(plan)
        assert len(outcome.records) == 2
        assert outcome.stopped_early is False

    @pytest.mark.asyncio
    async def test_error_propagates_by_default(self, quiet_config, registry):
        plan = {"steps": [{"tool": "tasks_due_before", "args": {"dueBefore": "soon"}}, {"tool": "people_list"}]}
        async with ToolRuntime(quiet_config) as runtime:
            with pytest.raises(ToolValidationError):
                await AgentEpisode(runtime, registry).run_plan(plan)

    @pytest.mark.asyncio
    async def test_continue_on_error(self, quiet_config, registry):
        plan = {"steps": [{"tool": "tasks_due_before", "args": {"dueBefore": "soon"}}, {"tool": "people_list"}]}
        async with ToolRuntime(quiet_config) as runtime:
            outcome = await AgentEpisode(runtime, registry).run_plan(plan, continue_on_error=True)
        first, second = outcome.records
        assert not first.success
        assert "not a valid date" in first.error
        assert second.success
        assert outcome.stopped_early is False


class TestPlannerSchema:
    def test_tool_enum_and_step_limit(self):
        schema = planner_json_schema(["tasks_filter", "notes_by_project", "tasks_filter"], max_steps=3)
        assert schema["$defs"]["PlanStep"]["properties"]["tool"]["enum"] == ["notes_by_project", "tasks_filter"]
        assert schema["properties"]["steps"]["maxItems"] == 3
        assert "stopWhen" in schema["properties"]

    def test_plan_accepts_either_key(self):
        assert Plan.model_validate({"stopWhen": {"have": ["lists.tasks"]}}).stop_when.have == ["lists.tasks"]
        assert Plan(stop_when={"have": ["ids.*"]}).stop_when.have == ["ids.*"]
