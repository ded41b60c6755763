"""
Unit tests for tool execution and request-scoped caller identity.
"""
import asyncio

import pytest

from gradpilot.core.logging import user_id_var
from gradpilot.services.orchestration.errors import ToolError
from gradpilot.services.orchestration.identity import (
    RequestIdentity,
    bind_identity,
    current_identity,
)
from gradpilot.services.orchestration.tools import Tool, ToolRegistry, bind_caller_identity


def recording_tool(name="readSheet", multi_tenant=True):
    calls = []

    async def execute(arguments):
        calls.append(dict(arguments))
        await asyncio.sleep(0)
        return {"owner": arguments.get("user_id")}

    tool = Tool(
        name=name,
        description="Read a spreadsheet owned by the caller",
        execute=execute,
        parameters={
            "type": "object",
            "properties": {"user_id": {"type": "string"}, "sheet": {"type": "string"}},
            "required": ["user_id", "sheet"],
        },
        multi_tenant=multi_tenant,
    )
    return tool, calls


class TestIdentityBinding:
    def test_bind_and_release(self):
        assert current_identity() is None

        with bind_identity(RequestIdentity(user_id="alice", access_token="tok")) as identity:
            assert current_identity() is identity
            assert user_id_var.get() == "alice"

        assert current_identity() is None
        assert user_id_var.get() is None

    def test_released_on_error(self):
        with pytest.raises(RuntimeError):
            with bind_identity(RequestIdentity(user_id="alice")):
                raise RuntimeError("boom")
        assert current_identity() is None

    def test_token_hidden_from_repr(self):
        assert "tok-secret" not in repr(RequestIdentity(user_id="alice", access_token="tok-secret"))

    def test_expiry(self):
        from datetime import datetime, timedelta, timezone

        now = datetime(2025, 3, 1, 12, tzinfo=timezone.utc)
        assert RequestIdentity(user_id="a", expires_at=now - timedelta(minutes=1)).is_expired(now)
        assert not RequestIdentity(user_id="a", expires_at=now + timedelta(minutes=1)).is_expired(now)
        assert not RequestIdentity(user_id="a").is_expired(now)

    def test_from_context(self, user_context):
        identity = RequestIdentity.from_context(user_context)
        assert identity.user_id == "user-1"
        assert identity.access_token == "token-1"


class TestCallerInjection:
    @pytest.mark.asyncio
    async def test_injected_user_id_overrides_oracle_value(self):
        tool, calls = recording_tool()
        wrapped = bind_caller_identity(tool)

        with bind_identity(RequestIdentity(user_id="alice")):
            result = await wrapped.run({"sheet": "applications", "user_id": "mallory"})

        assert result == {"owner": "alice"}
        assert calls == [{"sheet": "applications", "user_id": "alice"}]

    @pytest.mark.asyncio
    async def test_multi_tenant_tool_requires_identity(self):
        wrapped = bind_caller_identity(recording_tool()[0])

        with pytest.raises(ToolError, match="no caller identity"):
            await wrapped.run({"sheet": "applications"})

    def test_shared_tool_is_not_wrapped(self):
        tool, _ = recording_tool(name="webSearch", multi_tenant=False)
        assert bind_caller_identity(tool) is tool

    @pytest.mark.asyncio
    async def test_concurrent_callers_are_isolated(self):
        tool, calls = recording_tool()
        wrapped = bind_caller_identity(tool)

        async def run_as(user_id):
            with bind_identity(RequestIdentity(user_id=user_id)):
                results = []
                for _ in range(5):
                    results.append(await wrapped.run({"sheet": "s", "user_id": "oracle-guess"}))
                    await asyncio.sleep(0)
                return results

        users = [f"user-{i}" for i in range(6)]
        outcomes = await asyncio.gather(*(run_as(user) for user in users))

        for user, results in zip(users, outcomes):
            assert all(result == {"owner": user} for result in results)
        assert len(calls) == 30


class TestTool:
    def test_declaration_hides_user_id_for_multi_tenant_tools(self):
        declaration = recording_tool()[0].declaration()
        parameters = declaration["function"]["parameters"]

        assert declaration["type"] == "function"
        assert declaration["function"]["name"] == "readSheet"
        assert "user_id" not in parameters["properties"]
        assert parameters["required"] == ["sheet"]

    def test_declaration_keeps_parameters_for_shared_tools(self):
        parameters = recording_tool(multi_tenant=False)[0].declaration()["function"]["parameters"]
        assert "user_id" in parameters["properties"]

    @pytest.mark.asyncio
    async def test_executor_failure_becomes_tool_error(self):
        async def execute(arguments):
            raise KeyError("sheet")

        tool = Tool(name="readSheet", description="", execute=execute)

        with pytest.raises(ToolError) as excinfo:
            await tool.run({})

        assert excinfo.value.tool_name == "readSheet"
        assert str(excinfo.value).startswith("readSheet: KeyError")


class TestToolRegistry:
    def test_register_and_resolve_in_order(self):
        search, _ = recording_tool(name="webSearch", multi_tenant=False)
        sheet, _ = recording_tool(name="readSheet")
        registry = ToolRegistry([search, sheet])

        assert len(registry) == 2
        assert "webSearch" in registry
        assert registry.resolve(["readSheet", "missing", "webSearch", "readSheet"]) == [sheet, search]

    def test_duplicate_registration_rejected(self):
        tool, _ = recording_tool()
        with pytest.raises(ValueError):
            ToolRegistry([tool, tool])
