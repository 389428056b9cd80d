"""Unit tests for ToolServerRegistry using an in-memory transport."""

import pytest
from mcp import types
from mcp.shared.exceptions import McpError

from agent_mediator.errors import (
    InvalidServerSpecError,
    PermissionDeniedError,
    RemoteToolError,
    ServerNotConnectedError,
    UnknownServerError,
)
from agent_mediator.mcp.models import McpConfig, ServerSpec, ServerState
from agent_mediator.mcp.registry import ToolServerRegistry
from agent_mediator.permissions.engine import PermissionEngine
from agent_mediator.permissions.models import PermissionPolicy
from agent_mediator.schemas.domain import PermissionType

DEMO = {"name": "demo", "command": "node", "args": ["demo.js"]}
NOTES_URI = "file:///docs/notes.md"


@pytest.fixture
def registry(engine: PermissionEngine, fake_transport) -> ToolServerRegistry:
    return ToolServerRegistry(engine, fake_transport)


class TestLifecycle:
    """Test the registered -> connecting -> connected -> disconnected path."""

    @pytest.mark.asyncio
    async def test_register_connect_call_disconnect(self, registry: ToolServerRegistry, fake_transport) -> None:
        fake_transport.serve("demo", tools=["echo"], resources=[NOTES_URI], prompts=["summarize"])

        server_id = registry.register_server(DEMO)
        assert registry.get_server(server_id).state == ServerState.registered
        assert fake_transport.connect_calls == []

        assert await registry.connect_server(server_id) is True
        info = registry.get_server(server_id)
        assert info.state == ServerState.connected
        assert info.tool_count == 1
        assert info.connected_at is not None
        assert [t.name for t in registry.get_tools()] == ["echo"]
        assert registry.get_tool("echo").server_id == server_id
        assert [r.uri for r in registry.get_resources()] == [NOTES_URI]
        assert [p.name for p in registry.get_prompts()] == ["summarize"]

        outcome = await registry.execute_tool("echo", {"text": "hi"})
        assert outcome.text == "echo ok"
        assert outcome.server_id == server_id
        assert outcome.content == [{"type": "text", "text": "echo ok"}]
        assert fake_transport.opened["demo"].calls == [("echo", {"text": "hi"})]

        await registry.disconnect_server(server_id)
        info = registry.get_server(server_id)
        assert info.state == ServerState.disconnected
        assert [h.state for h in info.history] == [
            ServerState.registered,
            ServerState.connecting,
            ServerState.connected,
            ServerState.disconnected,
        ]
        assert fake_transport.opened["demo"].closed is True
        assert registry.get_tools() == []

    @pytest.mark.asyncio
    async def test_connect_twice_is_a_no_op(self, registry: ToolServerRegistry, fake_transport) -> None:
        server_id = registry.register_server(DEMO)

        assert await registry.connect_server(server_id) is True
        assert await registry.connect_server(server_id) is True
        assert fake_transport.connect_calls == ["demo"]

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, registry: ToolServerRegistry) -> None:
        server_id = registry.register_server(DEMO)

        await registry.disconnect_server(server_id)
        assert registry.get_server(server_id).state == ServerState.registered

        await registry.connect_server(server_id)
        await registry.disconnect_server(server_id)
        await registry.disconnect_server(server_id)
        assert registry.get_server(server_id).state == ServerState.disconnected

    @pytest.mark.asyncio
    async def test_disconnected_server_cannot_reconnect(self, registry: ToolServerRegistry, fake_transport) -> None:
        server_id = registry.register_server(DEMO)
        await registry.connect_server(server_id)
        await registry.disconnect_server(server_id)

        assert await registry.connect_server(server_id) is False
        assert fake_transport.connect_calls == ["demo"]

        fresh_id = registry.register_server(DEMO)
        assert fresh_id != server_id
        assert await registry.connect_server(fresh_id) is True

    @pytest.mark.asyncio
    async def test_only_advertised_kinds_are_discovered(self, registry: ToolServerRegistry, fake_transport) -> None:
        fake_transport.serve(
            "demo",
            tools=["echo"],
            resources=[NOTES_URI],
            capabilities=types.ServerCapabilities(tools=types.ToolsCapability()),
        )
        server_id = registry.register_server(DEMO)

        await registry.connect_server(server_id)

        assert [t.name for t in registry.get_tools()] == ["echo"]
        assert registry.get_resources() == []
        assert "tools" in registry.get_server(server_id).capabilities


class TestFailures:
    @pytest.mark.asyncio
    async def test_launch_failure_marks_server_failed(self, registry: ToolServerRegistry, fake_transport) -> None:
        fake_transport.fail("demo", FileNotFoundError("node: not found"))
        server_id = registry.register_server(DEMO)

        assert await registry.connect_server(server_id) is False
        info = registry.get_server(server_id)
        assert info.state == ServerState.failed
        assert "node: not found" in info.error_message

        assert await registry.connect_server(server_id) is False
        assert fake_transport.connect_calls == ["demo"]
        assert registry.get_server(server_id).state == ServerState.failed

    @pytest.mark.asyncio
    async def test_permission_denial_keeps_server_registered(self, fake_transport) -> None:
        engine = PermissionEngine(PermissionPolicy(system_wide_allowed=set()))
        registry = ToolServerRegistry(engine, fake_transport)
        server_id = registry.register_server(DEMO)

        assert await registry.connect_server(server_id, correlation_id="corr-deny") is False

        assert registry.get_server(server_id).state == ServerState.registered
        assert fake_transport.connect_calls == []
        [grant] = engine.get_grants()
        assert grant.type == PermissionType.mcp_connect
        assert grant.correlation_id == "corr-deny"
        assert grant.request.command == "node demo.js"

    @pytest.mark.asyncio
    async def test_execute_on_disconnected_server_makes_no_call(
        self, registry: ToolServerRegistry, fake_transport, engine: PermissionEngine
    ) -> None:
        fake_transport.serve("demo", tools=["echo"])
        server_id = registry.register_server(DEMO)
        await registry.connect_server(server_id)
        await registry.disconnect_server(server_id)
        grants_before = len(engine.get_grants())

        with pytest.raises(ServerNotConnectedError) as exc_info:
            await registry.execute_tool("echo", correlation_id="corr-x")

        assert exc_info.value.correlation_id == "corr-x"
        assert fake_transport.opened["demo"].calls == []
        assert len(engine.get_grants()) == grants_before

    @pytest.mark.asyncio
    async def test_execute_on_named_server_without_tool(self, registry: ToolServerRegistry, fake_transport) -> None:
        fake_transport.serve("demo", tools=["echo"])
        server_id = registry.register_server(DEMO)
        await registry.connect_server(server_id)

        with pytest.raises(ServerNotConnectedError):
            await registry.execute_tool("missing", server_id=server_id)
        with pytest.raises(UnknownServerError):
            await registry.execute_tool("echo", server_id="not-an-id")

    @pytest.mark.asyncio
    async def test_execute_denied_after_connect(self, fake_transport) -> None:
        policy = PermissionPolicy()
        engine = PermissionEngine(policy)
        registry = ToolServerRegistry(engine, fake_transport)
        fake_transport.serve("demo", tools=["echo"])
        server_id = registry.register_server(DEMO)
        await registry.connect_server(server_id)
        policy.system_wide_allowed.clear()

        with pytest.raises(PermissionDeniedError):
            await registry.execute_tool("echo")
        assert fake_transport.opened["demo"].calls == []

    @pytest.mark.asyncio
    async def test_remote_error_result_raises(self, registry: ToolServerRegistry, fake_transport) -> None:
        failing = types.CallToolResult(content=[types.TextContent(type="text", text="boom")], isError=True)
        fake_transport.serve("demo", tools=["explode"], tool_results={"explode": failing})
        server_id = registry.register_server(DEMO)
        await registry.connect_server(server_id)

        with pytest.raises(RemoteToolError) as exc_info:
            await registry.execute_tool("explode", correlation_id="corr-boom")

        assert exc_info.value.diagnostic == "boom"
        assert exc_info.value.server_id == server_id
        assert exc_info.value.correlation_id == "corr-boom"
        assert registry.get_server(server_id).state == ServerState.connected

    @pytest.mark.asyncio
    async def test_protocol_error_raises_remote_tool_error(self, registry: ToolServerRegistry, fake_transport) -> None:
        error = McpError(types.ErrorData(code=types.INVALID_PARAMS, message="bad arguments"))
        fake_transport.serve("demo", tools=["echo"], tool_results={"echo": error})
        server_id = registry.register_server(DEMO)
        await registry.connect_server(server_id)

        with pytest.raises(RemoteToolError) as exc_info:
            await registry.execute_tool("echo")

        assert exc_info.value.diagnostic == "bad arguments"

    @pytest.mark.asyncio
    async def test_channel_loss_moves_server_to_disconnected(
        self, registry: ToolServerRegistry, fake_transport
    ) -> None:
        fake_transport.serve("demo", tools=["echo"])
        server_id = registry.register_server(DEMO)
        await registry.connect_server(server_id)

        fake_transport.opened["demo"].drop(EOFError("stdout closed"))

        info = registry.get_server(server_id)
        assert info.state == ServerState.disconnected
        assert "stdout closed" in info.error_message
        assert registry.get_tools() == []
        with pytest.raises(ServerNotConnectedError):
            await registry.execute_tool("echo")

    def test_unknown_server_id_raises(self, registry: ToolServerRegistry) -> None:
        with pytest.raises(UnknownServerError):
            registry.get_server("nope")

    @pytest.mark.asyncio
    async def test_unknown_server_id_raises_on_connect(self, registry: ToolServerRegistry) -> None:
        with pytest.raises(UnknownServerError):
            await registry.connect_server("nope")
        with pytest.raises(UnknownServerError):
            await registry.disconnect_server("nope")

    @pytest.mark.parametrize(
        "spec",
        [
            {"name": "", "command": "node"},
            {"name": "   ", "command": "node"},
            {"name": "demo"},
            {"name": "demo", "command": "  "},
            {"name": "remote", "transport": "streamable_http"},
            {"name": "demo", "command": "node", "unexpected": True},
        ],
    )
    def test_invalid_spec_is_rejected(self, registry: ToolServerRegistry, spec) -> None:
        with pytest.raises(InvalidServerSpecError):
            registry.register_server(spec)

        assert registry.get_servers() == []


class TestResources:
    @pytest.mark.asyncio
    async def test_read_resource(self, registry: ToolServerRegistry, fake_transport) -> None:
        fake_transport.serve("demo", resources=[NOTES_URI])
        server_id = registry.register_server(DEMO)
        await registry.connect_server(server_id)

        content = await registry.read_resource(NOTES_URI)

        assert content.server_id == server_id
        assert content.text == f"content of {NOTES_URI}"
        assert content.mime_type == "text/plain"
        assert fake_transport.opened["demo"].reads == [NOTES_URI]
        assert registry.get_resource(NOTES_URI).name == "notes.md"

    @pytest.mark.asyncio
    async def test_read_unknown_resource_raises(self, registry: ToolServerRegistry) -> None:
        with pytest.raises(ServerNotConnectedError):
            await registry.read_resource("file:///missing.txt")


class TestStatsAndCleanup:
    @pytest.mark.asyncio
    async def test_stats_are_live(self, registry: ToolServerRegistry, fake_transport) -> None:
        fake_transport.serve("demo", tools=["a", "b"], resources=[NOTES_URI])
        demo_id = registry.register_server(DEMO)
        registry.register_server({"name": "idle", "command": "idle-server"})
        await registry.connect_server(demo_id)

        stats = registry.get_stats()
        assert stats.total_servers == 2
        assert stats.connected_servers == 1
        assert stats.total_tools == 2
        assert stats.total_resources == 1

        await registry.disconnect_server(demo_id)
        assert registry.get_stats().total_tools == 0

    @pytest.mark.asyncio
    async def test_cleanup_continues_past_close_errors(self, registry: ToolServerRegistry, fake_transport) -> None:
        fake_transport.serve("one", tools=["a"])
        fake_transport.serve("two", tools=["b"])
        one = registry.register_server({"name": "one", "command": "one"})
        two = registry.register_server({"name": "two", "command": "two"})
        await registry.connect_server(one)
        await registry.connect_server(two)

        async def broken_close() -> None:
            raise RuntimeError("pipe already closed")

        fake_transport.opened["one"].aclose = broken_close

        report = await registry.cleanup()

        assert report.closed == 1
        assert len(report.errors) == 1
        assert "pipe already closed" in report.errors[0]
        assert fake_transport.opened["two"].closed is True
        assert registry.get_servers() == []

        again = await registry.cleanup()
        assert again.closed == 0
        assert again.errors == []

    @pytest.mark.asyncio
    async def test_initialize_registers_and_auto_connects(self, engine: PermissionEngine, fake_transport) -> None:
        config = McpConfig(auto_connect=True, servers=[ServerSpec(**DEMO)])
        registry = ToolServerRegistry(engine, fake_transport, config)

        [server_id] = await registry.initialize()

        assert registry.get_server(server_id).state == ServerState.connected
