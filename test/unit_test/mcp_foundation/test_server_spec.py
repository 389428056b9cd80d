import pytest
from pydantic import ValidationError

from agent_mediator.mcp.models import (
    ALLOWED_TRANSITIONS,
    McpConfig,
    ServerSpec,
    ServerState,
    TransportKind,
)
from agent_mediator.mcp.transport import SdkMcpTransport, SessionMcpConnection


class TestServerSpec:
    def test_stdio_spec_defaults(self) -> None:
        spec = ServerSpec(name="demo", command="node", args=["demo.js"])

        assert spec.transport == TransportKind.stdio
        assert spec.env is None
        assert spec.url is None

    def test_http_spec_requires_url(self) -> None:
        spec = ServerSpec(name="remote", transport="streamable_http", url="http://localhost:8000/mcp/")

        assert spec.command is None
        with pytest.raises(ValidationError):
            ServerSpec(name="remote", transport="sse")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"name": "", "command": "node"},
            {"name": " ", "command": "node"},
            {"name": "demo"},
            {"name": "demo", "command": ""},
            {"name": "demo", "command": "node", "transport": "carrier-pigeon"},
        ],
    )
    def test_invalid_specs(self, kwargs) -> None:
        with pytest.raises(ValidationError):
            ServerSpec(**kwargs)


class TestStateMachine:
    def test_terminal_states_have_no_exits(self) -> None:
        assert ALLOWED_TRANSITIONS[ServerState.disconnected] == ()
        assert ALLOWED_TRANSITIONS[ServerState.failed] == ()

    def test_every_state_is_listed(self) -> None:
        assert set(ALLOWED_TRANSITIONS) == set(ServerState)


class TestSdkTransport:
    @pytest.mark.parametrize(
        "spec",
        [
            ServerSpec(name="local", command="node", args=["demo.js"], env={"DEBUG": "1"}),
            ServerSpec(name="http", transport=TransportKind.streamable_http, url="http://localhost:8000/mcp/"),
            ServerSpec(name="sse", transport=TransportKind.sse, url="http://localhost:8000/sse"),
        ],
    )
    def test_stream_factory_for_each_transport(self, spec: ServerSpec) -> None:
        factory = SdkMcpTransport()._streams_for(spec)

        assert callable(factory)

    @pytest.mark.asyncio
    async def test_closed_connection_rejects_calls(self) -> None:
        connection = SessionMcpConnection("idle", lambda: None, heartbeat_interval=1.0, close_timeout=1.0)

        assert connection.is_alive is False
        with pytest.raises(ConnectionError):
            await connection.list_tools()
        await connection.aclose()


def test_mcp_config_defaults() -> None:
    config = McpConfig()

    assert config.auto_connect is False
    assert config.servers == []
    assert config.connect_timeout_seconds == 30.0
