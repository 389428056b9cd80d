from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pytest
from dotenv import load_dotenv
from mcp import types

from agent_mediator.mcp.models import ServerSpec
from agent_mediator.permissions.engine import PermissionEngine
from agent_mediator.permissions.models import PermissionPolicy

# Load test/.env early so fixtures can read overrides via os.getenv
TEST_ROOT = Path(__file__).resolve().parent
load_dotenv(TEST_ROOT / ".env", override=False)


class FakeConnection:
    """In-memory stand-in for an initialized MCP channel."""

    def __init__(
        self,
        *,
        tools: Iterable[str] = (),
        resources: Iterable[str] = (),
        prompts: Iterable[str] = (),
        capabilities: Any = None,
        tool_results: Optional[Dict[str, Any]] = None,
        on_lost: Any = None,
    ) -> None:
        self.server_capabilities = capabilities
        self._tools = [
            types.Tool(name=name, description=f"{name} tool", inputSchema={"type": "object", "properties": {}})
            for name in tools
        ]
        self._resources = [
            types.Resource(uri=uri, name=uri.rsplit("/", 1)[-1], mimeType="text/plain") for uri in resources
        ]
        self._prompts = [types.Prompt(name=name, description=f"{name} prompt", arguments=[]) for name in prompts]
        self.tool_results = dict(tool_results or {})
        self.on_lost = on_lost
        self.calls: List[tuple] = []
        self.reads: List[str] = []
        self.closed = False

    @property
    def is_alive(self) -> bool:
        return not self.closed

    async def list_tools(self) -> Any:
        return types.ListToolsResult(tools=self._tools)

    async def list_resources(self) -> Any:
        return types.ListResourcesResult(resources=self._resources)

    async def list_prompts(self) -> Any:
        return types.ListPromptsResult(prompts=self._prompts)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        self.calls.append((name, arguments))
        result = self.tool_results.get(name)
        if isinstance(result, BaseException):
            raise result
        if result is None:
            result = types.CallToolResult(content=[types.TextContent(type="text", text=f"{name} ok")], isError=False)
        return result

    async def read_resource(self, uri: str) -> Any:
        self.reads.append(uri)
        return types.ReadResourceResult(
            contents=[types.TextResourceContents(uri=uri, mimeType="text/plain", text=f"content of {uri}")]
        )

    async def aclose(self) -> None:
        self.closed = True

    def drop(self, error: Optional[BaseException] = None) -> None:
        """Simulate the far side going away."""
        self.closed = True
        if self.on_lost is not None:
            self.on_lost(error)


class FakeTransport:
    """Transport that hands out ``FakeConnection`` objects configured per server name."""

    def __init__(self) -> None:
        self.behaviours: Dict[str, Dict[str, Any]] = {}
        self.failures: Dict[str, BaseException] = {}
        self.opened: Dict[str, FakeConnection] = {}
        self.connect_calls: List[str] = []

    def serve(self, name: str, **behaviour: Any) -> None:
        self.behaviours[name] = behaviour

    def fail(self, name: str, error: BaseException) -> None:
        self.failures[name] = error

    async def connect(self, spec: ServerSpec, *, timeout: float, on_lost: Any = None) -> FakeConnection:
        self.connect_calls.append(spec.name)
        if spec.name in self.failures:
            raise self.failures[spec.name]
        connection = FakeConnection(on_lost=on_lost, **self.behaviours.get(spec.name, {}))
        self.opened[spec.name] = connection
        return connection


@pytest.fixture
def policy() -> PermissionPolicy:
    return PermissionPolicy()


@pytest.fixture
def engine(policy: PermissionPolicy) -> PermissionEngine:
    return PermissionEngine(policy)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()
