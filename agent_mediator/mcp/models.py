from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import Field, model_validator

from ..schemas.base import BaseSchema
from ..schemas.domain import utc_now


class TransportKind(str, Enum):
    """
    Wire transport used to reach an MCP server.

    Attributes:
        stdio: Launch ``command`` as a child process and speak MCP over its stdio.
        streamable_http: Connect to ``url`` with the streamable HTTP client.
        sse: Connect to ``url`` with the SSE client.
    """
    stdio = "stdio"
    streamable_http = "streamable_http"
    sse = "sse"


class ServerSpec(BaseSchema):
    """Launch spec for one MCP tool server."""

    name: str = Field(..., min_length=1, max_length=128, examples=["demo", "github-mcp"])
    command: Optional[str] = Field(
        default=None,
        description="Executable to launch (required for the stdio transport).",
        examples=["node", "uvx"],
    )
    args: List[str] = Field(default_factory=list, examples=[["demo.js"]])
    env: Optional[Dict[str, str]] = Field(
        default=None, description="Extra environment for the server process; merged over the SDK's safe defaults."
    )
    cwd: Optional[str] = None
    transport: TransportKind = TransportKind.stdio
    url: Optional[str] = Field(
        default=None,
        description="Endpoint URL (required for the HTTP transports).",
        examples=["http://localhost:8000/mcp/"],
    )

    @model_validator(mode="after")
    def _check_target(self) -> "ServerSpec":
        if not self.name.strip():
            raise ValueError("name must not be blank")
        if self.transport == TransportKind.stdio:
            if not self.command or not self.command.strip():
                raise ValueError("command is required for the stdio transport")
        elif not self.url or not self.url.strip():
            raise ValueError(f"url is required for the {self.transport.value} transport")
        return self


class ServerState(str, Enum):
    registered = "registered"
    connecting = "connecting"
    connected = "connected"
    disconnected = "disconnected"
    failed = "failed"


ALLOWED_TRANSITIONS: Dict[ServerState, Tuple[ServerState, ...]] = {
    ServerState.registered: (ServerState.connecting,),
    ServerState.connecting: (ServerState.connected, ServerState.failed),
    ServerState.connected: (ServerState.disconnected,),
    ServerState.disconnected: (),
    ServerState.failed: (),
}


class ToolDescriptor(BaseSchema):
    server_id: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class ResourceDescriptor(BaseSchema):
    server_id: str
    uri: str
    name: str = ""
    description: str = ""
    mime_type: Optional[str] = None


class PromptDescriptor(BaseSchema):
    server_id: str
    name: str
    description: str = ""
    arguments: List[Dict[str, Any]] = Field(default_factory=list)


class StateTransition(BaseSchema):
    state: ServerState
    at: datetime = Field(default_factory=utc_now)
    note: str = ""


class ServerInfo(BaseSchema):
    """Read-only snapshot of a :class:`ToolServerRecord`."""

    id: str
    name: str
    spec: ServerSpec
    state: ServerState
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    tool_count: int = 0
    resource_count: int = 0
    prompt_count: int = 0
    registered_at: datetime
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    error_message: Optional[str] = None
    history: List[StateTransition] = Field(default_factory=list)


@dataclass
class ToolServerRecord:
    """
    Mutable per-server state owned exclusively by ``ToolServerRegistry``.

    Discovered descriptors stay on the record after disconnect (history); the
    registry filters them out of discovery results unless the record is
    ``connected``.
    """

    id: str
    spec: ServerSpec
    state: ServerState = ServerState.registered
    capabilities: Dict[str, Any] = field(default_factory=dict)
    tools: List[ToolDescriptor] = field(default_factory=list)
    resources: List[ResourceDescriptor] = field(default_factory=list)
    prompts: List[PromptDescriptor] = field(default_factory=list)
    registered_at: datetime = field(default_factory=utc_now)
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    error_message: Optional[str] = None
    history: List[StateTransition] = field(default_factory=list)
    connection: Any = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def to_info(self) -> ServerInfo:
        return ServerInfo(
            id=self.id,
            name=self.spec.name,
            spec=self.spec,
            state=self.state,
            capabilities=dict(self.capabilities),
            tool_count=len(self.tools),
            resource_count=len(self.resources),
            prompt_count=len(self.prompts),
            registered_at=self.registered_at,
            connected_at=self.connected_at,
            disconnected_at=self.disconnected_at,
            error_message=self.error_message,
            history=list(self.history),
        )


class ToolCallOutcome(BaseSchema):
    server_id: str
    tool_name: str
    text: str = ""
    content: List[Dict[str, Any]] = Field(default_factory=list)
    structured_content: Optional[Dict[str, Any]] = None


class ResourceContent(BaseSchema):
    server_id: str
    uri: str
    mime_type: Optional[str] = None
    text: Optional[str] = None
    blob: Optional[str] = Field(default=None, description="Base64-encoded binary content.")
    contents: List[Dict[str, Any]] = Field(default_factory=list)


class McpStats(BaseSchema):
    total_servers: int
    connected_servers: int
    total_tools: int
    total_resources: int
    total_prompts: int


class McpConfig(BaseSchema):
    """Settings for the tool-server registry."""

    connect_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description="Upper bound for launching a server and completing the MCP initialize handshake.",
    )
    close_timeout_seconds: float = Field(default=5.0, gt=0.0, le=120.0)
    heartbeat_interval_seconds: float = Field(
        default=15.0,
        gt=0.0,
        description="Idle connections are pinged at this interval; a failed ping marks the server disconnected.",
    )
    auto_connect: bool = Field(default=False, description="Connect configured servers during initialize().")
    servers: List[ServerSpec] = Field(default_factory=list)
