"""MCP tool-server registry and transports."""

from .models import (
    McpConfig,
    McpStats,
    PromptDescriptor,
    ResourceContent,
    ResourceDescriptor,
    ServerInfo,
    ServerSpec,
    ServerState,
    ToolCallOutcome,
    ToolDescriptor,
    TransportKind,
)
from .registry import ToolServerRegistry
from .transport import McpConnection, McpTransport, SdkMcpTransport, SessionMcpConnection

__all__ = [
    "McpConfig",
    "McpConnection",
    "McpStats",
    "McpTransport",
    "PromptDescriptor",
    "ResourceContent",
    "ResourceDescriptor",
    "SdkMcpTransport",
    "ServerInfo",
    "ServerSpec",
    "ServerState",
    "SessionMcpConnection",
    "ToolCallOutcome",
    "ToolDescriptor",
    "ToolServerRegistry",
    "TransportKind",
]
