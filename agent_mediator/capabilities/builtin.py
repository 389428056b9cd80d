from __future__ import annotations

"""Built-in capability handlers and the fixed catalog.

Handlers translate a validated request variant into subsystem calls. They
forward ``ctx.correlation_id`` into every permission-gated operation so the
result and its grants share one audit token.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, List, Optional, Union

from ..errors import FileAccessError, RequestValidationError, ServerNotConnectedError
from ..mcp.models import McpStats, ResourceContent, ResourceDescriptor, ServerInfo, ToolCallOutcome, ToolDescriptor
from ..schemas.base import BaseSchema
from ..schemas.domain import PermissionRequest, PermissionScope, PermissionType
from ..shell.models import CommandRecord, SessionInfo, SessionStats, ShellResult
from .base import CapabilityCategory, CapabilityContext, CapabilityEntry, Subsystem
from .requests import (
    FILE_READ_ADAPTER,
    FILE_WRITE_ADAPTER,
    RESOURCE_ADAPTER,
    SERVER_ADAPTER,
    SESSION_INFO_ADAPTER,
    SHELL_EXECUTE_ADAPTER,
    TOOL_ADAPTER,
    FileReadRequest,
    FileWriteRequest,
    ResourceInfoRequest,
    ResourceListRequest,
    ResourceReadRequest,
    ServerConnectRequest,
    ServerDisconnectRequest,
    ServerListRequest,
    ServerRegisterRequest,
    ServerStatusRequest,
    SessionFailuresRequest,
    SessionHistoryRequest,
    SessionListRequest,
    SessionStatsRequest,
    ShellExecuteRequest,
    ToolExecuteRequest,
    ToolInfoRequest,
    ToolListRequest,
)

logger = logging.getLogger(__name__)

_BINARY_SNIFF_BYTES = 8192


class ServerRegistration(BaseSchema):
    server_id: str


class ServerConnection(BaseSchema):
    server_id: str
    connected: bool
    server: ServerInfo


class FileContent(BaseSchema):
    path: str
    content: str
    size: int
    total_lines: int
    line_range: Optional[List[int]] = None
    encoding: str


class FileWritten(BaseSchema):
    path: str
    bytes_written: int
    created: bool


def _unreachable(capability: str, request: Any) -> None:
    raise AssertionError(f"unhandled request variant for {capability}: {type(request).__name__}")


class EnhancedShellCapability:
    """Run a command in a managed shell session."""

    async def execute(self, ctx: CapabilityContext, request: ShellExecuteRequest) -> ShellResult:
        session = ctx.shells.get_session(request.session_id)
        result = await session.execute(
            request.command,
            request.working_directory,
            request.timeout_seconds,
            correlation_id=ctx.correlation_id,
        )
        return result.raise_for_status()


class ShellSessionInfoCapability:
    """Report shell session ids, statistics and command history."""

    async def execute(
        self,
        ctx: CapabilityContext,
        request: Union[SessionListRequest, SessionStatsRequest, SessionHistoryRequest, SessionFailuresRequest],
    ) -> Union[List[SessionInfo], SessionStats, List[SessionStats], List[CommandRecord]]:
        shells = ctx.shells
        if isinstance(request, SessionListRequest):
            return [shells.get_session(session_id).get_session_info() for session_id in shells.get_session_ids()]
        if isinstance(request, SessionStatsRequest):
            if request.session_id is None:
                return shells.get_all_stats()
            return shells.get_session(request.session_id).get_stats()
        if isinstance(request, SessionHistoryRequest):
            return shells.get_session(request.session_id).get_history(request.limit)
        if isinstance(request, SessionFailuresRequest):
            return shells.get_session(request.session_id).get_recent_failures(request.limit)
        _unreachable("shell_session_info", request)


class McpServerCapability:
    """Register, connect, disconnect and inspect MCP tool servers."""

    async def execute(
        self,
        ctx: CapabilityContext,
        request: Union[
            ServerRegisterRequest, ServerConnectRequest, ServerDisconnectRequest, ServerListRequest, ServerStatusRequest
        ],
    ) -> Union[ServerRegistration, ServerConnection, ServerInfo, List[ServerInfo], McpStats]:
        servers = ctx.servers
        if isinstance(request, ServerRegisterRequest):
            spec = request.model_dump(exclude={"operation", "correlation_id"}, exclude_none=True)
            return ServerRegistration(server_id=servers.register_server(spec))
        if isinstance(request, ServerConnectRequest):
            connected = await servers.connect_server(request.server_id, correlation_id=ctx.correlation_id)
            return ServerConnection(
                server_id=request.server_id, connected=connected, server=servers.get_server(request.server_id)
            )
        if isinstance(request, ServerDisconnectRequest):
            await servers.disconnect_server(request.server_id)
            return servers.get_server(request.server_id)
        if isinstance(request, ServerListRequest):
            return servers.get_servers()
        if isinstance(request, ServerStatusRequest):
            if request.server_id is None:
                return servers.get_stats()
            return servers.get_server(request.server_id)
        _unreachable("mcp_server", request)


class McpToolCapability:
    """List, describe and execute tools discovered on connected MCP servers."""

    async def execute(
        self, ctx: CapabilityContext, request: Union[ToolListRequest, ToolExecuteRequest, ToolInfoRequest]
    ) -> Union[List[ToolDescriptor], ToolDescriptor, ToolCallOutcome]:
        servers = ctx.servers
        if isinstance(request, ToolListRequest):
            tools = servers.get_tools()
            if request.server_id is not None:
                tools = [tool for tool in tools if tool.server_id == request.server_id]
            return tools
        if isinstance(request, ToolInfoRequest):
            tool = servers.get_tool(request.tool_name)
            if tool is None:
                raise ServerNotConnectedError(request.tool_name, correlation_id=ctx.correlation_id)
            return tool
        if isinstance(request, ToolExecuteRequest):
            return await servers.execute_tool(
                request.tool_name,
                request.arguments,
                server_id=request.server_id,
                correlation_id=ctx.correlation_id,
            )
        _unreachable("mcp_tool", request)


class McpResourceCapability:
    """List, describe and read resources discovered on connected MCP servers."""

    async def execute(
        self,
        ctx: CapabilityContext,
        request: Union[ResourceListRequest, ResourceReadRequest, ResourceInfoRequest],
    ) -> Union[List[ResourceDescriptor], ResourceDescriptor, ResourceContent]:
        servers = ctx.servers
        if isinstance(request, ResourceListRequest):
            resources = servers.get_resources()
            if request.server_id is not None:
                resources = [resource for resource in resources if resource.server_id == request.server_id]
            return resources
        if isinstance(request, ResourceInfoRequest):
            resource = servers.get_resource(request.uri)
            if resource is None:
                raise ServerNotConnectedError(request.uri, correlation_id=ctx.correlation_id)
            return resource
        if isinstance(request, ResourceReadRequest):
            return await servers.read_resource(request.uri, correlation_id=ctx.correlation_id)
        _unreachable("mcp_resource", request)


def _resolve_path(ctx: CapabilityContext, raw: str) -> Path:
    root = ctx.permissions.policy.project_root
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = (root or Path.cwd()) / path
    return path.resolve()


class FileReadCapability:
    """Read a text file inside the project, with size and line-range limits."""

    async def execute(self, ctx: CapabilityContext, request: FileReadRequest) -> FileContent:
        path = _resolve_path(ctx, request.path)
        await ctx.permissions.require(
            PermissionRequest(
                type=PermissionType.file_read,
                scope=PermissionScope.project_only,
                path=str(path),
                description=f"Read file {path}",
                correlation_id=ctx.correlation_id,
            )
        )
        return await asyncio.to_thread(self._read, path, request, ctx.correlation_id)

    @staticmethod
    def _read(path: Path, request: FileReadRequest, correlation_id: str) -> FileContent:
        if not path.exists():
            raise RequestValidationError(f"File does not exist: {path}", correlation_id=correlation_id)
        if not path.is_file():
            raise RequestValidationError(f"Not a regular file: {path}", correlation_id=correlation_id)
        try:
            size = path.stat().st_size
            if size > request.max_size:
                raise RequestValidationError(
                    f"File too large: {size} bytes exceeds max_size {request.max_size}",
                    correlation_id=correlation_id,
                )
            raw = path.read_bytes()
        except OSError as exc:
            raise FileAccessError(str(path), str(exc), correlation_id=correlation_id) from exc

        if b"\x00" in raw[:_BINARY_SNIFF_BYTES]:
            raise RequestValidationError(f"Binary file cannot be read as text: {path}", correlation_id=correlation_id)
        try:
            text = raw.decode(request.encoding)
        except (LookupError, UnicodeDecodeError) as exc:
            raise RequestValidationError(
                f"Cannot decode {path} as {request.encoding}: {exc}", correlation_id=correlation_id
            ) from exc

        lines = text.splitlines(keepends=True)
        selected: Optional[List[int]] = None
        if request.line_range is not None:
            start, end = request.line_range
            end = min(end, len(lines))
            text = "".join(lines[start - 1 : end])
            selected = [start, end]
        return FileContent(
            path=str(path),
            content=text,
            size=size,
            total_lines=len(lines),
            line_range=selected,
            encoding=request.encoding,
        )


class FileWriteCapability:
    """Write a text file inside the project, optionally creating parent directories."""

    async def execute(self, ctx: CapabilityContext, request: FileWriteRequest) -> FileWritten:
        path = _resolve_path(ctx, request.path)
        await ctx.permissions.require(
            PermissionRequest(
                type=PermissionType.file_write,
                scope=PermissionScope.project_only,
                path=str(path),
                description=f"Write file {path}",
                correlation_id=ctx.correlation_id,
            )
        )
        return await asyncio.to_thread(self._write, path, request, ctx.correlation_id)

    @staticmethod
    def _write(path: Path, request: FileWriteRequest, correlation_id: str) -> FileWritten:
        existed = path.exists()
        if existed and not request.overwrite:
            raise RequestValidationError(
                f"File already exists and overwrite is disabled: {path}", correlation_id=correlation_id
            )
        if not path.parent.is_dir() and not request.create_dirs:
            raise RequestValidationError(
                f"Parent directory does not exist: {path.parent}", correlation_id=correlation_id
            )
        try:
            data = request.content.encode(request.encoding)
        except (LookupError, UnicodeEncodeError) as exc:
            raise RequestValidationError(
                f"Cannot encode content as {request.encoding}: {exc}", correlation_id=correlation_id
            ) from exc
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise FileAccessError(str(path), str(exc), correlation_id=correlation_id) from exc
        logger.debug("FileWriteCapability: path=%s bytes=%d created=%s", path, len(data), not existed)
        return FileWritten(path=str(path), bytes_written=len(data), created=not existed)


def builtin_catalog() -> List[CapabilityEntry]:
    """Return the fixed capability catalog registered by every ``CapabilityRegistry``."""
    return [
        CapabilityEntry(
            name="enhanced_shell",
            description="Execute shell commands in a persistent session with timeouts and usage statistics",
            category=CapabilityCategory.execution,
            permissions=(PermissionType.shell_execute,),
            dependencies=(Subsystem.shell_session, Subsystem.permissions),
            request_adapter=SHELL_EXECUTE_ADAPTER,
            handler=EnhancedShellCapability(),
        ),
        CapabilityEntry(
            name="shell_session_info",
            description="Inspect shell sessions: ids, statistics, history and recent failures",
            category=CapabilityCategory.session,
            permissions=(),
            dependencies=(Subsystem.shell_session,),
            request_adapter=SESSION_INFO_ADAPTER,
            handler=ShellSessionInfoCapability(),
        ),
        CapabilityEntry(
            name="mcp_server",
            description="Manage MCP tool servers: register, connect, disconnect, list and status",
            category=CapabilityCategory.mcp,
            permissions=(PermissionType.mcp_connect,),
            dependencies=(Subsystem.mcp_foundation, Subsystem.permissions),
            request_adapter=SERVER_ADAPTER,
            handler=McpServerCapability(),
        ),
        CapabilityEntry(
            name="mcp_tool",
            description="List, describe and execute tools on connected MCP servers",
            category=CapabilityCategory.mcp,
            permissions=(PermissionType.mcp_connect,),
            dependencies=(Subsystem.mcp_foundation, Subsystem.permissions),
            request_adapter=TOOL_ADAPTER,
            handler=McpToolCapability(),
        ),
        CapabilityEntry(
            name="mcp_resource",
            description="List, describe and read resources on connected MCP servers",
            category=CapabilityCategory.mcp,
            permissions=(PermissionType.mcp_connect,),
            dependencies=(Subsystem.mcp_foundation, Subsystem.permissions),
            request_adapter=RESOURCE_ADAPTER,
            handler=McpResourceCapability(),
        ),
        CapabilityEntry(
            name="file_read",
            description="Read project files with size limits, line ranges and binary detection",
            category=CapabilityCategory.file,
            permissions=(PermissionType.file_read,),
            dependencies=(Subsystem.permissions,),
            request_adapter=FILE_READ_ADAPTER,
            handler=FileReadCapability(),
        ),
        CapabilityEntry(
            name="file_write",
            description="Write project files, optionally creating parent directories",
            category=CapabilityCategory.file,
            permissions=(PermissionType.file_write,),
            dependencies=(Subsystem.permissions,),
            request_adapter=FILE_WRITE_ADAPTER,
            handler=FileWriteCapability(),
        ),
    ]
