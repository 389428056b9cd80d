from __future__ import annotations

"""MCP tool-server registry.

``ToolServerRegistry`` tracks every registered tool server and drives it
through its connection state machine::

    registered -> connecting -> connected -> disconnected
                            \\-> failed

``disconnected`` and ``failed`` are terminal: a server is only reachable again
through a fresh ``register_server`` call, which creates a new record and id.

Connection and invocation are gated by a system-wide ``mcp_connect`` grant
from the :class:`~agent_mediator.permissions.engine.PermissionEngine`.
Ordinary connection failures are reported through the return value and the
record state; exceptions are reserved for caller defects (unknown ids).
"""

import logging
from collections.abc import Mapping
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from mcp.shared.exceptions import McpError
from pydantic import ValidationError

from ..errors import (
    InvalidServerSpecError,
    RemoteToolError,
    ServerNotConnectedError,
    UnknownServerError,
)
from ..permissions.engine import PermissionEngine
from ..schemas.domain import PermissionRequest, PermissionScope, PermissionType, new_correlation_id, utc_now
from ..schemas.reports import CleanupReport
from .models import (
    ALLOWED_TRANSITIONS,
    McpConfig,
    McpStats,
    PromptDescriptor,
    ResourceContent,
    ResourceDescriptor,
    ServerInfo,
    ServerSpec,
    ServerState,
    StateTransition,
    ToolCallOutcome,
    ToolDescriptor,
    ToolServerRecord,
)
from .transport import McpConnection, McpTransport

logger = logging.getLogger(__name__)


def _dump(item: Any) -> Dict[str, Any]:
    if hasattr(item, "model_dump"):
        return item.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(item, Mapping):
        return dict(item)
    return {"value": item}


def _advertises(capabilities: Any, kind: str) -> bool:
    """Servers that report no capabilities at all are probed for every kind."""
    if capabilities is None:
        return True
    return getattr(capabilities, kind, None) is not None


def _remote_diagnostic(content: Iterable[Any]) -> str:
    texts = [getattr(item, "text", None) for item in content]
    return "\n".join(text for text in texts if text) or "remote tool reported an error"


class ToolServerRegistry:
    """
    Owner of the server table and every connection it holds.

    Notes:
        - Each record's state transitions are serialized by the record's own
          lock; different servers never wait on each other.
        - Tool and resource calls hold no lock while the round trip is in
          flight and apply no timeout.
        - ``get_stats`` and the discovery getters are computed live from the
          current state.
    """

    def __init__(
        self,
        permissions: PermissionEngine,
        transport: McpTransport,
        config: Optional[McpConfig] = None,
    ) -> None:
        self._permissions = permissions
        self._transport = transport
        self._config = config or McpConfig()
        self._servers: Dict[str, ToolServerRecord] = {}

    @property
    def config(self) -> McpConfig:
        return self._config

    async def initialize(self) -> List[str]:
        """
        Register configured servers and connect them when ``auto_connect`` is set.

        Returns:
            The ids of the registered servers.
        """
        server_ids = [self.register_server(spec) for spec in self._config.servers]
        if self._config.auto_connect:
            for server_id in server_ids:
                await self.connect_server(server_id)
        logger.info(
            "ToolServerRegistry.initialize: registered=%d auto_connect=%s",
            len(server_ids),
            self._config.auto_connect,
        )
        return server_ids

    def register_server(self, spec: Union[ServerSpec, Mapping[str, Any]]) -> str:
        """
        Validate ``spec`` and create a new record in ``registered`` state.

        No process or connection is started.

        Raises:
            InvalidServerSpecError: If the name or launch target is missing.
        """
        if not isinstance(spec, ServerSpec):
            try:
                spec = ServerSpec.model_validate(dict(spec))
            except (ValidationError, TypeError, ValueError) as exc:
                raise InvalidServerSpecError(str(exc)) from exc
        server_id = uuid4().hex
        record = ToolServerRecord(id=server_id, spec=spec)
        record.history.append(StateTransition(state=ServerState.registered))
        self._servers[server_id] = record
        logger.info("ToolServerRegistry.register_server: id=%s name=%s", server_id, spec.name)
        return server_id

    async def connect_server(self, server_id: str, *, correlation_id: Optional[str] = None) -> bool:
        """
        Connect a registered server and populate its discovered tools/resources.

        Returns:
            True when the server is connected. False when permission was
            denied (state stays ``registered``), when the handshake failed
            (state becomes ``failed``), or when the record is already terminal.

        Raises:
            UnknownServerError: If ``server_id`` was never registered.
        """
        record = self._record(server_id)
        correlation_id = correlation_id or new_correlation_id()
        async with record.lock:
            if record.state == ServerState.connected:
                return True
            if record.state != ServerState.registered:
                logger.debug(
                    "ToolServerRegistry.connect_server: id=%s state=%s, no-op", server_id, record.state.value
                )
                return False

            grant = await self._permissions.evaluate(self._connect_request(record, correlation_id))
            if not grant.granted:
                logger.info(
                    "ToolServerRegistry.connect_server: permission denied id=%s correlation_id=%s",
                    server_id,
                    correlation_id,
                )
                return False

            self._transition(record, ServerState.connecting)
            connection: Optional[McpConnection] = None
            try:
                connection = await self._transport.connect(
                    record.spec,
                    timeout=self._config.connect_timeout_seconds,
                    on_lost=lambda error: self._handle_channel_lost(server_id, error),
                )
                await self._discover(record, connection)
            except Exception as exc:
                if connection is not None:
                    await self._close_quietly(record, connection)
                record.error_message = f"{type(exc).__name__}: {exc}"
                self._transition(record, ServerState.failed, note=record.error_message)
                logger.warning(
                    "ToolServerRegistry.connect_server: failed id=%s name=%s error=%s",
                    server_id,
                    record.spec.name,
                    record.error_message,
                )
                return False

            record.connection = connection
            record.connected_at = utc_now()
            record.error_message = None
            self._transition(record, ServerState.connected)
            logger.info(
                "ToolServerRegistry.connect_server: connected id=%s name=%s tools=%d resources=%d",
                server_id,
                record.spec.name,
                len(record.tools),
                len(record.resources),
            )
            return True

    async def disconnect_server(self, server_id: str) -> None:
        """
        Move a connected server to ``disconnected`` and close its channel.

        Idempotent: any other state is left unchanged. Errors raised while
        closing the channel propagate after the state transition.
        """
        record = self._record(server_id)
        async with record.lock:
            if record.state != ServerState.connected:
                logger.debug(
                    "ToolServerRegistry.disconnect_server: id=%s state=%s, no-op", server_id, record.state.value
                )
                return
            connection = record.connection
            record.connection = None
            record.disconnected_at = utc_now()
            self._transition(record, ServerState.disconnected, note="explicit disconnect")
        if connection is not None:
            await connection.aclose()
        logger.info("ToolServerRegistry.disconnect_server: id=%s", server_id)

    async def execute_tool(
        self,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        *,
        server_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> ToolCallOutcome:
        """
        Invoke a tool on the connected server that provides it.

        Raises:
            ServerNotConnectedError: No connected server provides ``tool_name``.
            PermissionDeniedError: The ``mcp_connect`` grant was denied.
            RemoteToolError: The server reported an error.
            UnknownServerError: ``server_id`` was given but never registered.
        """
        correlation_id = correlation_id or new_correlation_id()
        record = self._resolve_tool(tool_name, server_id, correlation_id)
        connection = record.connection
        await self._permissions.require(
            PermissionRequest(
                type=PermissionType.mcp_connect,
                scope=PermissionScope.system_wide,
                description=f"Execute MCP tool '{tool_name}' on server '{record.spec.name}'",
                correlation_id=correlation_id,
            )
        )
        try:
            result = await connection.call_tool(tool_name, dict(arguments or {}))
        except McpError as exc:
            raise RemoteToolError(record.id, tool_name, exc.error.message, correlation_id=correlation_id) from exc
        except ConnectionError as exc:
            raise ServerNotConnectedError(tool_name, correlation_id=correlation_id) from exc

        content = list(getattr(result, "content", None) or [])
        if getattr(result, "isError", False):
            raise RemoteToolError(record.id, tool_name, _remote_diagnostic(content), correlation_id=correlation_id)
        texts = [getattr(item, "text", None) for item in content]
        return ToolCallOutcome(
            server_id=record.id,
            tool_name=tool_name,
            text="\n".join(text for text in texts if text),
            content=[_dump(item) for item in content],
            structured_content=getattr(result, "structuredContent", None),
        )

    async def read_resource(self, uri: str, *, correlation_id: Optional[str] = None) -> ResourceContent:
        """Read a resource from the connected server that advertises ``uri``."""
        correlation_id = correlation_id or new_correlation_id()
        record = self._resolve_resource(uri, correlation_id)
        connection = record.connection
        await self._permissions.require(
            PermissionRequest(
                type=PermissionType.mcp_connect,
                scope=PermissionScope.system_wide,
                description=f"Read MCP resource '{uri}' from server '{record.spec.name}'",
                correlation_id=correlation_id,
            )
        )
        try:
            result = await connection.read_resource(uri)
        except McpError as exc:
            raise RemoteToolError(record.id, uri, exc.error.message, correlation_id=correlation_id) from exc
        except ConnectionError as exc:
            raise ServerNotConnectedError(uri, correlation_id=correlation_id) from exc

        contents = list(getattr(result, "contents", None) or [])
        first = contents[0] if contents else None
        return ResourceContent(
            server_id=record.id,
            uri=uri,
            mime_type=getattr(first, "mimeType", None),
            text=getattr(first, "text", None),
            blob=getattr(first, "blob", None),
            contents=[_dump(item) for item in contents],
        )

    def get_servers(self) -> List[ServerInfo]:
        return [record.to_info() for record in list(self._servers.values())]

    def get_server(self, server_id: str) -> ServerInfo:
        return self._record(server_id).to_info()

    def get_tools(self) -> List[ToolDescriptor]:
        return [tool for record in self._connected() for tool in record.tools]

    def get_tool(self, tool_name: str) -> Optional[ToolDescriptor]:
        return next((tool for tool in self.get_tools() if tool.name == tool_name), None)

    def get_resources(self) -> List[ResourceDescriptor]:
        return [resource for record in self._connected() for resource in record.resources]

    def get_resource(self, uri: str) -> Optional[ResourceDescriptor]:
        return next((resource for resource in self.get_resources() if resource.uri == uri), None)

    def get_prompts(self) -> List[PromptDescriptor]:
        return [prompt for record in self._connected() for prompt in record.prompts]

    def get_stats(self) -> McpStats:
        connected = self._connected()
        return McpStats(
            total_servers=len(self._servers),
            connected_servers=len(connected),
            total_tools=sum(len(record.tools) for record in connected),
            total_resources=sum(len(record.resources) for record in connected),
            total_prompts=sum(len(record.prompts) for record in connected),
        )

    async def cleanup(self) -> CleanupReport:
        """
        Disconnect every server, continuing past individual failures, then clear the table.

        Returns:
            A report with the number of channels closed and one message per failure.
        """
        records = list(self._servers.values())
        closed = 0
        errors: List[str] = []
        for record in records:
            was_connected = record.state == ServerState.connected
            try:
                await self.disconnect_server(record.id)
            except Exception as exc:
                logger.error("ToolServerRegistry.cleanup: id=%s name=%s error=%r", record.id, record.spec.name, exc)
                errors.append(f"mcp server '{record.spec.name}' ({record.id}): {exc}")
            else:
                closed += int(was_connected)
        self._servers.clear()
        logger.info("ToolServerRegistry.cleanup: servers=%d closed=%d errors=%d", len(records), closed, len(errors))
        return CleanupReport(closed=closed, errors=errors)

    def _record(self, server_id: str) -> ToolServerRecord:
        try:
            return self._servers[server_id]
        except KeyError:
            raise UnknownServerError(server_id) from None

    def _connected(self) -> List[ToolServerRecord]:
        return [record for record in list(self._servers.values()) if record.state == ServerState.connected]

    def _resolve_tool(self, tool_name: str, server_id: Optional[str], correlation_id: str) -> ToolServerRecord:
        if server_id is not None:
            record = self._record(server_id)
            if record.state != ServerState.connected or record.connection is None:
                raise ServerNotConnectedError(f"{tool_name}@{record.spec.name}", correlation_id=correlation_id)
            if not any(tool.name == tool_name for tool in record.tools):
                raise ServerNotConnectedError(f"{tool_name}@{record.spec.name}", correlation_id=correlation_id)
            return record
        for record in self._connected():
            if record.connection is not None and any(tool.name == tool_name for tool in record.tools):
                return record
        raise ServerNotConnectedError(tool_name, correlation_id=correlation_id)

    def _resolve_resource(self, uri: str, correlation_id: str) -> ToolServerRecord:
        for record in self._connected():
            if record.connection is not None and any(resource.uri == uri for resource in record.resources):
                return record
        raise ServerNotConnectedError(uri, correlation_id=correlation_id)

    async def _discover(self, record: ToolServerRecord, connection: McpConnection) -> None:
        capabilities = getattr(connection, "server_capabilities", None)
        record.capabilities = _dump(capabilities) if capabilities is not None else {}

        tools: List[ToolDescriptor] = []
        if _advertises(capabilities, "tools"):
            listed = await connection.list_tools()
            for tool in getattr(listed, "tools", None) or []:
                tools.append(
                    ToolDescriptor(
                        server_id=record.id,
                        name=tool.name,
                        description=getattr(tool, "description", None) or "",
                        input_schema=dict(getattr(tool, "inputSchema", None) or {}),
                    )
                )

        resources: List[ResourceDescriptor] = []
        if _advertises(capabilities, "resources"):
            listed = await connection.list_resources()
            for resource in getattr(listed, "resources", None) or []:
                resources.append(
                    ResourceDescriptor(
                        server_id=record.id,
                        uri=str(resource.uri),
                        name=getattr(resource, "name", None) or "",
                        description=getattr(resource, "description", None) or "",
                        mime_type=getattr(resource, "mimeType", None),
                    )
                )

        prompts: List[PromptDescriptor] = []
        if _advertises(capabilities, "prompts"):
            listed = await connection.list_prompts()
            for prompt in getattr(listed, "prompts", None) or []:
                prompts.append(
                    PromptDescriptor(
                        server_id=record.id,
                        name=prompt.name,
                        description=getattr(prompt, "description", None) or "",
                        arguments=[_dump(argument) for argument in getattr(prompt, "arguments", None) or []],
                    )
                )

        record.tools, record.resources, record.prompts = tools, resources, prompts

    def _handle_channel_lost(self, server_id: str, error: Optional[BaseException]) -> None:
        record = self._servers.get(server_id)
        if record is None or record.state != ServerState.connected:
            return
        record.connection = None
        record.disconnected_at = utc_now()
        record.error_message = f"channel lost: {error!r}" if error is not None else "channel lost"
        self._transition(record, ServerState.disconnected, note=record.error_message)
        logger.warning("ToolServerRegistry: channel lost id=%s name=%s", server_id, record.spec.name)

    async def _close_quietly(self, record: ToolServerRecord, connection: McpConnection) -> None:
        try:
            await connection.aclose()
        except Exception as exc:
            logger.warning("ToolServerRegistry: closing %s after failed connect raised %r", record.id, exc)

    @staticmethod
    def _connect_request(record: ToolServerRecord, correlation_id: str) -> PermissionRequest:
        target = record.spec.url or " ".join([record.spec.command or "", *record.spec.args]).strip()
        return PermissionRequest(
            type=PermissionType.mcp_connect,
            scope=PermissionScope.system_wide,
            command=target,
            description=f"Connect to MCP server '{record.spec.name}'",
            correlation_id=correlation_id,
        )

    @staticmethod
    def _transition(record: ToolServerRecord, state: ServerState, *, note: str = "") -> None:
        if state not in ALLOWED_TRANSITIONS[record.state]:
            raise RuntimeError(f"Illegal MCP server transition {record.state.value} -> {state.value} for {record.id}")
        record.state = state
        record.history.append(StateTransition(state=state, note=note))
