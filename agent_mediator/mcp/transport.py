from __future__ import annotations

"""MCP transports.

The registry only depends on two small protocols:

- ``McpTransport.connect(spec, ...)`` opens a channel, performs the MCP
  ``initialize`` handshake and returns an ``McpConnection``.
- ``McpConnection`` exposes discovery and invocation calls plus ``aclose``.

``SdkMcpTransport`` is the production implementation on top of the official
``mcp`` SDK clients. The SDK clients are async context managers built on task
groups, which must be entered and exited by the same task; each connection
therefore runs inside a dedicated background task that holds the contexts
open until ``aclose`` (or until the channel is lost).
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Optional, Protocol, TextIO, Tuple

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from pydantic import AnyUrl

from .models import ServerSpec, TransportKind

logger = logging.getLogger(__name__)

LostCallback = Callable[[Optional[BaseException]], None]
StreamFactory = Callable[[], AsyncContextManager[Tuple[Any, Any]]]


class McpConnection(Protocol):
    """An open, initialized channel to one MCP server."""

    server_capabilities: Any

    @property
    def is_alive(self) -> bool: ...

    async def list_tools(self) -> Any: ...

    async def list_resources(self) -> Any: ...

    async def list_prompts(self) -> Any: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any: ...

    async def read_resource(self, uri: str) -> Any: ...

    async def aclose(self) -> None: ...


class McpTransport(Protocol):
    """Protocol for opening MCP connections from a :class:`ServerSpec`.

    ``on_lost`` is invoked (at most once) when an established channel ends
    without ``aclose`` having been called.
    """

    async def connect(
        self, spec: ServerSpec, *, timeout: float, on_lost: Optional[LostCallback] = None
    ) -> McpConnection: ...


class SessionMcpConnection:
    """
    An ``mcp.ClientSession`` kept open by a background task.

    The task enters the stream and session contexts, runs ``initialize``,
    signals readiness and then idles, pinging the server every
    ``heartbeat_interval`` seconds while no request is in flight. A failed
    ping ends the task and reports channel loss through ``on_lost``.

    Requests carry no timeout of their own. When the channel ends while
    requests are pending, each of them fails with ``ConnectionError``.
    """

    def __init__(
        self,
        name: str,
        open_streams: StreamFactory,
        *,
        heartbeat_interval: float,
        close_timeout: float,
        on_lost: Optional[LostCallback] = None,
    ) -> None:
        self._name = name
        self._open_streams = open_streams
        self._heartbeat_interval = heartbeat_interval
        self._close_timeout = close_timeout
        self._on_lost = on_lost
        self._session: Optional[ClientSession] = None
        self._stop = asyncio.Event()
        self._ready: Optional[asyncio.Future[None]] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._closing = False
        self._ended = asyncio.Event()
        self._pending = 0
        self.server_capabilities: Any = None

    @property
    def is_alive(self) -> bool:
        return self._session is not None and self._task is not None and not self._task.done()

    async def open(self, timeout: float) -> None:
        """Start the background task and wait for the handshake to complete."""
        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._serve(), name=f"mcp-connection:{self._name}")
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout)
        except BaseException:
            await self.aclose()
            raise

    @property
    def pending_requests(self) -> int:
        return self._pending

    async def list_tools(self) -> Any:
        return await self._request(lambda session: session.list_tools())

    async def list_resources(self) -> Any:
        return await self._request(lambda session: session.list_resources())

    async def list_prompts(self) -> Any:
        return await self._request(lambda session: session.list_prompts())

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        return await self._request(lambda session: session.call_tool(name, arguments))

    async def read_resource(self, uri: str) -> Any:
        return await self._request(lambda session: session.read_resource(AnyUrl(uri)))

    async def aclose(self) -> None:
        self._closing = True
        self._stop.set()
        task = self._task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), self._close_timeout)
            except asyncio.TimeoutError:
                logger.warning("SessionMcpConnection.aclose: %s did not stop in time, cancelling", self._name)
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if self._ready is not None and self._ready.done() and not self._ready.cancelled():
            # mark a handshake failure as retrieved once the caller has given up on it
            self._ready.exception()

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ConnectionError(f"MCP channel to '{self._name}' is closed")
        return self._session

    async def _request(self, send: Callable[[ClientSession], Awaitable[Any]]) -> Any:
        session = self._require_session()
        self._pending += 1
        call = asyncio.ensure_future(send(session))
        ended = asyncio.ensure_future(self._ended.wait())
        try:
            await asyncio.wait({call, ended}, return_when=asyncio.FIRST_COMPLETED)
            if call.done():
                return call.result()
            raise ConnectionError(f"MCP channel to '{self._name}' ended while a request was in flight")
        finally:
            self._pending -= 1
            ended.cancel()
            if not call.done():
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)

    async def _serve(self) -> None:
        error: Optional[BaseException] = None
        try:
            async with self._open_streams() as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    init = await session.initialize()
                    self.server_capabilities = init.capabilities
                    self._session = session
                    self._ready.set_result(None)
                    await self._idle(session)
        except Exception as exc:
            error = exc
        finally:
            self._session = None
            self._ended.set()
            if not self._ready.done():
                self._ready.set_exception(
                    error or ConnectionError(f"MCP channel to '{self._name}' closed during the handshake")
                )
            elif not self._closing:
                logger.warning("SessionMcpConnection: channel to %s lost: %r", self._name, error)
                if self._on_lost is not None:
                    self._on_lost(error)

    async def _idle(self, session: ClientSession) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), self._heartbeat_interval)
            except asyncio.TimeoutError:
                if self._pending:
                    # a busy server may not answer pings until its current request returns
                    continue
                await asyncio.wait_for(session.send_ping(), self._heartbeat_interval)


class SdkMcpTransport:
    """MCP transport using the official SDK clients (stdio, streamable HTTP, SSE)."""

    def __init__(
        self,
        *,
        heartbeat_interval_seconds: float = 15.0,
        close_timeout_seconds: float = 5.0,
        errlog: Optional[TextIO] = None,
    ) -> None:
        self._heartbeat = heartbeat_interval_seconds
        self._close_timeout = close_timeout_seconds
        self._errlog = errlog

    async def connect(
        self, spec: ServerSpec, *, timeout: float, on_lost: Optional[LostCallback] = None
    ) -> SessionMcpConnection:
        connection = SessionMcpConnection(
            spec.name,
            self._streams_for(spec),
            heartbeat_interval=self._heartbeat,
            close_timeout=self._close_timeout,
            on_lost=on_lost,
        )
        logger.debug("SdkMcpTransport.connect: name=%s transport=%s", spec.name, spec.transport.value)
        await connection.open(timeout)
        return connection

    def _streams_for(self, spec: ServerSpec) -> StreamFactory:
        if spec.transport == TransportKind.stdio:
            params = StdioServerParameters(
                command=spec.command,
                args=list(spec.args),
                env=dict(spec.env) if spec.env is not None else None,
                cwd=spec.cwd,
            )
            errlog = self._errlog or sys.stderr
            return lambda: stdio_client(params, errlog=errlog)

        if spec.transport == TransportKind.streamable_http:
            url = spec.url

            @asynccontextmanager
            async def _streamable() -> AsyncIterator[Tuple[Any, Any]]:
                async with streamablehttp_client(url) as (read_stream, write_stream, _get_session_id):
                    yield read_stream, write_stream

            return _streamable

        url = spec.url
        return lambda: sse_client(url)
