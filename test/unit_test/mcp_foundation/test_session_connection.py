"""Unit tests for SessionMcpConnection request tracking and heartbeat.

The SDK session is replaced by a small stand-in so the tests can control
when requests complete and count heartbeat pings.
"""

import asyncio
from contextlib import asynccontextmanager

import pytest

from agent_mediator.mcp.transport import SessionMcpConnection


@asynccontextmanager
async def _no_streams():
    yield None, None


class StandInSession:
    def __init__(self) -> None:
        self.pings = 0
        self.release = asyncio.Event()

    async def call_tool(self, name, arguments):
        await self.release.wait()
        return f"{name} done"

    async def send_ping(self):
        self.pings += 1


def _connection(session: StandInSession, heartbeat: float = 0.05) -> SessionMcpConnection:
    connection = SessionMcpConnection("stand-in", _no_streams, heartbeat_interval=heartbeat, close_timeout=1.0)
    connection._session = session
    return connection


class TestPendingRequests:
    @pytest.mark.asyncio
    async def test_call_waits_for_slow_result(self) -> None:
        session = StandInSession()
        connection = _connection(session)

        call = asyncio.create_task(connection.call_tool("slow", {}))
        await asyncio.sleep(0.1)
        assert connection.pending_requests == 1
        assert not call.done()

        session.release.set()

        assert await call == "slow done"
        assert connection.pending_requests == 0

    @pytest.mark.asyncio
    async def test_pending_call_fails_when_channel_ends(self) -> None:
        connection = _connection(StandInSession())

        call = asyncio.create_task(connection.call_tool("slow", {}))
        await asyncio.sleep(0.05)
        connection._ended.set()

        with pytest.raises(ConnectionError):
            await asyncio.wait_for(call, 2)
        assert connection.pending_requests == 0

    @pytest.mark.asyncio
    async def test_call_on_closed_channel_raises_connection_error(self) -> None:
        connection = SessionMcpConnection("closed", _no_streams, heartbeat_interval=1.0, close_timeout=1.0)

        with pytest.raises(ConnectionError):
            await connection.call_tool("echo", {})


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_no_ping_while_a_request_is_in_flight(self) -> None:
        session = StandInSession()
        connection = _connection(session)

        call = asyncio.create_task(connection.call_tool("slow", {}))
        idle = asyncio.create_task(connection._idle(session))
        await asyncio.sleep(0.3)
        assert session.pings == 0

        session.release.set()
        await call
        await asyncio.sleep(0.2)
        connection._stop.set()
        await asyncio.wait_for(idle, 2)

        assert session.pings > 0
