import pytest

from agent_mediator.capabilities.builtin import builtin_catalog
from agent_mediator.capabilities.requests import (
    ServerConnectRequest,
    ServerRegisterRequest,
    ShellExecuteRequest,
    ToolExecuteRequest,
)
from agent_mediator.errors import RequestValidationError, UnknownOperationError


@pytest.fixture
def entries():
    return {entry.name: entry for entry in builtin_catalog()}


def test_shell_request_defaults_operation(entries) -> None:
    request = entries["enhanced_shell"].parse({"command": ["ls", "-la"]})

    assert isinstance(request, ShellExecuteRequest)
    assert request.operation == "execute"
    assert request.timeout_seconds is None


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"operation": "register", "name": "demo", "command": "node"}, ServerRegisterRequest),
        ({"operation": "connect", "server_id": "abc"}, ServerConnectRequest),
    ],
)
def test_server_union_dispatches_on_operation(entries, payload, expected) -> None:
    assert isinstance(entries["mcp_server"].parse(payload), expected)


def test_tool_execute_defaults_arguments(entries) -> None:
    request = entries["mcp_tool"].parse({"operation": "execute", "tool_name": "echo"})

    assert isinstance(request, ToolExecuteRequest)
    assert request.arguments == {}


@pytest.mark.parametrize(
    "name,payload",
    [
        ("mcp_server", {"operation": "reboot"}),
        ("mcp_tool", {"operation": "delete", "tool_name": "echo"}),
        ("shell_session_info", {"operation": "kill"}),
        ("enhanced_shell", {"operation": "spawn", "command": ["ls"]}),
    ],
)
def test_unknown_operations(entries, name, payload) -> None:
    with pytest.raises(UnknownOperationError):
        entries[name].parse(payload)


@pytest.mark.parametrize(
    "name,payload",
    [
        ("mcp_server", {}),
        ("mcp_server", {"operation": "connect"}),
        ("enhanced_shell", {"command": ["sleep", "1"], "timeout_seconds": 0}),
        ("enhanced_shell", {"command": ["ls"], "shell": "zsh"}),
        ("shell_session_info", {"operation": "history", "limit": 0}),
        ("file_read", {"path": ""}),
    ],
)
def test_malformed_payloads(entries, name, payload) -> None:
    with pytest.raises(RequestValidationError):
        entries[name].parse(payload)


def test_parse_keeps_correlation_id_on_failure(entries) -> None:
    with pytest.raises(RequestValidationError) as exc_info:
        entries["mcp_tool"].parse({"operation": "execute", "correlation_id": "corr-7"})

    assert exc_info.value.correlation_id == "corr-7"
