from __future__ import annotations

"""Exception hierarchy shared by every subsystem.

Two branches hang off ``MediatorError``:

- ``OperationError``: environmental failures (policy refusal, timeouts, dead
  processes, unreachable tool servers). The capability layer folds these into
  ``CapabilityResult`` objects with ``success=False``.
- ``UsageError``: caller defects (unknown ids, unknown operations). These
  propagate as hard failures.

Every exception exposes ``kind`` (an ``ErrorKind``) and an optional
``correlation_id`` so failure paths never drop audit linkage.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .schemas.domain import Grant


class ErrorKind(str, Enum):
    """Shared error-kind enumeration surfaced in capability results."""

    validation_error = "validation_error"
    permission_denied = "permission_denied"
    timed_out = "timed_out"
    session_dead = "session_dead"
    server_not_connected = "server_not_connected"
    invalid_spec = "invalid_spec"
    remote_tool_error = "remote_tool_error"
    io_error = "io_error"
    unknown_operation = "unknown_operation"
    unknown_capability = "unknown_capability"
    unknown_server = "unknown_server"
    unknown_session = "unknown_session"


class MediatorError(Exception):
    kind: ErrorKind = ErrorKind.validation_error

    def __init__(
        self, message: str, *, correlation_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.details: Dict[str, Any] = dict(details or {})


class OperationError(MediatorError):
    pass


class UsageError(MediatorError, LookupError):
    pass


class RequestValidationError(OperationError, ValueError):
    kind = ErrorKind.validation_error


class PermissionDeniedError(OperationError):
    kind = ErrorKind.permission_denied

    def __init__(self, grant: "Grant") -> None:
        request = grant.request
        target = request.command or request.path or request.description
        super().__init__(
            f"Permission denied for {request.type.value} ({request.scope.value}) on '{target}': {grant.reason}",
            correlation_id=grant.correlation_id,
        )
        self.grant = grant


class CommandTimeoutError(OperationError):
    kind = ErrorKind.timed_out

    def __init__(
        self,
        command: str,
        timeout_seconds: float,
        *,
        correlation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            f"Command timed out after {timeout_seconds}s: {command}", correlation_id=correlation_id, details=details
        )
        self.timeout_seconds = timeout_seconds


class SessionDeadError(OperationError):
    kind = ErrorKind.session_dead

    def __init__(
        self, session_id: str, *, correlation_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(
            f"Shell session '{session_id}' is no longer alive", correlation_id=correlation_id, details=details
        )
        self.session_id = session_id


class ServerNotConnectedError(OperationError):
    kind = ErrorKind.server_not_connected

    def __init__(self, target: str, *, correlation_id: Optional[str] = None) -> None:
        super().__init__(f"No connected MCP server provides '{target}'", correlation_id=correlation_id)
        self.target = target


class InvalidServerSpecError(OperationError):
    kind = ErrorKind.invalid_spec

    def __init__(self, message: str, *, correlation_id: Optional[str] = None) -> None:
        super().__init__(f"Invalid MCP server spec: {message}", correlation_id=correlation_id)


class RemoteToolError(OperationError):
    kind = ErrorKind.remote_tool_error

    def __init__(
        self, server_id: str, target: str, diagnostic: str, *, correlation_id: Optional[str] = None
    ) -> None:
        super().__init__(
            f"Remote call '{target}' failed on server '{server_id}': {diagnostic}",
            correlation_id=correlation_id,
        )
        self.server_id = server_id
        self.target = target
        self.diagnostic = diagnostic


class FileAccessError(OperationError):
    kind = ErrorKind.io_error

    def __init__(self, path: str, reason: str, *, correlation_id: Optional[str] = None) -> None:
        super().__init__(f"File access failed for '{path}': {reason}", correlation_id=correlation_id)
        self.path = path


class UnknownCapabilityError(UsageError):
    kind = ErrorKind.unknown_capability

    def __init__(self, name: str) -> None:
        super().__init__(f"Capability not registered: '{name}'")


class UnknownOperationError(UsageError):
    kind = ErrorKind.unknown_operation

    def __init__(self, capability: str, operation: object, *, correlation_id: Optional[str] = None) -> None:
        super().__init__(
            f"Unknown operation {operation!r} for capability '{capability}'", correlation_id=correlation_id
        )
        self.operation = operation


class UnknownServerError(UsageError):
    kind = ErrorKind.unknown_server

    def __init__(self, server_id: str) -> None:
        super().__init__(f"MCP server not found: '{server_id}'")


class UnknownSessionError(UsageError):
    kind = ErrorKind.unknown_session

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Shell session not found: '{session_id}'")
