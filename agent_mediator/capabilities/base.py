from __future__ import annotations

"""Capability protocol and execution data models.

A capability is a named, categorized unit of privileged functionality exposed
to the agent. Each capability declares:

- the permission types its operations request,
- the subsystems it needs wired up (``permissions``, ``shell_session``,
  ``mcp_foundation``),
- a request model: a closed tagged union discriminated on ``operation``.

Capabilities never make policy decisions themselves; they call into the
subsystems, which evaluate grants through the permission engine.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple

from pydantic import Field, TypeAdapter, ValidationError

from ..errors import ErrorKind, RequestValidationError, UnknownOperationError
from ..mcp.registry import ToolServerRegistry
from ..permissions.engine import PermissionEngine
from ..schemas.base import BaseSchema, FrozenSchema
from ..schemas.domain import PermissionType, utc_now
from ..shell.manager import ShellSessionManager


class CapabilityCategory(str, Enum):
    execution = "execution"
    session = "session"
    mcp = "mcp"
    file = "file"


class Subsystem(str, Enum):
    """Names of the subsystems a capability may depend on."""

    permissions = "permissions"
    shell_session = "shell_session"
    mcp_foundation = "mcp_foundation"


@dataclass(frozen=True)
class CapabilityContext:
    """Execution context passed to capability handlers.

    Attributes
    ----------
    correlation_id:
        Audit token for this invocation; handlers forward it to every
        permission evaluation they trigger.
    permissions, shells, servers:
        The wired subsystems (``None`` when not configured).
    """

    correlation_id: str
    permissions: Optional[PermissionEngine]
    shells: Optional[ShellSessionManager]
    servers: Optional[ToolServerRegistry]


class ErrorInfo(BaseSchema):
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class CapabilityResult(BaseSchema):
    """
    Structured capability invocation result.

    ``correlation_id`` is always populated, on failure paths too, so callers
    can join the result against the grant ledger.
    """

    success: bool
    correlation_id: str
    capability: str
    operation: Optional[str] = None
    data: Any = None
    error: Optional[ErrorInfo] = None


class ExecutionRecord(FrozenSchema):
    """
    One ``invoke`` call as kept in the registry's execution history.

    Attributes:
        capability: Requested capability name, recorded even when unknown.
        operation: Operation name when the payload carried one.
        correlation_id: Audit token of the invocation.
        success: Outcome reported to the caller.
        error_kind: Kind of the folded or raised error, if any.
        duration_ms: Wall-clock duration of the invocation.
        timestamp: When the invocation finished.
    """

    capability: str
    operation: Optional[str] = None
    correlation_id: str
    success: bool
    error_kind: Optional[ErrorKind] = None
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)


class ExecutionStats(BaseSchema):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    success_rate: float = 0.0
    usage_by_capability: Dict[str, int] = Field(default_factory=dict)
    errors_by_kind: Dict[str, int] = Field(default_factory=dict)


class CapabilityHandler(Protocol):
    """Protocol for capability implementations."""

    async def execute(self, ctx: CapabilityContext, request: Any) -> Any: ...


@dataclass(frozen=True)
class CapabilityEntry:
    """A registered capability: declared requirements plus its executable handler."""

    name: str
    description: str
    category: CapabilityCategory
    permissions: Tuple[PermissionType, ...]
    dependencies: Tuple[Subsystem, ...]
    request_adapter: TypeAdapter
    handler: CapabilityHandler

    def parse(self, payload: Dict[str, Any]) -> Any:
        """
        Validate ``payload`` into this capability's request union.

        Raises:
            UnknownOperationError: ``operation`` names no variant of the union.
            RequestValidationError: Any other validation failure.
        """
        correlation_id = payload.get("correlation_id")
        try:
            return self.request_adapter.validate_python(payload)
        except ValidationError as exc:
            for err in exc.errors():
                if err["type"] == "union_tag_invalid" or (
                    err["type"] == "literal_error" and tuple(err["loc"]) == ("operation",)
                ):
                    raise UnknownOperationError(
                        self.name, payload.get("operation"), correlation_id=correlation_id
                    ) from exc
            raise RequestValidationError(
                f"Invalid input for '{self.name}': {exc}", correlation_id=correlation_id
            ) from exc

