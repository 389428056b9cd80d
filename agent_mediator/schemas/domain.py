from __future__ import annotations

"""Core permission domain models.

These types are shared by every subsystem that asks for authorization:

- ``PermissionRequest``: what a caller wants to do, in which scope, under
  which correlation id.
- ``Grant``: the recorded decision for one evaluation of a request.

Both are frozen. A grant is never updated after it is appended to the ledger;
revocation is modeled as clearing the ledger.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import Field, field_validator

from .base import FrozenSchema


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_correlation_id() -> str:
    """Return a fresh opaque correlation id."""
    return uuid4().hex


class PermissionType(str, Enum):
    """
    Kind of privileged action being requested.

    Attributes:
        file_read: Read a file's content.
        file_write: Create or overwrite a file.
        file_edit: Modify part of an existing file.
        shell_execute: Run a command in a shell session.
        mcp_connect: Connect to or call into an MCP tool server.
        network_access: Open outbound network connections.
        system_info: Inspect host/system information.
    """
    file_read = "file_read"
    file_write = "file_write"
    file_edit = "file_edit"
    shell_execute = "shell_execute"
    mcp_connect = "mcp_connect"
    network_access = "network_access"
    system_info = "system_info"


class PermissionScope(str, Enum):
    """
    Breadth of a permission request.

    Attributes:
        project_only: Confined to the configured project root.
        system_wide: Affects the host beyond the project; requires allow-listing.
        temporary: Project-confined grant that expires after a short TTL.
    """
    project_only = "project_only"
    system_wide = "system_wide"
    temporary = "temporary"


class GrantDecision(str, Enum):
    granted = "granted"
    denied = "denied"


class GrantSource(str, Enum):
    """Which step of the evaluation order produced a decision."""

    replay = "replay"
    policy = "policy"
    approver = "approver"
    default = "default"


class PermissionRequest(FrozenSchema):
    """
    A single request for a privileged action.

    Attributes:
        type: The permission type requested.
        scope: Project-local, system-wide or temporary.
        description: Human-readable description used in audit logs and prompts.
        correlation_id: Opaque token linking the request, its decision and its outcome.
        command: Optional command text (shell executions).
        path: Optional target path (file operations, working directories).
    """
    type: PermissionType
    scope: PermissionScope
    description: str = ""
    correlation_id: str = Field(default_factory=new_correlation_id, min_length=1)
    command: Optional[str] = None
    path: Optional[str] = None

    @field_validator("correlation_id")
    @classmethod
    def _strip_correlation_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("correlation_id must not be blank")
        return value


class Grant(FrozenSchema):
    """
    A recorded permission decision.

    Grants are appended to the ledger exactly once per evaluation and never
    mutated. Multiple grants may share a correlation id when a request is
    re-evaluated.
    """
    id: str = Field(default_factory=lambda: uuid4().hex)
    request: PermissionRequest
    decision: GrantDecision
    correlation_id: str
    source: GrantSource
    reason: str = ""
    decided_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None

    @property
    def granted(self) -> bool:
        return self.decision == GrantDecision.granted

    @property
    def type(self) -> PermissionType:
        return self.request.type

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at
