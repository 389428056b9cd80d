from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from pydantic import Field, field_validator

from ..schemas.base import BaseSchema
from ..schemas.domain import GrantDecision, GrantSource, PermissionRequest, PermissionType

_SYSTEM_DIRS = r"^/(etc|usr|bin|sbin|boot|dev|proc|sys)(/|$)"
_DESTRUCTIVE_COMMANDS = r"^(rm|rmdir|del|format|fdisk|mkfs|dd)\s"


class PermissionRule(BaseSchema):
    """
    A deny pattern for one permission type.

    A request matches when its type equals ``type`` and either pattern is
    found (``re.search``) in the corresponding request field. A rule with no
    pattern matches nothing.
    """
    type: PermissionType
    path_pattern: Optional[str] = Field(default=None, description="Regex tested against the request path.")
    command_pattern: Optional[str] = Field(default=None, description="Regex tested against the command text.")
    reason: str = ""

    @field_validator("path_pattern", "command_pattern")
    @classmethod
    def _compiles(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            re.compile(value)
        return value

    def matches(self, request: PermissionRequest) -> bool:
        if request.type != self.type:
            return False
        if self.path_pattern and request.path and re.search(self.path_pattern, request.path):
            return True
        if self.command_pattern and request.command and re.search(self.command_pattern, request.command):
            return True
        return False


def default_deny_rules() -> list[PermissionRule]:
    return [
        PermissionRule(type=PermissionType.file_write, path_pattern=_SYSTEM_DIRS, reason="system directory"),
        PermissionRule(type=PermissionType.file_edit, path_pattern=_SYSTEM_DIRS, reason="system directory"),
        PermissionRule(
            type=PermissionType.shell_execute,
            command_pattern=_DESTRUCTIVE_COMMANDS,
            reason="destructive command",
        ),
    ]


class PermissionPolicy(BaseSchema):
    """
    Static policy consulted by :class:`~agent_mediator.permissions.engine.PermissionEngine`.

    ``project_only`` and ``temporary`` requests are granted unless a deny rule
    matches or their path escapes ``project_root``. ``system_wide`` requests
    are granted only for allow-listed types (or by an approver hook).
    """
    project_root: Optional[Path] = Field(
        default=None,
        description="If set, project-scoped requests with a path outside this directory are denied.",
    )
    system_wide_allowed: set[PermissionType] = Field(
        default_factory=lambda: {PermissionType.system_info, PermissionType.mcp_connect},
        description="Permission types that may be granted at system-wide scope without an approver.",
    )
    deny_rules: list[PermissionRule] = Field(default_factory=default_deny_rules)
    temporary_grant_ttl_seconds: float = Field(default=60.0, gt=0.0, le=86400.0)

    def contains(self, path: str) -> bool:
        """Return True if ``path`` resolves inside ``project_root`` (or no root is configured)."""
        if self.project_root is None:
            return True
        root = self.project_root.expanduser().resolve()
        target = Path(path).expanduser()
        if not target.is_absolute():
            target = root / target
        return target.resolve().is_relative_to(root)


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of the static policy step (before it is recorded as a grant)."""

    decision: GrantDecision
    source: GrantSource
    reason: str

    @property
    def granted(self) -> bool:
        return self.decision == GrantDecision.granted


@runtime_checkable
class PermissionApprover(Protocol):
    """
    Hook consulted for system-wide requests that are not allow-listed.

    Implementations may suspend (e.g. awaiting a human-in-the-loop prompt).
    """

    async def approve(self, request: PermissionRequest) -> bool: ...
