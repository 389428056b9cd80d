"""Aggregate report models returned by composite operations."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List

from pydantic import Field

from .base import BaseSchema


class HealthStatus(str, Enum):
    healthy = "healthy"
    warning = "warning"
    error = "error"


class SubsystemHealth(BaseSchema):
    status: HealthStatus
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)


class HealthReport(BaseSchema):
    """Per-subsystem health; ``healthy`` is False only if some subsystem is in ``error``."""

    healthy: bool
    systems: Dict[str, SubsystemHealth] = Field(default_factory=dict)


class CleanupReport(BaseSchema):
    """
    Outcome of a teardown pass.

    ``errors`` collects one message per failed step; the pass itself always
    runs to completion.
    """

    closed: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def merge(self, other: "CleanupReport") -> "CleanupReport":
        return CleanupReport(closed=self.closed + other.closed, errors=[*self.errors, *other.errors])


class InitializeReport(BaseSchema):
    success: bool
    initialized: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class DependencyReport(BaseSchema):
    valid: bool
    missing: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Capability name mapped to the dependency names that are not wired up.",
    )


class RegistryStats(BaseSchema):
    total_capabilities: int
    capabilities_by_category: Dict[str, int] = Field(default_factory=dict)
    active_grants: int = 0
    active_sessions: int = 0
    registered_servers: int = 0
    connected_servers: int = 0
    discovered_tools: int = 0
    discovered_resources: int = 0
