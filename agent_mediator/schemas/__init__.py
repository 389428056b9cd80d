"""Shared schemas: the permission domain records and aggregate reports."""

from .base import BaseSchema, FrozenSchema
from .domain import (
    Grant,
    GrantDecision,
    GrantSource,
    PermissionRequest,
    PermissionScope,
    PermissionType,
    new_correlation_id,
)
from .reports import (
    CleanupReport,
    DependencyReport,
    HealthReport,
    HealthStatus,
    InitializeReport,
    RegistryStats,
    SubsystemHealth,
)

__all__ = [
    "BaseSchema",
    "FrozenSchema",
    "Grant",
    "GrantDecision",
    "GrantSource",
    "PermissionRequest",
    "PermissionScope",
    "PermissionType",
    "new_correlation_id",
    "CleanupReport",
    "DependencyReport",
    "HealthReport",
    "HealthStatus",
    "InitializeReport",
    "RegistryStats",
    "SubsystemHealth",
]
