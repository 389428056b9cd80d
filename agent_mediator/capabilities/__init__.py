"""Capability catalog composing the permission, shell and MCP subsystems."""

from .base import (
    CapabilityCategory,
    CapabilityContext,
    CapabilityEntry,
    CapabilityHandler,
    CapabilityResult,
    ErrorInfo,
    ExecutionRecord,
    ExecutionStats,
    Subsystem,
)
from .builtin import builtin_catalog
from .registry import CapabilityRegistry

__all__ = [
    "CapabilityCategory",
    "CapabilityContext",
    "CapabilityEntry",
    "CapabilityHandler",
    "CapabilityRegistry",
    "CapabilityResult",
    "ErrorInfo",
    "ExecutionRecord",
    "ExecutionStats",
    "Subsystem",
    "builtin_catalog",
]
