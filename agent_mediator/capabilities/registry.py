from __future__ import annotations

"""Capability registry.

The registry composes the permission engine, the shell session manager and
the MCP tool-server registry into a fixed catalog of named capabilities. It
holds references to the subsystems but never mutates their state directly;
every effect goes through a subsystem's public operations.

Composite operations (``initialize``, ``cleanup``, ``get_health_status``)
treat each subsystem independently: one subsystem's failure is recorded in the
returned report and never prevents the others from being processed.
"""

import logging
import time
from collections import Counter, deque
from collections.abc import Mapping
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from ..errors import ErrorKind, OperationError, UnknownCapabilityError, UsageError
from ..mcp.models import ServerState
from ..mcp.registry import ToolServerRegistry
from ..permissions.engine import PermissionEngine
from ..schemas.domain import new_correlation_id
from ..schemas.reports import (
    CleanupReport,
    DependencyReport,
    HealthReport,
    HealthStatus,
    InitializeReport,
    RegistryStats,
    SubsystemHealth,
)
from ..shell.manager import ShellSessionManager
from .base import (
    CapabilityCategory,
    CapabilityContext,
    CapabilityEntry,
    CapabilityResult,
    ErrorInfo,
    ExecutionRecord,
    ExecutionStats,
    Subsystem,
)
from .builtin import builtin_catalog

logger = logging.getLogger(__name__)


class CapabilityRegistry:
    """
    Fixed catalog of capabilities over explicitly wired subsystems.

    Notes:
        - The catalog is registered at construction and read-only afterwards.
        - ``invoke`` folds environmental failures (``OperationError``) into a
          ``CapabilityResult`` with ``success=False``; unknown capability names
          and unknown operations raise.
        - ``initialize`` and ``cleanup`` are idempotent.
        - Every ``invoke`` call, raised usage errors included, is appended to a
          bounded execution history (most recent ``max_history_size`` kept).
    """

    def __init__(
        self,
        permissions: Optional[PermissionEngine],
        shells: Optional[ShellSessionManager],
        servers: Optional[ToolServerRegistry],
        *,
        catalog: Optional[List[CapabilityEntry]] = None,
        max_history_size: int = 1000,
    ) -> None:
        self._permissions = permissions
        self._shells = shells
        self._servers = servers
        self._entries: Dict[str, CapabilityEntry] = {}
        self._initialized: Set[Subsystem] = set()
        self._history: Deque[ExecutionRecord] = deque(maxlen=max_history_size)
        for entry in builtin_catalog() if catalog is None else catalog:
            self._entries[entry.name] = entry

    @property
    def permissions(self) -> Optional[PermissionEngine]:
        return self._permissions

    @property
    def shells(self) -> Optional[ShellSessionManager]:
        return self._shells

    @property
    def servers(self) -> Optional[ToolServerRegistry]:
        return self._servers

    def get(self, name: str) -> CapabilityEntry:
        """
        Retrieve a registered capability by name.

        Raises:
            UnknownCapabilityError: If no capability is registered with the given name.
        """
        try:
            return self._entries[name]
        except KeyError:
            raise UnknownCapabilityError(name) from None

    def has(self, name: str) -> bool:
        return name in self._entries

    def get_capabilities(self) -> List[CapabilityEntry]:
        return list(self._entries.values())

    def get_by_category(self, category: CapabilityCategory) -> List[CapabilityEntry]:
        return [entry for entry in self._entries.values() if entry.category == category]

    async def invoke(self, name: str, payload: Optional[Mapping[str, Any]] = None) -> CapabilityResult:
        """
        Validate ``payload`` and run one capability operation.

        Args:
            name: Capability name from the catalog.
            payload: Request fields, including ``operation`` for multi-operation
                capabilities and an optional ``correlation_id``.

        Returns:
            A ``CapabilityResult`` that always carries a correlation id.

        Raises:
            UnknownCapabilityError: ``name`` is not in the catalog.
            UnknownOperationError: ``operation`` is not valid for the capability.
            UnknownServerError, UnknownSessionError: The request names an id
                that was never registered.
            RuntimeError: A subsystem the capability depends on is not wired up.

        Usage errors raised from here always carry the invocation's correlation id.
        """
        body: Dict[str, Any] = dict(payload or {})
        correlation_id = str(body.get("correlation_id") or new_correlation_id())
        body["correlation_id"] = correlation_id
        started = time.perf_counter()
        try:
            result = await self._dispatch(self.get(name), body, correlation_id)
        except UsageError as exc:
            if not exc.correlation_id:
                exc.correlation_id = correlation_id
            self._record_execution(
                name, body.get("operation"), correlation_id, started, success=False, error_kind=exc.kind
            )
            raise
        self._record_execution(
            name,
            result.operation,
            correlation_id,
            started,
            success=result.success,
            error_kind=result.error.kind if result.error is not None else None,
        )
        return result

    def search(self, query: str) -> List[CapabilityEntry]:
        """Case-insensitive substring match against capability names and descriptions."""
        needle = query.lower()
        return [
            entry
            for entry in self._entries.values()
            if needle in entry.name.lower() or needle in entry.description.lower()
        ]

    def get_execution_history(self, limit: Optional[int] = None) -> List[ExecutionRecord]:
        """Return recorded invocations, most recent first, optionally truncated to ``limit``."""
        history = list(reversed(self._history))
        return history[:limit] if limit else history

    def get_execution_stats(self) -> ExecutionStats:
        records = list(self._history)
        successful = sum(1 for record in records if record.success)
        usage = Counter(record.capability for record in records)
        errors = Counter(record.error_kind.value for record in records if record.error_kind is not None)
        return ExecutionStats(
            total_executions=len(records),
            successful_executions=successful,
            failed_executions=len(records) - successful,
            success_rate=successful / len(records) if records else 0.0,
            usage_by_capability=dict(usage),
            errors_by_kind=dict(errors),
        )

    def clear_history(self) -> int:
        """Drop the execution history and return how many records were removed."""
        removed = len(self._history)
        self._history.clear()
        logger.info("CapabilityRegistry.clear_history: removed=%d", removed)
        return removed

    async def _dispatch(self, entry: CapabilityEntry, body: Dict[str, Any], correlation_id: str) -> CapabilityResult:
        name = entry.name
        missing = self._missing(entry)
        if missing:
            raise RuntimeError(f"Capability '{name}' requires unavailable subsystems: {', '.join(missing)}")

        ctx = CapabilityContext(
            correlation_id=correlation_id,
            permissions=self._permissions,
            shells=self._shells,
            servers=self._servers,
        )
        operation = body.get("operation")
        if not isinstance(operation, str):
            operation = None
        try:
            request = entry.parse(body)
            operation = request.operation
            data = await entry.handler.execute(ctx, request)
        except OperationError as exc:
            logger.info(
                "CapabilityRegistry.invoke: capability=%s operation=%s correlation_id=%s failed kind=%s: %s",
                name,
                operation,
                correlation_id,
                exc.kind.value,
                exc.message,
            )
            return CapabilityResult(
                success=False,
                correlation_id=correlation_id,
                capability=name,
                operation=operation,
                error=ErrorInfo(kind=exc.kind, message=exc.message, details=exc.details),
            )

        logger.debug(
            "CapabilityRegistry.invoke: capability=%s operation=%s correlation_id=%s ok",
            name,
            operation,
            correlation_id,
        )
        return CapabilityResult(
            success=bool(getattr(data, "success", True)),
            correlation_id=correlation_id,
            capability=name,
            operation=operation,
            data=data,
        )

    def validate_dependencies(self) -> DependencyReport:
        """Static check: every declared dependency names a subsystem that is wired up."""
        missing = {entry.name: self._missing(entry) for entry in self._entries.values()}
        missing = {name: deps for name, deps in missing.items() if deps}
        return DependencyReport(valid=not missing, missing=missing)

    def get_health_status(self) -> HealthReport:
        probes: Dict[Subsystem, Callable[[], SubsystemHealth]] = {
            Subsystem.permissions: self._probe_permissions,
            Subsystem.shell_session: self._probe_shells,
            Subsystem.mcp_foundation: self._probe_servers,
        }
        systems: Dict[str, SubsystemHealth] = {}
        for subsystem, probe in probes.items():
            try:
                systems[subsystem.value] = probe()
            except Exception as exc:
                logger.error("CapabilityRegistry.get_health_status: %s probe raised %r", subsystem.value, exc)
                systems[subsystem.value] = SubsystemHealth(status=HealthStatus.error, message=f"probe failed: {exc}")
        healthy = all(health.status != HealthStatus.error for health in systems.values())
        return HealthReport(healthy=healthy, systems=systems)

    def get_stats(self) -> RegistryStats:
        by_category = Counter(entry.category.value for entry in self._entries.values())
        stats = RegistryStats(
            total_capabilities=len(self._entries),
            capabilities_by_category=dict(by_category),
        )
        if self._permissions is not None:
            stats.active_grants = len(self._permissions.get_grants())
        if self._shells is not None:
            stats.active_sessions = len(self._shells.get_session_ids())
        if self._servers is not None:
            mcp = self._servers.get_stats()
            stats.registered_servers = mcp.total_servers
            stats.connected_servers = mcp.connected_servers
            stats.discovered_tools = mcp.total_tools
            stats.discovered_resources = mcp.total_resources
        return stats

    async def initialize(self) -> InitializeReport:
        """
        Initialize every wired subsystem that is not initialized yet.

        A failing subsystem is reported and left uninitialized so a later call
        retries it; subsystems that succeeded are not initialized twice.
        """
        errors: List[str] = []
        if self._permissions is not None:
            self._initialized.add(Subsystem.permissions)
        if self._shells is not None and Subsystem.shell_session not in self._initialized:
            try:
                self._shells.initialize()
            except Exception as exc:
                errors.append(f"shell_session: {exc}")
            else:
                self._initialized.add(Subsystem.shell_session)
        if self._servers is not None and Subsystem.mcp_foundation not in self._initialized:
            try:
                await self._servers.initialize()
            except Exception as exc:
                errors.append(f"mcp_foundation: {exc}")
            else:
                self._initialized.add(Subsystem.mcp_foundation)

        for error in errors:
            logger.error("CapabilityRegistry.initialize: %s", error)
        initialized = sorted(subsystem.value for subsystem in self._initialized)
        logger.info("CapabilityRegistry.initialize: initialized=%s errors=%d", initialized, len(errors))
        return InitializeReport(success=not errors, initialized=initialized, errors=errors)

    async def cleanup(self) -> CleanupReport:
        """
        Tear down every subsystem, attempting each one even if an earlier one failed.

        The grant ledger is left intact for audit; revoke it explicitly through
        the permission engine if required.
        """
        report = CleanupReport()
        steps = (
            (Subsystem.shell_session, self._shells.cleanup if self._shells is not None else None),
            (Subsystem.mcp_foundation, self._servers.cleanup if self._servers is not None else None),
        )
        for subsystem, step in steps:
            if step is None:
                continue
            try:
                report = report.merge(await step())
            except Exception as exc:
                logger.error("CapabilityRegistry.cleanup: %s raised %r", subsystem.value, exc)
                report.errors.append(f"{subsystem.value}: {exc}")
        self._initialized.clear()
        logger.info("CapabilityRegistry.cleanup: closed=%d errors=%d", report.closed, len(report.errors))
        return report

    def _record_execution(
        self,
        capability: str,
        operation: Any,
        correlation_id: str,
        started: float,
        *,
        success: bool,
        error_kind: Optional[ErrorKind],
    ) -> None:
        self._history.append(
            ExecutionRecord(
                capability=capability,
                operation=operation if isinstance(operation, str) else None,
                correlation_id=correlation_id,
                success=success,
                error_kind=error_kind,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
        )

    def _missing(self, entry: CapabilityEntry) -> List[str]:
        wired = {
            Subsystem.permissions: self._permissions,
            Subsystem.shell_session: self._shells,
            Subsystem.mcp_foundation: self._servers,
        }
        return [dependency.value for dependency in entry.dependencies if wired.get(dependency) is None]

    def _probe_permissions(self) -> SubsystemHealth:
        if self._permissions is None:
            return SubsystemHealth(status=HealthStatus.error, message="permission engine not configured")
        return SubsystemHealth(status=HealthStatus.healthy, details=self._permissions.get_stats())

    def _probe_shells(self) -> SubsystemHealth:
        if self._shells is None:
            return SubsystemHealth(status=HealthStatus.error, message="shell session manager not configured")
        stats = self._shells.get_all_stats()
        dead = [s.session_id for s in stats if not s.alive]
        details = {"active_sessions": len(stats), "dead_sessions": dead}
        if dead:
            return SubsystemHealth(
                status=HealthStatus.warning, message=f"{len(dead)} session(s) no longer alive", details=details
            )
        return SubsystemHealth(status=HealthStatus.healthy, details=details)

    def _probe_servers(self) -> SubsystemHealth:
        if self._servers is None:
            return SubsystemHealth(status=HealthStatus.error, message="tool-server registry not configured")
        stats = self._servers.get_stats()
        failed = [info.name for info in self._servers.get_servers() if info.state == ServerState.failed]
        details = {**stats.model_dump(), "failed_servers": failed}
        if stats.total_servers and not stats.connected_servers:
            return SubsystemHealth(status=HealthStatus.warning, message="no MCP servers connected", details=details)
        if failed:
            return SubsystemHealth(
                status=HealthStatus.warning, message=f"{len(failed)} server(s) failed to connect", details=details
            )
        return SubsystemHealth(status=HealthStatus.healthy, details=details)
