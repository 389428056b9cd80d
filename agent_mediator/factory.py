from __future__ import annotations

"""Construction helpers.

Every subsystem is an explicit instance built once and passed by reference;
nothing in the package keeps process-wide singletons. Tests build fresh
instances per test through these helpers or the constructors directly.
"""

from typing import Optional

from .capabilities.registry import CapabilityRegistry
from .core.config import Settings
from .core.logging_config import setup_logging
from .mcp.registry import ToolServerRegistry
from .mcp.transport import McpTransport, SdkMcpTransport
from .permissions.engine import PermissionEngine
from .permissions.models import PermissionApprover
from .shell.manager import ShellSessionManager


def build_permission_engine(settings: Settings, *, approver: Optional[PermissionApprover] = None) -> PermissionEngine:
    return PermissionEngine(settings.permissions, approver=approver)


def build_capability_registry(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[McpTransport] = None,
    approver: Optional[PermissionApprover] = None,
    configure_logging: bool = False,
) -> CapabilityRegistry:
    """
    Wire a ``CapabilityRegistry`` with fresh subsystem instances.

    Args:
        settings: Configuration; loaded from the environment when omitted.
        transport: MCP transport; defaults to ``SdkMcpTransport`` configured
            from ``settings.mcp``.
        approver: Optional hook for system-wide requests that are not allow-listed.
        configure_logging: Install root logging handlers from ``settings``.

    Returns:
        A registry holding the fixed capability catalog.
    """
    settings = settings or Settings()
    if configure_logging:
        setup_logging(
            log_level=settings.log_level,
            log_format=settings.log_format,
            enable_file=settings.enable_file_logging,
            log_file_dir=settings.log_file_dir,
        )
    permissions = build_permission_engine(settings, approver=approver)
    shells = ShellSessionManager(permissions, settings.shell)
    transport = transport or SdkMcpTransport(
        heartbeat_interval_seconds=settings.mcp.heartbeat_interval_seconds,
        close_timeout_seconds=settings.mcp.close_timeout_seconds,
    )
    servers = ToolServerRegistry(permissions, transport, settings.mcp)
    return CapabilityRegistry(permissions, shells, servers)
