"""Permission engine and grant ledger.

Usage
-----

    engine = PermissionEngine(PermissionPolicy(project_root=Path.cwd()))
    grant = await engine.evaluate(
        PermissionRequest(type=PermissionType.shell_execute, scope=PermissionScope.project_only, command="ls")
    )
    if grant.granted:
        ...
"""

from .engine import PermissionEngine
from .ledger import GrantLedger
from .models import PermissionApprover, PermissionPolicy, PermissionRule, PolicyDecision, default_deny_rules

__all__ = [
    "GrantLedger",
    "PermissionApprover",
    "PermissionEngine",
    "PermissionPolicy",
    "PermissionRule",
    "PolicyDecision",
    "default_deny_rules",
]
