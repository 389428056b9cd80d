from __future__ import annotations

"""Permission engine.

``PermissionEngine`` is the single authority deciding whether a privileged
action may proceed. Every shell execution, MCP connection, MCP invocation and
file operation evaluates a :class:`PermissionRequest` here first.

Evaluation order
----------------

1. Replay: an unexpired prior grant for the same ``(correlation_id, type)``
   decides, so retried requests are deterministic and never re-prompt.
2. Policy: deny rules, project-root containment, the system-wide allow-list
   and the optional approver hook.
3. Default deny.

Each evaluation appends exactly one grant to the ledger.
"""

import asyncio
import logging
from collections.abc import Mapping
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from ..errors import PermissionDeniedError, RequestValidationError
from ..schemas.domain import (
    Grant,
    GrantDecision,
    GrantSource,
    PermissionRequest,
    PermissionScope,
    PermissionType,
    utc_now,
)
from .ledger import GrantLedger
from .models import PermissionApprover, PermissionPolicy, PolicyDecision

logger = logging.getLogger(__name__)

_Key = Tuple[str, PermissionType]


class _KeyedLocks:
    """Reference-counted ``asyncio.Lock`` per key; idle locks are discarded."""

    def __init__(self) -> None:
        self._locks: Dict[_Key, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: _Key) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (asyncio.Lock(), 0))
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)


class PermissionEngine:
    """Evaluate permission requests against a :class:`PermissionPolicy` and the grant ledger."""

    def __init__(
        self,
        policy: Optional[PermissionPolicy] = None,
        *,
        ledger: Optional[GrantLedger] = None,
        approver: Optional[PermissionApprover] = None,
    ) -> None:
        self._policy = policy or PermissionPolicy()
        self._ledger = ledger or GrantLedger()
        self._approver = approver
        self._locks = _KeyedLocks()

    @property
    def policy(self) -> PermissionPolicy:
        return self._policy

    async def evaluate(self, request: Union[PermissionRequest, Mapping[str, Any]]) -> Grant:
        """
        Decide a permission request and record the decision.

        Args:
            request: A ``PermissionRequest`` or a mapping with the same fields.

        Returns:
            The recorded grant. A denial is a normal ``Grant`` with ``decision=denied``.

        Raises:
            RequestValidationError: If ``request`` is a malformed mapping.
        """
        req = self._coerce(request)
        async with self._locks.hold((req.correlation_id, req.type)):
            prior = self._ledger.find_latest(req.correlation_id, req.type)
            if prior is not None:
                outcome = PolicyDecision(
                    decision=prior.decision,
                    source=GrantSource.replay,
                    reason=f"replayed grant {prior.id}",
                )
                expires_at = prior.expires_at
            else:
                outcome = await self._decide(req)
                expires_at = None
                if req.scope == PermissionScope.temporary and outcome.granted:
                    ttl = timedelta(seconds=self._policy.temporary_grant_ttl_seconds)
                    expires_at = utc_now() + ttl

            grant = Grant(
                request=req,
                decision=outcome.decision,
                correlation_id=req.correlation_id,
                source=outcome.source,
                reason=outcome.reason,
                expires_at=expires_at,
            )
            self._ledger.append(grant)

        logger.debug(
            "PermissionEngine.evaluate: type=%s scope=%s correlation_id=%s decision=%s source=%s reason=%s",
            req.type.value,
            req.scope.value,
            req.correlation_id,
            grant.decision.value,
            grant.source.value,
            grant.reason,
        )
        return grant

    async def require(self, request: Union[PermissionRequest, Mapping[str, Any]]) -> Grant:
        """Evaluate ``request`` and raise :class:`PermissionDeniedError` unless granted."""
        grant = await self.evaluate(request)
        if not grant.granted:
            raise PermissionDeniedError(grant)
        return grant

    def get_grants(self) -> List[Grant]:
        return self._ledger.snapshot()

    def revoke_all_grants(self) -> int:
        """
        Clear the ledger.

        Revocation is forward-looking only: open shell sessions and connected
        tool servers are untouched, future evaluations start from scratch.
        """
        removed = self._ledger.clear()
        logger.info("PermissionEngine.revoke_all_grants: removed=%d", removed)
        return removed

    def clear_expired_grants(self) -> int:
        return self._ledger.drop_expired()

    def get_stats(self) -> Dict[str, int]:
        grants = self._ledger.snapshot()
        granted = sum(1 for g in grants if g.granted)
        return {"total_grants": len(grants), "granted": granted, "denied": len(grants) - granted}

    async def _decide(self, req: PermissionRequest) -> PolicyDecision:
        for rule in self._policy.deny_rules:
            if rule.matches(req):
                return PolicyDecision(
                    decision=GrantDecision.denied,
                    source=GrantSource.policy,
                    reason=f"matched deny rule: {rule.reason or rule.type.value}",
                )

        if req.scope in (PermissionScope.project_only, PermissionScope.temporary):
            if req.path is not None and not self._policy.contains(req.path):
                return PolicyDecision(
                    decision=GrantDecision.denied,
                    source=GrantSource.policy,
                    reason=f"path outside project root: {req.path}",
                )
            return PolicyDecision(
                decision=GrantDecision.granted,
                source=GrantSource.policy,
                reason="project-scoped request",
            )

        if req.scope == PermissionScope.system_wide:
            if req.type in self._policy.system_wide_allowed:
                return PolicyDecision(
                    decision=GrantDecision.granted,
                    source=GrantSource.policy,
                    reason=f"{req.type.value} allow-listed system-wide",
                )
            if self._approver is not None:
                approved = await self._approver.approve(req)
                return PolicyDecision(
                    decision=GrantDecision.granted if approved else GrantDecision.denied,
                    source=GrantSource.approver,
                    reason="approved" if approved else "rejected by approver",
                )

        return PolicyDecision(
            decision=GrantDecision.denied,
            source=GrantSource.default,
            reason="no rule granted the request",
        )

    @staticmethod
    def _coerce(request: Union[PermissionRequest, Mapping[str, Any]]) -> PermissionRequest:
        if isinstance(request, PermissionRequest):
            return request
        if not isinstance(request, Mapping):
            raise RequestValidationError(f"Unsupported permission request type: {type(request).__name__}")
        try:
            return PermissionRequest.model_validate(dict(request))
        except ValidationError as exc:
            raise RequestValidationError(
                f"Malformed permission request: {exc}", correlation_id=request.get("correlation_id")
            ) from exc
