from datetime import timedelta

from agent_mediator.permissions.ledger import GrantLedger
from agent_mediator.schemas.domain import (
    Grant,
    GrantDecision,
    GrantSource,
    PermissionRequest,
    PermissionScope,
    PermissionType,
    utc_now,
)


def _grant(correlation_id: str, type: PermissionType = PermissionType.file_read, **kwargs) -> Grant:
    request = PermissionRequest(type=type, scope=PermissionScope.project_only, correlation_id=correlation_id)
    return Grant(
        request=request,
        decision=kwargs.pop("decision", GrantDecision.granted),
        correlation_id=correlation_id,
        source=GrantSource.policy,
        **kwargs,
    )


def test_find_latest_returns_most_recent_match() -> None:
    ledger = GrantLedger()
    older = _grant("c1")
    newer = _grant("c1", decision=GrantDecision.denied)
    ledger.append(older)
    ledger.append(_grant("c2"))
    ledger.append(newer)

    assert ledger.find_latest("c1", PermissionType.file_read) is newer
    assert ledger.find_latest("c1", PermissionType.file_write) is None
    assert ledger.find_latest("missing", PermissionType.file_read) is None


def test_find_latest_skips_expired_grants() -> None:
    ledger = GrantLedger()
    now = utc_now()
    ledger.append(_grant("c1", expires_at=now + timedelta(seconds=10)))

    assert ledger.find_latest("c1", PermissionType.file_read, now=now) is not None
    assert ledger.find_latest("c1", PermissionType.file_read, now=now + timedelta(seconds=11)) is None


def test_snapshot_is_a_copy() -> None:
    ledger = GrantLedger()
    ledger.append(_grant("c1"))

    snapshot = ledger.snapshot()
    snapshot.clear()

    assert len(ledger) == 1


def test_drop_expired_and_clear() -> None:
    ledger = GrantLedger()
    now = utc_now()
    ledger.append(_grant("c1", expires_at=now - timedelta(seconds=1)))
    ledger.append(_grant("c2"))

    assert ledger.drop_expired(now=now) == 1
    assert [g.correlation_id for g in ledger.snapshot()] == ["c2"]
    assert ledger.clear() == 1
    assert len(ledger) == 0
