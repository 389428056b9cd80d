from __future__ import annotations

"""Append-only grant ledger.

The ledger is the only place permission decisions are stored. Entries are
appended in evaluation-completion order and never edited; ``clear`` is the
revocation primitive.
"""

import threading
from datetime import datetime
from typing import List, Optional

from ..schemas.domain import Grant, PermissionType


class GrantLedger:
    """
    Thread-safe, append-only list of :class:`Grant` records.

    Notes:
        - ``snapshot`` returns a copy; mutating it never affects the ledger.
        - ``find_latest`` skips expired grants so temporary grants fall back to a
          fresh policy evaluation.
    """

    def __init__(self) -> None:
        self._entries: List[Grant] = []
        self._lock = threading.Lock()

    def append(self, grant: Grant) -> None:
        with self._lock:
            self._entries.append(grant)

    def find_latest(
        self, correlation_id: str, type: PermissionType, *, now: Optional[datetime] = None
    ) -> Optional[Grant]:
        """
        Return the most recent unexpired grant for ``(correlation_id, type)``.

        Args:
            correlation_id: The correlation id of the request.
            type: The permission type of the request.
            now: Reference time for expiry checks (defaults to current UTC time).

        Returns:
            The matching grant, or None when no prior decision applies.
        """
        with self._lock:
            for grant in reversed(self._entries):
                if grant.correlation_id == correlation_id and grant.type == type and not grant.is_expired(now):
                    return grant
        return None

    def snapshot(self) -> List[Grant]:
        with self._lock:
            return list(self._entries)

    def drop_expired(self, *, now: Optional[datetime] = None) -> int:
        with self._lock:
            kept = [g for g in self._entries if not g.is_expired(now)]
            removed = len(self._entries) - len(kept)
            self._entries = kept
        return removed

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries = []
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
