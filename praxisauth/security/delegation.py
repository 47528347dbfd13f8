"""Time-bounded delegation of authority between subjects."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from praxisauth.security.models import (
    Delegation,
    HistoryEntry,
    HistoryKind,
    MutationResult,
    ReasonCode,
    Revocation,
    Subject,
    ensure_aware,
    new_id,
    utcnow,
)
from praxisauth.security.roles import RoleHierarchy
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)


class DelegationStore:
    """Delegations keyed by delegate, with append-only revocation.

    Overlapping windows for the same (delegator, delegate) pair are refused.
    Delegations are never chained: a delegate acts with the delegator's own
    authority only, never with authority the delegator holds by delegation.
    """

    def __init__(self, hierarchy: RoleHierarchy, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._hierarchy = hierarchy
        self._clock = clock
        self._delegations: Dict[str, List[Delegation]] = defaultdict(list)
        self._revocations: Dict[str, Revocation] = {}
        self._history: Dict[str, List[HistoryEntry]] = defaultdict(list)
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def delegate(
        self,
        delegator: Subject,
        delegate_id: str,
        starts_at: datetime,
        ends_at: datetime,
        granted_by: Subject,
        reason: str = "",
    ) -> MutationResult:
        starts_at, ends_at = ensure_aware(starts_at), ensure_aware(ends_at)
        if ends_at <= starts_at:
            raise ValueError("Delegation window must end after it starts")
        if delegator.id == delegate_id:
            raise ValueError("A subject cannot delegate to itself")
        if granted_by.id != delegator.id and not self._hierarchy.is_at_least(granted_by.role, delegator.role):
            logger.warning(
                "delegation rejected",
                extra={"subject_id": delegate_id, "reason": "escalation"},
            )
            return MutationResult(False, ReasonCode.GRANT_ESCALATION_REJECTED)

        async with self._locks[(delegator.id, delegate_id)]:
            for existing in self._live(delegate_id):
                if existing.delegator.id == delegator.id and existing.overlaps(starts_at, ends_at):
                    logger.warning(
                        "delegation conflict",
                        extra={"subject_id": delegate_id, "rule": f"delegation:{existing.id}"},
                    )
                    return MutationResult(False, ReasonCode.DELEGATION_CONFLICT)
            record = Delegation(
                id=new_id(),
                delegator=delegator,
                delegate_id=delegate_id,
                starts_at=starts_at,
                ends_at=ends_at,
                granted_by=granted_by.id,
                created_at=self._clock(),
                reason=reason,
            )
            self._delegations[delegate_id].append(record)
            self._record(HistoryKind.DELEGATED, record.id, record, granted_by.id, reason)
            logger.info("delegation recorded", extra={"subject_id": delegate_id, "rule": f"delegation:{record.id}"})
            return MutationResult(True, record_id=record.id)

    async def revoke_delegation(self, delegation_id: str, revoked_by: Subject, reason: str) -> MutationResult:
        target = self._find(delegation_id)
        if revoked_by.id not in (target.delegator.id, target.granted_by) and not self._hierarchy.is_at_least(
            revoked_by.role, target.delegator.role
        ):
            return MutationResult(False, ReasonCode.GRANT_ESCALATION_REJECTED)
        async with self._locks[(target.delegator.id, target.delegate_id)]:
            existing = self._revocations.get(delegation_id)
            if existing is not None:
                return MutationResult(True, record_id=existing.id)
            revocation = Revocation(
                id=new_id(),
                target_id=delegation_id,
                revoked_by=revoked_by.id,
                revoked_at=self._clock(),
                reason=reason,
            )
            self._revocations[delegation_id] = revocation
            self._record(HistoryKind.DELEGATION_REVOKED, revocation.id, target, revoked_by.id, reason)
            return MutationResult(True, record_id=revocation.id)

    async def active_for(self, delegate_id: str, at: Optional[datetime] = None) -> List[Delegation]:
        """Delegations whose window contains ``at``, oldest window first."""

        moment = ensure_aware(at or self._clock())
        active = [record for record in self._live(delegate_id) if record.covers(moment)]
        return sorted(active, key=lambda record: (record.starts_at, record.id))

    async def history(self, subject_id: str) -> List[HistoryEntry]:
        return list(self._history.get(subject_id, []))

    def _live(self, delegate_id: str) -> List[Delegation]:
        return [record for record in self._delegations.get(delegate_id, []) if record.id not in self._revocations]

    def _find(self, delegation_id: str) -> Delegation:
        for records in self._delegations.values():
            for record in records:
                if record.id == delegation_id:
                    return record
        raise KeyError(delegation_id)

    def _record(self, kind: HistoryKind, record_id: str, delegation: Delegation, changed_by: str, reason: str) -> None:
        entry = HistoryEntry(
            kind=kind,
            record_id=record_id,
            subject_id=delegation.delegate_id,
            permission=f"delegation:{delegation.delegator.id}->{delegation.delegate_id}",
            changed_by=changed_by,
            at=self._clock(),
            reason=reason,
        )
        self._history[delegation.delegate_id].append(entry)
        self._history[delegation.delegator.id].append(entry)


__all__ = ["DelegationStore"]
