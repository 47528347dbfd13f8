"""Append-only store for custom grants and resource-scoped roles."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Union

from praxisauth.security.models import (
    Grant,
    HistoryEntry,
    HistoryKind,
    MutationResult,
    ReasonCode,
    ResourceRoleAssignment,
    Revocation,
    Subject,
    new_id,
    utcnow,
)
from praxisauth.security.permissions import (
    ActionLike,
    Permission,
    PermissionCatalog,
    ResourceTypeLike,
)
from praxisauth.security.roles import Role
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)

LedgerRecord = Union[Grant, ResourceRoleAssignment, Revocation]


class GrantStore:
    """Custom permission grants and resource roles with full provenance.

    Records are only ever appended. Revoking a grant appends a
    :class:`Revocation` that supersedes it, so :meth:`history` always shows
    the complete trail. Writes for one subject are serialised so the grantor
    ceiling holds even when two administrators act at the same time.
    """

    def __init__(self, catalog: PermissionCatalog, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._catalog = catalog
        self._hierarchy = catalog.hierarchy
        self._clock = clock
        self._ledger: Dict[str, List[LedgerRecord]] = defaultdict(list)
        self._history: Dict[str, List[HistoryEntry]] = defaultdict(list)
        self._owners: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # -- mutations ---------------------------------------------------------------
    async def grant(
        self,
        subject_id: str,
        resource_type: ResourceTypeLike,
        actions: Iterable[ActionLike],
        granted_by: Subject,
        reason: str,
        expires_at: Optional[datetime] = None,
        resource_id: Optional[str] = None,
    ) -> MutationResult:
        actions = tuple(actions)
        if not actions:
            raise ValueError("A grant needs at least one action")
        async with self._locks[subject_id]:
            record = Grant(
                id=new_id(),
                subject_id=subject_id,
                resource_type=resource_type,
                actions=actions,
                granted_by=granted_by.id,
                granted_at=self._clock(),
                reason=reason,
                expires_at=expires_at,
                resource_id=resource_id,
            )
            if not self._may_confer(granted_by, record.permissions):
                logger.warning(
                    "grant rejected",
                    extra={"subject_id": subject_id, "permission": _describe(record), "reason": "escalation"},
                )
                return MutationResult(False, ReasonCode.GRANT_ESCALATION_REJECTED)
            self._append(record, HistoryKind.GRANTED, _describe(record), granted_by.id, reason)
            logger.info("grant recorded", extra={"subject_id": subject_id, "permission": _describe(record)})
            return MutationResult(True, record_id=record.id)

    async def revoke(self, grant_id: str, revoked_by: Subject, reason: str) -> MutationResult:
        target = self._find(grant_id, Grant)
        async with self._locks[target.subject_id]:
            if not self._may_confer(revoked_by, target.permissions):
                return MutationResult(False, ReasonCode.GRANT_ESCALATION_REJECTED)
            return self._supersede(target, HistoryKind.REVOKED, _describe(target), revoked_by, reason)

    async def assign_resource_role(
        self,
        subject_id: str,
        role: Union[Role, str],
        granted_by: Subject,
        reason: str,
        *,
        resource_type: Optional[ResourceTypeLike] = None,
        resource_id: Optional[str] = None,
        location_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> MutationResult:
        if (resource_id is None) == (location_id is None):
            raise ValueError("Scope a resource role to exactly one of resource_id or location_id")
        role = Role(role)
        async with self._locks[subject_id]:
            if not self._hierarchy.is_at_least(granted_by.role, role):
                logger.warning(
                    "resource role rejected",
                    extra={"subject_id": subject_id, "permission": role.value, "reason": "escalation"},
                )
                return MutationResult(False, ReasonCode.GRANT_ESCALATION_REJECTED)
            record = ResourceRoleAssignment(
                id=new_id(),
                subject_id=subject_id,
                role=role,
                granted_by=granted_by.id,
                granted_at=self._clock(),
                reason=reason,
                resource_type=resource_type,
                resource_id=resource_id,
                location_id=location_id,
                expires_at=expires_at,
            )
            self._append(record, HistoryKind.ROLE_ASSIGNED, _describe(record), granted_by.id, reason)
            logger.info("resource role assigned", extra={"subject_id": subject_id, "permission": _describe(record)})
            return MutationResult(True, record_id=record.id)

    async def revoke_resource_role(self, assignment_id: str, revoked_by: Subject, reason: str) -> MutationResult:
        target = self._find(assignment_id, ResourceRoleAssignment)
        async with self._locks[target.subject_id]:
            if not self._hierarchy.is_at_least(revoked_by.role, target.role):
                return MutationResult(False, ReasonCode.GRANT_ESCALATION_REJECTED)
            return self._supersede(target, HistoryKind.ROLE_REVOKED, _describe(target), revoked_by, reason)

    # -- reads -------------------------------------------------------------------
    async def active_grants(self, subject_id: str, at: Optional[datetime] = None) -> List[Grant]:
        revoked = self._revoked_ids(subject_id)
        return [
            record
            for record in self._ledger.get(subject_id, [])
            if isinstance(record, Grant) and record.id not in revoked and record.is_active(at)
        ]

    async def active_resource_roles(self, subject_id: str, at: Optional[datetime] = None) -> List[ResourceRoleAssignment]:
        revoked = self._revoked_ids(subject_id)
        return [
            record
            for record in self._ledger.get(subject_id, [])
            if isinstance(record, ResourceRoleAssignment) and record.id not in revoked and record.is_active(at)
        ]

    async def history(self, subject_id: str) -> List[HistoryEntry]:
        return list(self._history.get(subject_id, []))

    # -- helpers -----------------------------------------------------------------
    def _may_confer(self, actor: Subject, permissions: Iterable[Permission]) -> bool:
        return all(
            self._hierarchy.is_at_least(actor.role, self._catalog.implied_role(permission))
            for permission in permissions
        )

    def _append(self, record: LedgerRecord, kind: HistoryKind, permission: str, changed_by: str, reason: str) -> None:
        subject_id = record.subject_id
        self._ledger[subject_id].append(record)
        self._owners[record.id] = subject_id
        self._history[subject_id].append(
            HistoryEntry(
                kind=kind,
                record_id=record.id,
                subject_id=subject_id,
                permission=permission,
                changed_by=changed_by,
                at=self._clock(),
                reason=reason,
            )
        )

    def _supersede(
        self,
        target: Union[Grant, ResourceRoleAssignment],
        kind: HistoryKind,
        permission: str,
        actor: Subject,
        reason: str,
    ) -> MutationResult:
        if target.id in self._revoked_ids(target.subject_id):
            return MutationResult(True, record_id=target.id)
        revocation = Revocation(
            id=new_id(),
            target_id=target.id,
            revoked_by=actor.id,
            revoked_at=self._clock(),
            reason=reason,
        )
        self._ledger[target.subject_id].append(revocation)
        self._history[target.subject_id].append(
            HistoryEntry(
                kind=kind,
                record_id=revocation.id,
                subject_id=target.subject_id,
                permission=permission,
                changed_by=actor.id,
                at=revocation.revoked_at,
                reason=reason,
            )
        )
        logger.info("record revoked", extra={"subject_id": target.subject_id, "permission": permission})
        return MutationResult(True, record_id=revocation.id)

    def _find(self, record_id: str, kind: type) -> Union[Grant, ResourceRoleAssignment]:
        subject_id = self._owners.get(record_id)
        if subject_id is None:
            raise KeyError(record_id)
        for record in self._ledger[subject_id]:
            if record.id == record_id and isinstance(record, kind):
                return record
        raise KeyError(record_id)

    def _revoked_ids(self, subject_id: str) -> set[str]:
        return {
            record.target_id
            for record in self._ledger.get(subject_id, [])
            if isinstance(record, Revocation)
        }


def _describe(record: Union[Grant, ResourceRoleAssignment]) -> str:
    if isinstance(record, Grant):
        text = ",".join(str(p) for p in record.permissions)
        return f"{text}@{record.resource_id}" if record.resource_id else text
    if record.location_id:
        scope = f"location:{record.location_id}"
    else:
        resource_type = getattr(record.resource_type, "value", record.resource_type) or "*"
        scope = f"{resource_type}:{record.resource_id}"
    return f"{record.role.value}@{scope}"


__all__ = ["GrantStore"]
