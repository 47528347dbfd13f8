"""Authorization facade wiring the security sub-systems from settings."""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from praxisauth.core.config import AuditSettings, AuthzConfigManager, AuthzSettings
from praxisauth.integration.database import SQLiteAuditStore
from praxisauth.security.audit import AuditTrail
from praxisauth.security.audit_system import AuditBackend, AuditSystem
from praxisauth.security.constraints import ContextPredicate, ContextualConstraints
from praxisauth.security.delegation import DelegationStore
from praxisauth.security.grants import GrantStore
from praxisauth.security.loader import FailurePolicy, ResourceLoader
from praxisauth.security.models import (
    AuthorizationContext,
    Decision,
    HistoryEntry,
    MutationResult,
    ResourceInstance,
    Subject,
    utcnow,
)
from praxisauth.security.permissions import ActionLike, Permission, PermissionCatalog, ResourceTypeLike
from praxisauth.security.policy import PolicyEvaluator
from praxisauth.security.roles import Role, RoleHierarchy
from praxisauth.utils.errors import ConfigurationError, PermissionDeniedError
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)

PermissionLike = Union[Permission, str]


class AuthorizationManager:
    """Coordinates the hierarchy, catalog, stores, constraints and audit."""

    def __init__(
        self,
        settings: Optional[AuthzSettings] = None,
        *,
        loader: Optional[ResourceLoader] = None,
        audit_backend: Optional[AuditBackend] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = settings or AuthzSettings()
        self.settings = settings
        self.hierarchy = RoleHierarchy(settings.roles.ranks)
        self.catalog = PermissionCatalog(self.hierarchy, overrides=settings.catalog_overrides)
        self.grants = GrantStore(self.catalog, clock=clock)
        self.delegations = DelegationStore(self.hierarchy, clock=clock)
        self.constraints = self._build_constraints(settings)
        self.audit = AuditSystem(
            audit_backend or _build_backend(settings.audit),
            batch_size=settings.audit.batch_size,
            max_retries=settings.audit.max_retries,
            retry_delay=settings.audit.retry_delay,
            durable=settings.audit.durable,
        )
        self.failure_policy = FailurePolicy(
            settings.failure_policy.default,
            settings.failure_policy.overrides,
            loader_timeout=settings.failure_policy.loader_timeout,
        )
        self.evaluator = PolicyEvaluator(
            self.catalog,
            self.grants,
            self.delegations,
            self.constraints,
            self.audit,
            loader=loader,
            failure_policy=self.failure_policy,
            self_service=settings.self_service,
            clock=clock,
        )

    @classmethod
    async def from_config(cls, config: AuthzConfigManager, **kwargs) -> "AuthorizationManager":
        settings = await config.get_settings()
        return cls(settings, **kwargs)

    # -- decisions ---------------------------------------------------------------
    async def authorize(
        self,
        subject: Optional[Subject],
        action: ActionLike,
        resource_type: ResourceTypeLike,
        resource_instance: Optional[ResourceInstance] = None,
        context: Optional[AuthorizationContext] = None,
        *,
        constraints: Sequence[ContextPredicate] = (),
    ) -> Decision:
        return await self.evaluator.authorize(
            subject, action, resource_type, resource_instance, context, constraints=constraints
        )

    async def authorize_resource(
        self,
        subject: Optional[Subject],
        action: ActionLike,
        resource_type: ResourceTypeLike,
        resource_id: str,
        context: Optional[AuthorizationContext] = None,
        *,
        constraints: Sequence[ContextPredicate] = (),
    ) -> Decision:
        return await self.evaluator.authorize_resource(
            subject, action, resource_type, resource_id, context, constraints=constraints
        )

    async def has_permission(
        self, subject: Optional[Subject], permission: PermissionLike, at: Optional[datetime] = None
    ) -> bool:
        """Coarse role-plus-grant check for route guards; never audited."""

        if subject is None:
            return False
        grants = await self.grants.active_grants(subject.id, at)
        return self.catalog.has_permission(subject.role, permission, grants, at)

    async def has_all_permissions(
        self, subject: Optional[Subject], permissions: Iterable[PermissionLike], at: Optional[datetime] = None
    ) -> bool:
        if subject is None:
            return False
        grants = await self.grants.active_grants(subject.id, at)
        return self.catalog.has_all_permissions(subject.role, permissions, grants, at)

    async def has_any_permission(
        self, subject: Optional[Subject], permissions: Iterable[PermissionLike], at: Optional[datetime] = None
    ) -> bool:
        if subject is None:
            return False
        grants = await self.grants.active_grants(subject.id, at)
        return self.catalog.has_any_permission(subject.role, permissions, grants, at)

    async def ensure_permission(self, subject: Optional[Subject], permission: PermissionLike) -> None:
        if not await self.has_permission(subject, permission):
            required = str(Permission.parse(permission))
            logger.warning(
                "permission guard failed",
                extra={"subject_id": getattr(subject, "id", None), "permission": required},
            )
            raise PermissionDeniedError(required, subject.role_name if subject is not None else None)

    # -- administration ----------------------------------------------------------
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
        return await self.grants.grant(subject_id, resource_type, actions, granted_by, reason, expires_at, resource_id)

    async def revoke(self, grant_id: str, revoked_by: Subject, reason: str) -> MutationResult:
        return await self.grants.revoke(grant_id, revoked_by, reason)

    async def assign_resource_role(
        self, subject_id: str, role: Union[Role, str], granted_by: Subject, reason: str, **scope
    ) -> MutationResult:
        return await self.grants.assign_resource_role(subject_id, role, granted_by, reason, **scope)

    async def revoke_resource_role(self, assignment_id: str, revoked_by: Subject, reason: str) -> MutationResult:
        return await self.grants.revoke_resource_role(assignment_id, revoked_by, reason)

    async def delegate(
        self,
        delegator: Subject,
        delegate_id: str,
        starts_at: datetime,
        ends_at: datetime,
        granted_by: Optional[Subject] = None,
        reason: str = "",
    ) -> MutationResult:
        return await self.delegations.delegate(
            delegator, delegate_id, starts_at, ends_at, granted_by or delegator, reason
        )

    async def revoke_delegation(self, delegation_id: str, revoked_by: Subject, reason: str) -> MutationResult:
        return await self.delegations.revoke_delegation(delegation_id, revoked_by, reason)

    async def history(self, subject_id: str) -> List[HistoryEntry]:
        """Grant, resource-role and delegation changes for a subject, oldest first."""

        entries = await self.grants.history(subject_id) + await self.delegations.history(subject_id)
        return sorted(entries, key=lambda entry: entry.at)

    def guard(self, name: str) -> List[ContextPredicate]:
        return self.constraints.guard(name)

    async def close(self) -> None:
        await self.audit.close()

    def _build_constraints(self, settings: AuthzSettings) -> ContextualConstraints:
        options = settings.constraints
        try:
            timezone = ZoneInfo(options.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigurationError(f"Unknown timezone {options.timezone!r}") from exc
        guards = ContextualConstraints.default_guards(
            timezone=timezone,
            start=options.business_hours_start,
            end=options.business_hours_end,
            days=options.business_days,
            allowed_weekdays=options.allowed_weekdays,
            ip_allow_list=options.ip_allow_list,
        )
        return ContextualConstraints(
            self.hierarchy,
            clearance=settings.clearance,
            consent_permissions=settings.consent_permissions,
            guards=guards,
        )


def _build_backend(settings: AuditSettings) -> AuditBackend:
    if settings.backend == "sqlite":
        return SQLiteAuditStore(f"sqlite:///{settings.path}")
    return AuditTrail(settings.path)


__all__ = ["AuthorizationManager"]
