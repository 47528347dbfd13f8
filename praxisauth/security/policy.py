"""Authorization decisions over roles, grants, delegations and context."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, Mapping, Optional, Sequence

from praxisauth.security.audit import AuditEntry, AuditRecorder
from praxisauth.security.constraints import ContextPredicate, ContextualConstraints
from praxisauth.security.delegation import DelegationStore
from praxisauth.security.grants import GrantStore
from praxisauth.security.loader import (
    NOT_FOUND,
    FailMode,
    FailurePolicy,
    ResourceLoader,
    load_with_timeout,
)
from praxisauth.security.models import (
    AuthorizationContext,
    Decision,
    ReasonCode,
    ResourceInstance,
    ResourceRoleAssignment,
    Subject,
    SubjectSummary,
    utcnow,
)
from praxisauth.security.permissions import (
    DEFAULT_SELF_SERVICE,
    ActionLike,
    Permission,
    PermissionCatalog,
    ResourceTypeLike,
    coerce_action,
    coerce_resource_type,
)
from praxisauth.utils.errors import ConfigurationError, InfrastructureError
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Outcome:
    allowed: bool
    reason: ReasonCode
    rule: str
    delegated_from: Optional[str] = None


class PolicyEvaluator:
    """Evaluate one request against a fixed list of rules.

    Rules run in order and the first match wins:

    0. call-site predicates (``CONTEXT_RESTRICTED``)
    1. missing subject (``UNAUTHENTICATED``)
    2. top-ranked role (``ROLE_BYPASS``)
    3. resource or location scoped role (``RESOURCE_ROLE``)
    4. ownership self-service (``SELF_SERVICE``)
    5. catalog role default (``ROLE_DEFAULT``)
    6. custom grant (``CUSTOM_GRANT``)
    7. active delegation, rules 2-6 as the delegator (``DELEGATION``)
    8. deny (``INSUFFICIENT_PERMISSION``)

    Any allow then passes the object ACL, the confidentiality ceiling and the
    consent gate. The top role passes every predicate and overlay; each such
    bypass is logged. Every call appends exactly one audit entry and waits for
    it before returning.
    """

    def __init__(
        self,
        catalog: PermissionCatalog,
        grants: GrantStore,
        delegations: DelegationStore,
        constraints: ContextualConstraints,
        audit: AuditRecorder,
        *,
        loader: Optional[ResourceLoader] = None,
        failure_policy: Optional[FailurePolicy] = None,
        self_service: Optional[Mapping[ResourceTypeLike, Iterable[ActionLike]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._catalog = catalog
        self._hierarchy = catalog.hierarchy
        self._grants = grants
        self._delegations = delegations
        self._constraints = constraints
        self._audit = audit
        self._loader = loader
        self._failure_policy = failure_policy or FailurePolicy()
        self._clock = clock
        table = DEFAULT_SELF_SERVICE if self_service is None else self_service
        self._self_service: Dict[ResourceTypeLike, frozenset] = {
            coerce_resource_type(rt): frozenset(coerce_action(a) for a in actions) for rt, actions in table.items()
        }

    @property
    def failure_policy(self) -> FailurePolicy:
        return self._failure_policy

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
        resource_type = coerce_resource_type(resource_type)
        action = coerce_action(action)
        context = context or AuthorizationContext(timestamp=self._clock())
        try:
            outcome = await self._evaluate(subject, resource_type, action, resource_instance, context, constraints)
            summary = await self._summary(subject, context.timestamp)
        except InfrastructureError as exc:
            return await self._on_fault(
                exc, subject, resource_type, action, resource_instance, None, context, constraints
            )
        return await self._conclude(subject, resource_type, action, resource_instance, None, context, outcome, summary)

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
        """Load ``resource_id`` through the injected loader, then authorize."""

        if self._loader is None:
            raise ConfigurationError("authorize_resource needs a ResourceLoader")
        resource_type = coerce_resource_type(resource_type)
        action = coerce_action(action)
        context = context or AuthorizationContext(timestamp=self._clock())
        if subject is None:
            return await self.authorize(None, action, resource_type, None, context, constraints=constraints)
        try:
            loaded = await load_with_timeout(
                self._loader, resource_type, resource_id, self._failure_policy.loader_timeout
            )
        except InfrastructureError as exc:
            return await self._on_fault(exc, subject, resource_type, action, None, resource_id, context, constraints)
        if loaded is NOT_FOUND:
            outcome = _Outcome(False, ReasonCode.RESOURCE_NOT_FOUND, "resource_not_found")
            try:
                summary = await self._summary(subject, context.timestamp)
            except InfrastructureError as exc:
                return await self._on_fault(
                    exc, subject, resource_type, action, None, resource_id, context, constraints, settled=outcome
                )
            return await self._conclude(subject, resource_type, action, None, resource_id, context, outcome, summary)
        return await self.authorize(subject, action, resource_type, loaded, context, constraints=constraints)

    # -- rules -------------------------------------------------------------------
    async def _evaluate(
        self,
        subject: Optional[Subject],
        resource_type: ResourceTypeLike,
        action: ActionLike,
        instance: Optional[ResourceInstance],
        context: AuthorizationContext,
        predicates: Sequence[ContextPredicate],
    ) -> _Outcome:
        restricted = self._check_predicates(subject, context, predicates)
        if restricted is not None:
            return restricted
        if subject is None:
            return _Outcome(False, ReasonCode.UNAUTHENTICATED, "unauthenticated")

        outcome = await self._match(subject, resource_type, action, instance, context.timestamp)
        if outcome is None:
            for delegation in await self._delegations.active_for(subject.id, context.timestamp):
                lent = await self._match(delegation.delegator, resource_type, action, instance, context.timestamp)
                if lent is not None:
                    outcome = _Outcome(
                        True, ReasonCode.DELEGATION, f"delegation:{delegation.id}", delegation.delegator.id
                    )
                    break
        if outcome is None:
            return _Outcome(False, ReasonCode.INSUFFICIENT_PERMISSION, "default_deny")
        return self._overlay(subject, resource_type, action, instance, context, outcome)

    async def _match(
        self,
        subject: Subject,
        resource_type: ResourceTypeLike,
        action: ActionLike,
        instance: Optional[ResourceInstance],
        at: datetime,
    ) -> Optional[_Outcome]:
        """Rules 2 to 6 for one subject; ``None`` when nothing matches."""

        if self._hierarchy.is_top(subject.role):
            return _Outcome(True, ReasonCode.ROLE_BYPASS, "role_bypass")

        required = self._catalog.minimal_role(resource_type, action)
        if instance is not None and required is not None:
            for assignment in await self._grants.active_resource_roles(subject.id, at):
                if assignment.applies_to(instance) and self._hierarchy.is_at_least(assignment.role, required):
                    return _Outcome(True, ReasonCode.RESOURCE_ROLE, f"resource_role:{assignment.id}")

        if (
            instance is not None
            and instance.owner_id is not None
            and instance.owner_id == subject.id
            and action in self._self_service.get(resource_type, ())
        ):
            return _Outcome(True, ReasonCode.SELF_SERVICE, "self_service")

        if self._catalog.role_allows(subject.role, resource_type, action):
            return _Outcome(True, ReasonCode.ROLE_DEFAULT, "role_default")

        scope = instance.id if instance is not None else None
        for grant in await self._grants.active_grants(subject.id, at):
            if self._catalog.grant_covers(grant, resource_type, action, scope):
                return _Outcome(True, ReasonCode.CUSTOM_GRANT, f"custom_grant:{grant.id}")
        return None

    def _check_predicates(
        self,
        subject: Optional[Subject],
        context: AuthorizationContext,
        predicates: Sequence[ContextPredicate],
    ) -> Optional[_Outcome]:
        for predicate in predicates:
            if predicate.check(context):
                continue
            if subject is not None and self._hierarchy.is_top(subject.role):
                self._log_bypass(subject, f"predicate:{predicate.name}")
                continue
            return _Outcome(False, ReasonCode.CONTEXT_RESTRICTED, f"predicate:{predicate.name}")
        return None

    def _overlay(
        self,
        subject: Subject,
        resource_type: ResourceTypeLike,
        action: ActionLike,
        instance: Optional[ResourceInstance],
        context: AuthorizationContext,
        outcome: _Outcome,
    ) -> _Outcome:
        top = self._hierarchy.is_top(subject.role)
        violation = instance.acl.violation(subject, context) if instance is not None and instance.acl else None
        if violation is not None:
            if not top:
                if violation == "object_acl":
                    return _Outcome(False, ReasonCode.INSUFFICIENT_PERMISSION, violation)
                return _Outcome(False, ReasonCode.CONTEXT_RESTRICTED, violation)
            self._log_bypass(subject, violation)
        if instance is not None and not self._constraints.meets_clearance(subject, instance.tier):
            return _Outcome(False, ReasonCode.SENSITIVITY_EXCEEDED, "sensitivity_ceiling")
        if self._constraints.requires_consent(resource_type, action) and not subject.consent:
            if not top:
                return _Outcome(False, ReasonCode.CONTEXT_RESTRICTED, "consent_gate")
            self._log_bypass(subject, "consent_gate")
        return outcome

    def _degraded(
        self,
        subject: Optional[Subject],
        resource_type: ResourceTypeLike,
        action: ActionLike,
        instance: Optional[ResourceInstance],
        context: AuthorizationContext,
        predicates: Sequence[ContextPredicate],
    ) -> _Outcome:
        """Role defaults only, used when a store or loader is unavailable."""

        restricted = self._check_predicates(subject, context, predicates)
        if restricted is not None:
            return restricted
        if subject is None:
            return _Outcome(False, ReasonCode.UNAUTHENTICATED, "unauthenticated")
        if self._hierarchy.is_top(subject.role):
            return _Outcome(True, ReasonCode.ROLE_BYPASS, "role_bypass")
        if not self._catalog.role_allows(subject.role, resource_type, action):
            return _Outcome(False, ReasonCode.INSUFFICIENT_PERMISSION, "default_deny")
        return self._overlay(
            subject, resource_type, action, instance, context, _Outcome(True, ReasonCode.ROLE_DEFAULT, "role_default")
        )

    # -- faults and bookkeeping ---------------------------------------------------
    async def _on_fault(
        self,
        exc: InfrastructureError,
        subject: Optional[Subject],
        resource_type: ResourceTypeLike,
        action: ActionLike,
        instance: Optional[ResourceInstance],
        resource_id: Optional[str],
        context: AuthorizationContext,
        predicates: Sequence[ContextPredicate],
        *,
        settled: Optional[_Outcome] = None,
    ) -> Decision:
        """Apply the failure policy; ``settled`` is a denial already reached before the fault."""

        mode = self._failure_policy.mode_for(resource_type, action)
        summary = SubjectSummary(role=subject.role_name) if subject is not None else None
        if mode is FailMode.FAIL_OPEN:
            logger.warning(
                "infrastructure fault, degrading to role defaults",
                extra={"subject_id": getattr(subject, "id", None), "reason": str(exc), "request_id": context.request_id},
            )
            outcome = settled or self._degraded(subject, resource_type, action, instance, context, predicates)
            return await self._conclude(
                subject, resource_type, action, instance, resource_id, context, outcome, summary,
                degraded=True, fault=str(exc),
            )
        logger.error(
            "infrastructure fault, failing closed",
            extra={"subject_id": getattr(subject, "id", None), "reason": str(exc), "request_id": context.request_id},
        )
        outcome = _Outcome(False, ReasonCode.INSUFFICIENT_PERMISSION, "infrastructure_fault")
        await self._conclude(
            subject, resource_type, action, instance, resource_id, context, outcome, summary, fault=str(exc)
        )
        raise exc

    async def _summary(self, subject: Optional[Subject], at: datetime) -> Optional[SubjectSummary]:
        if subject is None:
            return None
        grants = await self._grants.active_grants(subject.id, at)
        roles = await self._grants.active_resource_roles(subject.id, at)
        return SubjectSummary(
            role=subject.role_name,
            grants=tuple(sorted({str(p) for grant in grants for p in grant.permissions})),
            resource_roles=tuple(sorted(_scope_label(assignment) for assignment in roles)),
        )

    async def _conclude(
        self,
        subject: Optional[Subject],
        resource_type: ResourceTypeLike,
        action: ActionLike,
        instance: Optional[ResourceInstance],
        resource_id: Optional[str],
        context: AuthorizationContext,
        outcome: _Outcome,
        summary: Optional[SubjectSummary],
        *,
        degraded: bool = False,
        fault: Optional[str] = None,
    ) -> Decision:
        required = str(Permission(resource_type, action))
        entry = AuditEntry(
            subject_id=subject.id if subject is not None else None,
            subject_role=subject.role_name if subject is not None else "anonymous",
            action=required.partition(":")[2],
            resource_type=required.partition(":")[0],
            resource_id=instance.id if instance is not None else resource_id,
            allowed=outcome.allowed,
            reason=outcome.reason.value,
            matched_rule=outcome.rule,
            required_permission=required,
            delegated_from=outcome.delegated_from,
            degraded=degraded,
            fault=fault,
            ip=context.ip,
            request_id=context.request_id,
        )
        await self._audit.append(entry)
        if outcome.reason is ReasonCode.ROLE_BYPASS:
            self._log_bypass(subject, outcome.rule)
        logger.info(
            "authorization decision",
            extra={
                "subject_id": entry.subject_id,
                "audit_id": entry.id,
                "decision": "allow" if outcome.allowed else "deny",
                "reason": outcome.reason.value,
                "rule": outcome.rule,
                "permission": required,
                "request_id": context.request_id,
            },
        )
        return Decision(
            allowed=outcome.allowed,
            reason=outcome.reason,
            matched_rule=outcome.rule,
            required_permission=required,
            audit_id=entry.id,
            subject_summary=summary,
            delegated_from=outcome.delegated_from,
            degraded=degraded,
        )

    def _log_bypass(self, subject: Optional[Subject], rule: str) -> None:
        logger.info(
            "top role bypass",
            extra={"subject_id": getattr(subject, "id", None), "reason": ReasonCode.ROLE_BYPASS.value, "rule": rule},
        )


def _scope_label(assignment: ResourceRoleAssignment) -> str:
    if assignment.location_id is not None:
        return f"{assignment.role.value}@location:{assignment.location_id}"
    return f"{assignment.role.value}@{assignment.resource_id}"


__all__ = ["PolicyEvaluator"]
