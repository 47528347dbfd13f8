import asyncio
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from praxisauth.security.audit import AuditFilter
from praxisauth.security.constraints import BusinessHours, ContextualConstraints, IpAllowList
from praxisauth.security.delegation import DelegationStore
from praxisauth.security.grants import GrantStore
from praxisauth.security.loader import NOT_FOUND, FailMode, FailurePolicy
from praxisauth.security.models import (
    AuthorizationContext,
    ConfidentialityTier,
    ObjectAcl,
    ReasonCode,
    ResourceInstance,
    Subject,
)
from praxisauth.security.permissions import PermissionCatalog
from praxisauth.security.policy import PolicyEvaluator
from praxisauth.security.roles import Role, RoleHierarchy
from praxisauth.utils.errors import AuditWriteError, ResourceLoaderTimeout, StoreUnavailableError

VIENNA = ZoneInfo("Europe/Vienna")
NOW = datetime(2024, 3, 4, 10, 0, tzinfo=VIENNA)  # Monday
ROOT = Subject("root", Role.SUPER_ADMIN)
ADMIN = Subject("admin-1", Role.ADMIN)


class RecordingAudit:
    def __init__(self, fail: bool = False) -> None:
        self.entries = []
        self.fail = fail

    async def append(self, entry) -> None:
        if self.fail:
            raise AuditWriteError("disk full")
        self.entries.append(entry)

    async def query(self, audit_filter):
        return audit_filter.apply(self.entries)


class DictLoader:
    def __init__(self, instances=(), *, delay: float = 0.0) -> None:
        self.instances = {(i.resource_type.value, i.id): i for i in instances}
        self.delay = delay

    async def load(self, resource_type, resource_id):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.instances.get((getattr(resource_type, "value", resource_type), resource_id), NOT_FOUND)


class BrokenGrantStore(GrantStore):
    async def active_resource_roles(self, subject_id, at=None):
        raise StoreUnavailableError("grant store offline")

    async def active_grants(self, subject_id, at=None):
        raise StoreUnavailableError("grant store offline")


def _build(*, loader=None, failure_policy=None, audit=None, grant_store_cls=GrantStore):
    hierarchy = RoleHierarchy()
    catalog = PermissionCatalog(hierarchy)
    grants = grant_store_cls(catalog, clock=lambda: NOW)
    delegations = DelegationStore(hierarchy, clock=lambda: NOW)
    audit = audit or RecordingAudit()
    evaluator = PolicyEvaluator(
        catalog,
        grants,
        delegations,
        ContextualConstraints(hierarchy),
        audit,
        loader=loader,
        failure_policy=failure_policy,
        clock=lambda: NOW,
    )
    return evaluator, grants, delegations, audit


def _ctx(when: datetime = NOW, **kwargs) -> AuthorizationContext:
    return AuthorizationContext(timestamp=when, **kwargs)


@pytest.mark.asyncio
async def test_top_role_always_allows_with_one_audit_entry() -> None:
    evaluator, _, _, audit = _build()
    locked = ResourceInstance(
        "doc-1",
        "document",
        tier=ConfidentialityTier.HIGHLY_SENSITIVE,
        acl=ObjectAcl(denied_roles=frozenset({Role.SUPER_ADMIN})),
    )
    saturday = datetime(2024, 3, 9, 23, 0, tzinfo=VIENNA)
    decision = await evaluator.authorize(
        ROOT,
        "export",
        "document",
        locked,
        _ctx(saturday, ip="8.8.8.8"),
        constraints=[BusinessHours(timezone=VIENNA), IpAllowList(["10.0.0.0/8"])],
    )
    assert decision.allowed
    assert decision.reason is ReasonCode.ROLE_BYPASS
    assert len(audit.entries) == 1
    assert audit.entries[0].id == decision.audit_id
    assert audit.entries[0].matched_rule == "role_bypass"


@pytest.mark.asyncio
async def test_patient_reads_own_record_through_self_service() -> None:
    evaluator, _, _, audit = _build()
    patient = Subject("pat-1", Role.PATIENT)
    own = ResourceInstance("pat-1", "patient", owner_id="pat-1")
    decision = await evaluator.authorize(patient, "read", "patient", own, _ctx())
    assert decision.allowed
    assert decision.reason is ReasonCode.SELF_SERVICE

    other = ResourceInstance("pat-2", "patient", owner_id="pat-2")
    denied = await evaluator.authorize(patient, "read", "patient", other, _ctx())
    assert not denied.allowed
    assert denied.reason is ReasonCode.INSUFFICIENT_PERMISSION
    assert denied.required_permission == "patient:read"
    assert denied.subject_summary.role == "patient"
    assert len(audit.entries) == 2
    assert [entry.allowed for entry in audit.entries] == [True, False]


@pytest.mark.asyncio
async def test_business_hours_guard_denies_on_saturday() -> None:
    evaluator, _, _, _ = _build()
    assistent = Subject("ass-1", Role.ASSISTENT)
    hours = [BusinessHours(timezone=VIENNA)]
    saturday = datetime(2024, 3, 9, 10, 0, tzinfo=VIENNA)
    decision = await evaluator.authorize(assistent, "read", "patient", None, _ctx(saturday), constraints=hours)
    assert not decision.allowed
    assert decision.reason is ReasonCode.CONTEXT_RESTRICTED
    assert decision.matched_rule == "predicate:business_hours"

    weekday = await evaluator.authorize(assistent, "read", "patient", None, _ctx(), constraints=hours)
    assert weekday.reason is ReasonCode.ROLE_DEFAULT


@pytest.mark.asyncio
async def test_admin_cannot_grant_top_rank_wildcard() -> None:
    _, grants, _, _ = _build()
    result = await grants.grant("rez-1", "*", ["*"], ADMIN, "all access")
    assert not result.accepted
    assert result.reason is ReasonCode.GRANT_ESCALATION_REJECTED
    assert await grants.active_grants("rez-1") == []


@pytest.mark.asyncio
async def test_resource_wildcard_grant_stays_within_cataloged_actions() -> None:
    evaluator, grants, _, _ = _build()
    result = await grants.grant("rez-1", "patient", ["*"], ADMIN, "front desk lead")
    assert result.accepted

    rezeption = Subject("rez-1", Role.REZEPTION, consent=True)
    delete = await evaluator.authorize(rezeption, "delete", "patient", None, _ctx())
    assert delete.reason is ReasonCode.CUSTOM_GRANT

    # nobody below the top role holds patient:export, so the wildcard cannot confer it
    own = await evaluator.authorize(Subject("admin-1", Role.ADMIN, consent=True), "export", "patient", None, _ctx())
    assert not own.allowed
    export = await evaluator.authorize(rezeption, "export", "patient", None, _ctx())
    assert not export.allowed
    assert export.reason is ReasonCode.INSUFFICIENT_PERMISSION


@pytest.mark.asyncio
async def test_grants_do_not_apply_before_they_were_made() -> None:
    evaluator, grants, _, _ = _build()
    await grants.grant("rez-1", "reports", ["read"], ADMIN, "monthly numbers")
    rezeption = Subject("rez-1", Role.REZEPTION)

    earlier = await evaluator.authorize(rezeption, "read", "reports", None, _ctx(NOW - timedelta(hours=1)))
    assert earlier.reason is ReasonCode.INSUFFICIENT_PERMISSION
    assert earlier.subject_summary.grants == ()
    current = await evaluator.authorize(rezeption, "read", "reports", None, _ctx())
    assert current.reason is ReasonCode.CUSTOM_GRANT


@pytest.mark.asyncio
async def test_delegation_lends_authority_inside_window_only() -> None:
    evaluator, _, delegations, audit = _build()
    arzt = Subject("arzt-a", Role.ARZT)
    assistent = Subject("ass-b", Role.ASSISTENT)
    t0 = datetime(2024, 3, 4, 8, 0, tzinfo=VIENNA)
    t1 = t0 + timedelta(days=5)
    await delegations.delegate(arzt, assistent.id, t0, t1, arzt, "conference")

    inside = await evaluator.authorize(assistent, "create", "diagnosis", None, _ctx(t0 + timedelta(seconds=1)))
    assert inside.allowed
    assert inside.reason is ReasonCode.DELEGATION
    assert inside.delegated_from == "arzt-a"
    assert audit.entries[-1].delegated_from == "arzt-a"

    after = await evaluator.authorize(assistent, "create", "diagnosis", None, _ctx(t1 + timedelta(seconds=1)))
    assert not after.allowed
    assert after.reason is ReasonCode.INSUFFICIENT_PERMISSION


@pytest.mark.asyncio
async def test_delegations_do_not_chain() -> None:
    evaluator, _, delegations, _ = _build()
    arzt = Subject("arzt-a", Role.ARZT)
    assistent = Subject("ass-b", Role.ASSISTENT)
    rezeption = Subject("rez-c", Role.REZEPTION)
    start, end = NOW - timedelta(hours=1), NOW + timedelta(hours=1)
    await delegations.delegate(arzt, assistent.id, start, end, arzt)
    await delegations.delegate(assistent, rezeption.id, start, end, assistent)

    decision = await evaluator.authorize(rezeption, "create", "diagnosis", None, _ctx())
    assert not decision.allowed
    read = await evaluator.authorize(rezeption, "read", "diagnosis", None, _ctx())
    assert read.reason is ReasonCode.DELEGATION
    assert read.delegated_from == "ass-b"


@pytest.mark.asyncio
async def test_sensitivity_ceiling_beats_custom_grant() -> None:
    evaluator, grants, _, _ = _build()
    rezeption = Subject("rez-1", Role.REZEPTION)
    await grants.grant("rez-1", "diagnosis", ["read"], ADMIN, "front desk triage")
    normal = ResourceInstance("dx-1", "diagnosis")
    secret = ResourceInstance("dx-2", "diagnosis", tier=ConfidentialityTier.HIGHLY_SENSITIVE)

    allowed = await evaluator.authorize(rezeption, "read", "diagnosis", normal, _ctx())
    assert allowed.reason is ReasonCode.CUSTOM_GRANT

    denied = await evaluator.authorize(rezeption, "read", "diagnosis", secret, _ctx())
    assert not denied.allowed
    assert denied.reason is ReasonCode.SENSITIVITY_EXCEEDED
    assert denied.subject_summary.grants == ("diagnosis:read",)

    arzt = Subject("arzt-1", Role.ARZT)
    assert (await evaluator.authorize(arzt, "read", "diagnosis", secret, _ctx())).allowed


@pytest.mark.asyncio
async def test_revoking_a_grant_restores_prior_decision() -> None:
    evaluator, grants, _, _ = _build()
    arzt = Subject("arzt-1", Role.ARZT)
    before = await evaluator.authorize(arzt, "read", "reports", None, _ctx())
    result = await grants.grant("arzt-1", "reports", ["read"], ADMIN, "quarterly stats")
    during = await evaluator.authorize(arzt, "read", "reports", None, _ctx())
    await grants.revoke(result.record_id, ADMIN, "done")
    after = await evaluator.authorize(arzt, "read", "reports", None, _ctx())

    assert not before.allowed
    assert during.allowed and during.reason is ReasonCode.CUSTOM_GRANT
    assert (after.allowed, after.reason, after.matched_rule) == (before.allowed, before.reason, before.matched_rule)


@pytest.mark.asyncio
async def test_identical_inputs_yield_identical_decisions() -> None:
    evaluator, _, _, _ = _build()
    subject = Subject("ass-1", Role.ASSISTENT)
    instance = ResourceInstance("rx-1", "prescription", owner_id="pat-9")
    first = await evaluator.authorize(subject, "read", "prescription", instance, _ctx())
    second = await evaluator.authorize(subject, "read", "prescription", instance, _ctx())
    assert first.audit_id != second.audit_id
    first_view = {k: v for k, v in first.to_dict().items() if k != "audit_id"}
    second_view = {k: v for k, v in second.to_dict().items() if k != "audit_id"}
    assert first_view == second_view


@pytest.mark.asyncio
async def test_location_scoped_resource_role() -> None:
    evaluator, grants, _, _ = _build()
    assistent = Subject("ass-1", Role.ASSISTENT)
    await grants.assign_resource_role("ass-1", Role.ARZT, ADMIN, "branch lead", location_id="graz")
    at_graz = ResourceInstance("dx-1", "diagnosis", location_id="graz")
    at_wien = ResourceInstance("dx-2", "diagnosis", location_id="wien")

    decision = await evaluator.authorize(assistent, "create", "diagnosis", at_graz, _ctx())
    assert decision.reason is ReasonCode.RESOURCE_ROLE
    assert decision.subject_summary.resource_roles == ("arzt@location:graz",)
    assert not (await evaluator.authorize(assistent, "create", "diagnosis", at_wien, _ctx())).allowed


@pytest.mark.asyncio
async def test_consent_gate_and_object_acl() -> None:
    evaluator, _, _, _ = _build()
    without_consent = Subject("arzt-1", Role.ARZT)
    with_consent = Subject("arzt-1", Role.ARZT, consent=True)
    document = ResourceInstance("doc-1", "document")

    gated = await evaluator.authorize(without_consent, "share", "document", document, _ctx())
    assert gated.reason is ReasonCode.CONTEXT_RESTRICTED
    assert gated.matched_rule == "consent_gate"
    assert (await evaluator.authorize(with_consent, "share", "document", document, _ctx())).allowed

    restricted = ResourceInstance("doc-2", "document", acl=ObjectAcl(denied_subjects=frozenset({"arzt-1"})))
    acl_denied = await evaluator.authorize(with_consent, "read", "document", restricted, _ctx())
    assert acl_denied.reason is ReasonCode.INSUFFICIENT_PERMISSION
    assert acl_denied.matched_rule == "object_acl"


@pytest.mark.asyncio
async def test_object_acl_conditions_use_request_context() -> None:
    evaluator, _, _, _ = _build()
    arzt = Subject("arzt-1", Role.ARZT)

    embargoed = ResourceInstance("doc-1", "document", acl=ObjectAcl(valid_from=NOW + timedelta(hours=1)))
    early = await evaluator.authorize(arzt, "read", "document", embargoed, _ctx())
    assert early.reason is ReasonCode.CONTEXT_RESTRICTED
    assert early.matched_rule == "object_acl:time_window"
    later = await evaluator.authorize(arzt, "read", "document", embargoed, _ctx(NOW + timedelta(hours=2)))
    assert later.allowed

    graz_only = ResourceInstance("doc-2", "document", acl=ObjectAcl(allowed_locations=frozenset({"graz"})))
    assert (await evaluator.authorize(arzt, "read", "document", graz_only, _ctx(location_id="graz"))).allowed
    elsewhere = await evaluator.authorize(arzt, "read", "document", graz_only, _ctx(location_id="linz"))
    assert elsewhere.matched_rule == "object_acl:location"
    unknown = await evaluator.authorize(arzt, "read", "document", graz_only, _ctx())
    assert unknown.matched_rule == "object_acl:location"

    clinic = ResourceInstance("doc-3", "document", acl=ObjectAcl(allowed_ips=("10.0.0.0/8",)))
    assert (await evaluator.authorize(arzt, "read", "document", clinic, _ctx(ip="10.2.3.4"))).allowed
    outside = await evaluator.authorize(arzt, "read", "document", clinic, _ctx(ip="8.8.8.8"))
    assert outside.reason is ReasonCode.CONTEXT_RESTRICTED
    assert outside.matched_rule == "object_acl:ip"

    root = await evaluator.authorize(ROOT, "read", "document", clinic, _ctx(ip="8.8.8.8"))
    assert root.reason is ReasonCode.ROLE_BYPASS


@pytest.mark.asyncio
async def test_missing_and_unknown_subjects() -> None:
    evaluator, _, _, audit = _build()
    anonymous = await evaluator.authorize(None, "read", "patient", None, _ctx())
    assert anonymous.reason is ReasonCode.UNAUTHENTICATED
    assert audit.entries[-1].subject_role == "anonymous"

    stranger = Subject.from_claims("x-1", "hausmeister")
    assert stranger.role is None
    denied = await evaluator.authorize(stranger, "read", "appointment", None, _ctx())
    assert denied.reason is ReasonCode.INSUFFICIENT_PERMISSION
    assert denied.subject_summary.role == "unknown"


@pytest.mark.asyncio
async def test_authorize_resource_loads_instance() -> None:
    loader = DictLoader([ResourceInstance("pat-1", "patient", owner_id="pat-1")])
    evaluator, _, _, audit = _build(loader=loader)
    patient = Subject("pat-1", Role.PATIENT)

    found = await evaluator.authorize_resource(patient, "read", "patient", "pat-1", _ctx())
    assert found.reason is ReasonCode.SELF_SERVICE

    missing = await evaluator.authorize_resource(patient, "read", "patient", "pat-404", _ctx())
    assert not missing.allowed
    assert missing.reason is ReasonCode.RESOURCE_NOT_FOUND
    assert audit.entries[-1].resource_id == "pat-404"

    anonymous = await evaluator.authorize_resource(None, "read", "patient", "pat-1", _ctx())
    assert anonymous.reason is ReasonCode.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_loader_timeout_fails_closed_and_is_audited() -> None:
    loader = DictLoader([ResourceInstance("pat-1", "patient")], delay=1.0)
    evaluator, _, _, audit = _build(loader=loader, failure_policy=FailurePolicy(loader_timeout=0.01))
    rezeption = Subject("rez-1", Role.REZEPTION)
    with pytest.raises(ResourceLoaderTimeout):
        await evaluator.authorize_resource(rezeption, "read", "patient", "pat-1", _ctx())
    assert len(audit.entries) == 1
    entry = audit.entries[0]
    assert not entry.allowed
    assert entry.fault
    assert entry.resource_id == "pat-1"


@pytest.mark.asyncio
async def test_fail_open_degrades_to_role_defaults() -> None:
    loader = DictLoader(delay=1.0)
    policy = FailurePolicy(overrides={"patient:read": FailMode.FAIL_OPEN}, loader_timeout=0.01)
    evaluator, _, _, audit = _build(loader=loader, failure_policy=policy)

    rezeption = Subject("rez-1", Role.REZEPTION)
    decision = await evaluator.authorize_resource(rezeption, "read", "patient", "pat-1", _ctx())
    assert decision.allowed
    assert decision.degraded
    assert decision.reason is ReasonCode.ROLE_DEFAULT
    assert audit.entries[-1].degraded

    patient = Subject("pat-1", Role.PATIENT)
    degraded_deny = await evaluator.authorize_resource(patient, "read", "patient", "pat-1", _ctx())
    assert not degraded_deny.allowed
    assert degraded_deny.degraded

    with pytest.raises(ResourceLoaderTimeout):
        await evaluator.authorize_resource(rezeption, "update", "patient", "pat-1", _ctx())


@pytest.mark.asyncio
async def test_store_faults_follow_failure_policy() -> None:
    evaluator, _, _, audit = _build(grant_store_cls=BrokenGrantStore)
    arzt = Subject("arzt-1", Role.ARZT)
    with pytest.raises(StoreUnavailableError):
        await evaluator.authorize(arzt, "read", "patient", None, _ctx())
    assert audit.entries[-1].fault == "grant store offline"

    open_policy = FailurePolicy(FailMode.FAIL_OPEN)
    evaluator, _, _, _ = _build(grant_store_cls=BrokenGrantStore, failure_policy=open_policy)
    decision = await evaluator.authorize(arzt, "read", "patient", None, _ctx())
    assert decision.allowed and decision.degraded


@pytest.mark.asyncio
async def test_missing_resource_with_store_fault_is_audited() -> None:
    rezeption = Subject("rez-1", Role.REZEPTION)
    evaluator, _, _, audit = _build(loader=DictLoader(), grant_store_cls=BrokenGrantStore)
    with pytest.raises(StoreUnavailableError):
        await evaluator.authorize_resource(rezeption, "read", "patient", "pat-404", _ctx())
    assert len(audit.entries) == 1
    assert not audit.entries[0].allowed
    assert audit.entries[0].resource_id == "pat-404"
    assert audit.entries[0].fault == "grant store offline"

    evaluator, _, _, audit = _build(
        loader=DictLoader(), grant_store_cls=BrokenGrantStore, failure_policy=FailurePolicy(FailMode.FAIL_OPEN)
    )
    decision = await evaluator.authorize_resource(rezeption, "read", "patient", "pat-404", _ctx())
    assert not decision.allowed
    assert decision.reason is ReasonCode.RESOURCE_NOT_FOUND
    assert decision.degraded
    assert len(audit.entries) == 1


@pytest.mark.asyncio
async def test_audit_failure_is_not_swallowed() -> None:
    evaluator, _, _, _ = _build(audit=RecordingAudit(fail=True))
    with pytest.raises(AuditWriteError):
        await evaluator.authorize(ROOT, "read", "patient", None, _ctx())


@pytest.mark.asyncio
async def test_audit_entries_are_queryable() -> None:
    evaluator, _, _, audit = _build()
    await evaluator.authorize(Subject("pat-1", Role.PATIENT), "read", "billing", None, _ctx())
    await evaluator.authorize(Subject("bill-1", Role.BILLING), "read", "billing", None, _ctx())
    denied = await audit.query(AuditFilter(allowed=False))
    assert [entry.subject_id for entry in denied] == ["pat-1"]
