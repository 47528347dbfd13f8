"""Typer-based CLI wiring."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer

from praxisauth.core.config import AuthzConfigManager, AuthzSettings
from praxisauth.core.ui import ConsoleUI
from praxisauth.security.audit import AuditFilter
from praxisauth.security.constraints import ContextPredicate
from praxisauth.security.manager import AuthorizationManager
from praxisauth.security.models import AuthorizationContext, ConfidentialityTier, ResourceInstance, Subject
from praxisauth.security.roles import Role
from praxisauth.utils.errors import InfrastructureError
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)

app = typer.Typer(help="praxisauth authorization administration")
audit_app = typer.Typer(help="Compliance review of the audit log")
app.add_typer(audit_app, name="audit")


@dataclass
class RuntimeContext:
    settings: AuthzSettings
    config_manager: AuthzConfigManager
    manager: AuthorizationManager
    ui: ConsoleUI


runtime: Optional[RuntimeContext] = None


def set_runtime(value: RuntimeContext) -> None:
    global runtime
    runtime = value


def _require_runtime() -> RuntimeContext:
    if runtime is None:  # pragma: no cover - runtime is always set during CLI usage
        raise RuntimeError("Runtime not initialised")
    return runtime


def _parse_role(value: Optional[str]) -> Optional[Role]:
    if value is None:
        return None
    role = Role.parse(value)
    if role is None:
        choices = ", ".join(r.value for r in Role)
        raise typer.BadParameter(f"Unknown role {value!r}; expected one of {choices}")
    return role


@app.command()
def roles() -> None:
    """Show the role hierarchy, highest rank first."""

    ctx = _require_runtime()
    hierarchy = ctx.manager.hierarchy
    rows = [
        [name, str(rank), "universal access" if hierarchy.is_top(name) else ""]
        for name, rank in hierarchy.as_table().items()
    ]
    ctx.ui.console.print(ctx.ui.table("Roles", ["Role", "Rank", "Notes"], rows))


@app.command()
def catalog(role: Optional[str] = typer.Option(None, "--role", help="Only show permissions this role holds")) -> None:
    """List the permission catalog or a role's effective permissions."""

    ctx = _require_runtime()
    parsed = _parse_role(role)
    if parsed is None:
        rows = [[str(permission), minimal.value] for permission, minimal in ctx.manager.catalog.entries()]
        ctx.ui.console.print(ctx.ui.table("Permission catalog", ["Permission", "Minimal role"], rows))
        return
    if ctx.manager.hierarchy.is_top(parsed):
        ctx.ui.info(f"{parsed.value} holds every permission")
        return
    permissions = ctx.manager.catalog.effective_permissions(parsed)
    rows = [[str(permission)] for permission in permissions]
    ctx.ui.console.print(ctx.ui.table(f"Permissions of {parsed.value}", ["Permission"], rows))


@app.command()
def check(
    role: str = typer.Option(..., "--role", help="Role of the hypothetical subject"),
    action: str = typer.Option(..., "--action"),
    resource_type: str = typer.Option(..., "--resource-type"),
    subject_id: str = typer.Option("cli-check", "--subject-id"),
    resource_id: Optional[str] = typer.Option(None, "--resource-id"),
    owner_id: Optional[str] = typer.Option(None, "--owner-id", help="Owner of the resource instance"),
    location_id: Optional[str] = typer.Option(None, "--location-id"),
    tier: ConfidentialityTier = typer.Option(ConfidentialityTier.NORMAL, "--tier"),
    consent: bool = typer.Option(False, "--consent/--no-consent"),
    guard: List[str] = typer.Option([], "--guard", help="Named contextual guard to apply"),
    ip: Optional[str] = typer.Option(None, "--ip"),
    at: Optional[datetime] = typer.Option(None, "--at", help="Evaluation time (defaults to now)"),
) -> None:
    """Evaluate a hypothetical request and show the decision."""

    ctx = _require_runtime()
    subject = Subject(id=subject_id, role=_parse_role(role), consent=consent)
    instance = None
    if resource_id is not None or owner_id is not None:
        instance = ResourceInstance(
            id=resource_id or "cli-resource",
            resource_type=resource_type,
            owner_id=owner_id,
            location_id=location_id,
            tier=tier,
        )
    predicates: List[ContextPredicate] = []
    for name in guard:
        try:
            predicates.extend(ctx.manager.guard(name))
        except KeyError:
            raise typer.BadParameter(f"Unknown guard {name!r}") from None
    context = AuthorizationContext(timestamp=at, ip=ip) if at else AuthorizationContext(ip=ip)

    async def _run() -> bool:
        try:
            decision = await ctx.manager.authorize(
                subject, action, resource_type, instance, context, constraints=predicates
            )
        finally:
            await ctx.manager.close()
        ctx.ui.print_header(f"Authorization check: {subject.role_name} {decision.required_permission}")
        ctx.ui.console.print(ctx.ui.decision(decision))
        return decision.allowed

    try:
        allowed = asyncio.run(_run())
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except InfrastructureError as exc:
        ctx.ui.error(str(exc))
        raise typer.Exit(code=2) from exc
    if not allowed:
        raise typer.Exit(code=1)


def _audit_filter(
    subject_id: Optional[str],
    resource_type: Optional[str],
    resource_id: Optional[str],
    allowed: Optional[bool],
    reason: Optional[str],
    since: Optional[datetime],
    until: Optional[datetime],
    limit: Optional[int],
) -> AuditFilter:
    return AuditFilter(
        subject_id=subject_id,
        resource_type=resource_type,
        resource_id=resource_id,
        allowed=allowed,
        reason=reason.upper() if reason else None,
        since=since,
        until=until,
        limit=limit,
    )


@audit_app.command("query")
def audit_query(
    subject_id: Optional[str] = typer.Option(None, "--subject"),
    resource_type: Optional[str] = typer.Option(None, "--resource-type"),
    resource_id: Optional[str] = typer.Option(None, "--resource-id"),
    allowed: Optional[bool] = typer.Option(None, "--allowed/--denied"),
    reason: Optional[str] = typer.Option(None, "--reason"),
    since: Optional[datetime] = typer.Option(None, "--since"),
    until: Optional[datetime] = typer.Option(None, "--until"),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    """Show audit entries, newest first."""

    ctx = _require_runtime()
    audit_filter = _audit_filter(subject_id, resource_type, resource_id, allowed, reason, since, until, limit)

    async def _run() -> None:
        try:
            entries = await ctx.manager.audit.query(audit_filter)
        finally:
            await ctx.manager.close()
        if not entries:
            ctx.ui.warn("No audit entries match")
            return
        ctx.ui.console.print(ctx.ui.audit_entries(entries))

    asyncio.run(_run())


@audit_app.command("export")
def audit_export(
    output: Path = typer.Argument(..., help="Destination JSON-lines file"),
    subject_id: Optional[str] = typer.Option(None, "--subject"),
    resource_type: Optional[str] = typer.Option(None, "--resource-type"),
    resource_id: Optional[str] = typer.Option(None, "--resource-id"),
    allowed: Optional[bool] = typer.Option(None, "--allowed/--denied"),
    reason: Optional[str] = typer.Option(None, "--reason"),
    since: Optional[datetime] = typer.Option(None, "--since"),
    until: Optional[datetime] = typer.Option(None, "--until"),
) -> None:
    """Export matching audit entries as JSON lines, oldest first."""

    ctx = _require_runtime()
    audit_filter = _audit_filter(subject_id, resource_type, resource_id, allowed, reason, since, until, None)

    async def _run() -> int:
        try:
            return await ctx.manager.audit.export(output, audit_filter)
        finally:
            await ctx.manager.close()

    count = asyncio.run(_run())
    ctx.ui.info(f"Exported {count} audit entries to {output}")


__all__ = ["app", "RuntimeContext", "set_runtime"]
