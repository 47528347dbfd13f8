"""Rich console helpers for the admin CLI."""

from __future__ import annotations

from datetime import timezone
from typing import List, Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text

from praxisauth.security.audit import AuditEntry
from praxisauth.security.models import Decision


class ConsoleUI:
    """Wrap the Rich console so commands render consistently."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def print_header(self, title: str) -> None:
        self.console.rule(Text(title, style="bold cyan"))

    def info(self, message: str) -> None:
        self.console.print(Text(message, style="green"))

    def warn(self, message: str) -> None:
        self.console.print(Text(message, style="yellow"))

    def error(self, message: str) -> None:
        self.console.print(Text(message, style="bold red"))

    def table(self, title: str, columns: Sequence[str], rows: List[List[str]]) -> Table:
        table = Table(title=title)
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*row)
        return table

    def decision(self, decision: Decision) -> Table:
        verdict = Text("ALLOW", style="bold green") if decision.allowed else Text("DENY", style="bold red")
        table = Table(title="Authorization decision", show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_row("Decision", verdict)
        table.add_row("Reason", decision.reason.value)
        table.add_row("Rule", decision.matched_rule)
        table.add_row("Required permission", decision.required_permission)
        if decision.delegated_from:
            table.add_row("Delegated from", decision.delegated_from)
        if decision.degraded:
            table.add_row("Degraded", "yes")
        if decision.subject_summary is not None:
            table.add_row("Role", decision.subject_summary.role)
            table.add_row("Grants", ", ".join(decision.subject_summary.grants) or "-")
        table.add_row("Audit id", decision.audit_id)
        return table

    def audit_entries(self, entries: Sequence[AuditEntry]) -> Table:
        rows = [
            [
                entry.timestamp.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
                entry.subject_id or "-",
                entry.subject_role,
                entry.required_permission,
                entry.resource_id or "-",
                "allow" if entry.allowed else "deny",
                entry.reason or "-",
            ]
            for entry in entries
        ]
        return self.table(
            "Audit log",
            ["Time (UTC)", "Subject", "Role", "Permission", "Resource", "Decision", "Reason"],
            rows,
        )


__all__ = ["ConsoleUI"]
