"""Persistence integrations for praxisauth."""

from __future__ import annotations

from praxisauth.integration.database import SQLiteAuditStore

__all__ = ["SQLiteAuditStore"]
