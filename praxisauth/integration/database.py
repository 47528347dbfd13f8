"""Append-only SQLite audit store."""
from __future__ import annotations

import asyncio
from datetime import timezone
from pathlib import Path
from typing import Any, List, Optional

import aiosqlite

from praxisauth.security.audit import AuditEntry, AuditFilter
from praxisauth.utils.errors import StoreUnavailableError
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)

_COLUMNS = (
    "id",
    "timestamp",
    "subject_id",
    "subject_role",
    "action",
    "resource_type",
    "resource_id",
    "allowed",
    "reason",
    "matched_rule",
    "required_permission",
    "delegated_from",
    "degraded",
    "fault",
    "ip",
    "request_id",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS audit_log (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    subject_id TEXT,
    subject_role TEXT NOT NULL,
    action TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    resource_id TEXT,
    allowed INTEGER NOT NULL,
    reason TEXT,
    matched_rule TEXT NOT NULL,
    required_permission TEXT NOT NULL,
    delegated_from TEXT,
    degraded INTEGER NOT NULL DEFAULT 0,
    fault TEXT,
    ip TEXT,
    request_id TEXT
);
CREATE INDEX IF NOT EXISTS audit_log_subject ON audit_log (subject_id, timestamp);
CREATE INDEX IF NOT EXISTS audit_log_resource ON audit_log (resource_type, resource_id);
CREATE TRIGGER IF NOT EXISTS audit_log_no_update BEFORE UPDATE ON audit_log
BEGIN
    SELECT RAISE(ABORT, 'audit_log is append-only');
END;
CREATE TRIGGER IF NOT EXISTS audit_log_no_delete BEFORE DELETE ON audit_log
BEGIN
    SELECT RAISE(ABORT, 'audit_log is append-only');
END;
"""


class SQLiteAuditStore:
    """Persist audit entries in SQLite; triggers refuse UPDATE and DELETE.

    Timestamps are stored as ISO-8601 text in UTC so lexical order matches
    chronological order.
    """

    def __init__(self, database_url: str) -> None:
        if database_url.startswith("sqlite:///"):
            path = Path(database_url.split("sqlite:///")[-1])
            path.parent.mkdir(parents=True, exist_ok=True)
            self._connect_target = str(path)
            self._use_uri = False
        else:
            self._connect_target = database_url
            self._use_uri = database_url.startswith("file:")
        self._pool_lock = asyncio.Lock()
        self._pool: Optional[aiosqlite.Connection] = None

    async def _connect(self) -> aiosqlite.Connection:
        async with self._pool_lock:
            if self._pool is None:
                logger.debug("opening audit database", extra={"rule": self._connect_target})
                try:
                    self._pool = await aiosqlite.connect(self._connect_target, uri=self._use_uri)
                    self._pool.row_factory = aiosqlite.Row
                    await self._pool.executescript(_SCHEMA)
                    await self._pool.commit()
                except aiosqlite.Error as exc:
                    raise StoreUnavailableError(f"Cannot open audit database: {exc}") from exc
            return self._pool

    async def append(self, entry: AuditEntry) -> None:
        await self.append_many([entry])

    async def append_many(self, entries: List[AuditEntry]) -> None:
        conn = await self._connect()
        placeholders = ", ".join(["?"] * len(_COLUMNS))
        sql = f"INSERT INTO audit_log ({', '.join(_COLUMNS)}) VALUES ({placeholders})"
        try:
            await conn.executemany(sql, [_to_row(entry) for entry in entries])
            await conn.commit()
        except aiosqlite.Error as exc:
            await conn.rollback()
            raise StoreUnavailableError(f"Audit insert failed: {exc}") from exc

    async def query(self, audit_filter: AuditFilter) -> List[AuditEntry]:
        clauses: List[str] = []
        parameters: List[Any] = []
        for column in ("subject_id", "resource_type", "resource_id", "reason"):
            value = getattr(audit_filter, column)
            if value is not None:
                clauses.append(f"{column} = ?")
                parameters.append(value)
        if audit_filter.allowed is not None:
            clauses.append("allowed = ?")
            parameters.append(int(audit_filter.allowed))
        sql = f"SELECT {', '.join(_COLUMNS)} FROM audit_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC"
        conn = await self._connect()
        async with conn.execute(sql, tuple(parameters)) as cursor:
            rows = await cursor.fetchall()
        return audit_filter.apply(_from_row(row) for row in rows)

    async def close(self) -> None:
        """Close the underlying connection to free resources."""

        async with self._pool_lock:
            if self._pool is not None:
                await self._pool.close()
                self._pool = None


def _to_row(entry: AuditEntry) -> tuple:
    payload = entry.to_dict()
    payload["timestamp"] = entry.timestamp.astimezone(timezone.utc).isoformat()
    payload["allowed"] = int(entry.allowed)
    payload["degraded"] = int(entry.degraded)
    return tuple(payload[column] for column in _COLUMNS)


def _from_row(row: aiosqlite.Row) -> AuditEntry:
    data = dict(row)
    data["allowed"] = bool(data["allowed"])
    data["degraded"] = bool(data["degraded"])
    return AuditEntry.from_dict(data)


__all__ = ["SQLiteAuditStore"]
