"""Audit records for authorization decisions and the JSON-lines trail."""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from praxisauth.security.models import ensure_aware, new_id, utcnow
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """One authorization evaluation, allow or deny."""

    subject_id: Optional[str]
    subject_role: str
    action: str
    resource_type: str
    resource_id: Optional[str]
    allowed: bool
    reason: Optional[str]
    matched_rule: str
    required_permission: str
    id: str = ""
    timestamp: Optional[datetime] = None
    delegated_from: Optional[str] = None
    degraded: bool = False
    fault: Optional[str] = None
    ip: Optional[str] = None
    request_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(self, "id", new_id())
        object.__setattr__(self, "timestamp", ensure_aware(self.timestamp) or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        raw_timestamp = values.get("timestamp")
        if isinstance(raw_timestamp, (int, float)):
            values["timestamp"] = datetime.fromtimestamp(raw_timestamp).astimezone()
        elif raw_timestamp is not None:
            values["timestamp"] = datetime.fromisoformat(str(raw_timestamp))
        return cls(**values)


@dataclass(frozen=True)
class AuditFilter:
    """Compliance query over audit entries; unset fields match everything."""

    subject_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    allowed: Optional[bool] = None
    reason: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, entry: AuditEntry) -> bool:
        if self.subject_id is not None and entry.subject_id != self.subject_id:
            return False
        if self.resource_type is not None and entry.resource_type != self.resource_type:
            return False
        if self.resource_id is not None and entry.resource_id != self.resource_id:
            return False
        if self.allowed is not None and entry.allowed != self.allowed:
            return False
        if self.reason is not None and entry.reason != self.reason:
            return False
        if self.since is not None and entry.timestamp < ensure_aware(self.since):
            return False
        if self.until is not None and entry.timestamp > ensure_aware(self.until):
            return False
        return True

    def apply(self, entries: Iterable[AuditEntry]) -> List[AuditEntry]:
        """Newest first, truncated to ``limit``."""

        selected = sorted((e for e in entries if self.matches(e)), key=lambda e: e.timestamp, reverse=True)
        return selected[: self.limit] if self.limit is not None else selected


class AuditRecorder(Protocol):
    async def append(self, entry: AuditEntry) -> None:
        ...

    async def query(self, audit_filter: AuditFilter) -> List[AuditEntry]:
        ...


class AuditTrail:
    """Persist audit entries as JSON lines, flushed and fsync'd per batch."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def append(self, entry: AuditEntry) -> None:
        await self.append_many([entry])

    async def append_many(self, entries: List[AuditEntry]) -> None:
        await asyncio.to_thread(self._write, entries)

    async def query(self, audit_filter: AuditFilter) -> List[AuditEntry]:
        entries = await asyncio.to_thread(self._read)
        return audit_filter.apply(entries)

    async def close(self) -> None:
        return None

    def _write(self, entries: List[AuditEntry]) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            for entry in entries:
                handle.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
            handle.flush()
            os.fsync(handle.fileno())

    def _read(self) -> List[AuditEntry]:
        if not self.path.exists():
            return []
        entries = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(AuditEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, TypeError, ValueError):  # pragma: no cover - handles manual file edits
                logger.warning("skipping unreadable audit line")
        return entries


__all__ = ["AuditEntry", "AuditFilter", "AuditRecorder", "AuditTrail"]
