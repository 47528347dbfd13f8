from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from praxisauth.integration.database import SQLiteAuditStore
from praxisauth.security.audit import AuditEntry, AuditFilter

BASE = datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc)


def _entry(subject_id: str, minutes: int, *, allowed: bool = True) -> AuditEntry:
    return AuditEntry(
        subject_id=subject_id,
        subject_role="rezeption",
        action="book",
        resource_type="appointment",
        resource_id=f"apt-{minutes}",
        allowed=allowed,
        reason="ROLE_DEFAULT" if allowed else "CONTEXT_RESTRICTED",
        matched_rule="role_default" if allowed else "predicate:business_hours",
        required_permission="appointment:book",
        timestamp=BASE + timedelta(minutes=minutes),
        ip="10.0.0.7",
    )


@pytest.mark.asyncio
async def test_sqlite_audit_store_persists_and_filters(tmp_path) -> None:
    url = f"sqlite:///{tmp_path/'audit.sqlite'}"
    store = SQLiteAuditStore(url)
    await store.append(_entry("rez-1", 0))
    await store.append_many([_entry("rez-2", 1, allowed=False), _entry("rez-1", 2)])
    await store.close()

    reopened = SQLiteAuditStore(url)
    everything = await reopened.query(AuditFilter())
    assert [e.resource_id for e in everything] == ["apt-2", "apt-1", "apt-0"]
    assert everything[0].ip == "10.0.0.7"
    assert everything[0].timestamp == BASE + timedelta(minutes=2)

    denied = await reopened.query(AuditFilter(allowed=False))
    assert [e.subject_id for e in denied] == ["rez-2"]
    assert not denied[0].allowed and not denied[0].degraded

    recent = await reopened.query(AuditFilter(subject_id="rez-1", since=BASE + timedelta(minutes=1)))
    assert [e.resource_id for e in recent] == ["apt-2"]
    await reopened.close()


@pytest.mark.asyncio
async def test_sqlite_audit_store_is_append_only(tmp_path) -> None:
    path = tmp_path / "audit.sqlite"
    store = SQLiteAuditStore(f"sqlite:///{path}")
    await store.append(_entry("rez-1", 0))
    await store.close()

    async with aiosqlite.connect(path) as conn:
        with pytest.raises(aiosqlite.Error):
            await conn.execute("UPDATE audit_log SET allowed = 0")
        with pytest.raises(aiosqlite.Error):
            await conn.execute("DELETE FROM audit_log")
        cursor = await conn.execute("SELECT COUNT(*) FROM audit_log")
        (count,) = await cursor.fetchone()
    assert count == 1
