"""Queued audit writer with batched, acknowledged persistence."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

from praxisauth.security.audit import AuditEntry, AuditFilter
from praxisauth.utils.errors import AuditWriteError
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)


class AuditBackend(Protocol):
    async def append_many(self, entries: List[AuditEntry]) -> None:
        ...

    async def query(self, audit_filter: AuditFilter) -> List[AuditEntry]:
        ...

    async def close(self) -> None:
        ...


_Pending = Tuple[AuditEntry, Optional["asyncio.Future[None]"]]


class AuditSystem:
    """Front an audit backend with a queue and a single writer task.

    ``append`` enqueues the entry and, when ``durable`` is set, waits until the
    batch holding it has been written. Failed batches are retried with
    exponential backoff; once retries run out every waiting caller receives
    :class:`AuditWriteError`. The writer task starts on demand and exits when
    the queue drains.
    """

    def __init__(
        self,
        backend: AuditBackend,
        *,
        batch_size: int = 50,
        max_retries: int = 3,
        retry_delay: float = 0.05,
        durable: bool = True,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._backend = backend
        self._batch_size = batch_size
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._durable = durable
        self._queue: asyncio.Queue[_Pending] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    @property
    def backend(self) -> AuditBackend:
        return self._backend

    async def append(self, entry: AuditEntry) -> None:
        future: Optional[asyncio.Future[None]] = None
        if self._durable:
            future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((entry, future))
        if self._worker is None:
            self._worker = asyncio.create_task(self._drain())
        if future is not None:
            await future

    async def flush(self) -> None:
        """Wait until every queued entry has been written or has failed."""

        await self._queue.join()

    async def query(self, audit_filter: Optional[AuditFilter] = None) -> List[AuditEntry]:
        await self.flush()
        return await self._backend.query(audit_filter or AuditFilter())

    async def export(self, path: Path, audit_filter: Optional[AuditFilter] = None) -> int:
        """Write matching entries to ``path`` as JSON lines, oldest first."""

        entries = list(reversed(await self.query(audit_filter)))
        await asyncio.to_thread(_write_lines, path, entries)
        logger.info("audit export written", extra={"rule": str(path)})
        return len(entries)

    async def close(self) -> None:
        await self.flush()
        await self._backend.close()

    async def _drain(self) -> None:
        try:
            while not self._queue.empty():
                batch = [self._queue.get_nowait()]
                while len(batch) < self._batch_size and not self._queue.empty():
                    batch.append(self._queue.get_nowait())
                await self._persist(batch)
        finally:
            self._worker = None

    async def _persist(self, batch: List[_Pending]) -> None:
        entries = [entry for entry, _ in batch]
        failure: Optional[Exception] = None
        for attempt in range(1, self._max_retries + 1):
            try:
                await self._backend.append_many(entries)
            except Exception as exc:  # backend faults are retried, then surfaced to callers
                failure = exc
                logger.warning(
                    "audit batch write failed",
                    extra={"audit_id": entries[0].id, "reason": f"attempt {attempt}: {exc}"},
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(self._retry_delay * 2 ** (attempt - 1))
            else:
                failure = None
                break
        if failure is not None:
            logger.error("audit batch dropped after retries", extra={"audit_id": entries[0].id})
        for _, future in batch:
            if future is not None and not future.done():
                if failure is None:
                    future.set_result(None)
                else:
                    error = AuditWriteError(f"Audit write failed after {self._max_retries} attempts: {failure}")
                    error.__cause__ = failure
                    future.set_exception(error)
            self._queue.task_done()


def _write_lines(path: Path, entries: List[AuditEntry]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        for entry in entries:
            handle.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")


__all__ = ["AuditBackend", "AuditSystem"]
