"""Usage Ledger — append-only record of completed upstream calls.

Every successful upstream call produces exactly one UsageRecord (cache hits
and coalesced waiters produce none). The ledger keeps recent records in
memory to answer "usage so far this interval" for the cost-budget check, and
forwards each record to a backing sink in the background. A sink failure
never reaches the caller: the record goes to a retry backlog that is flushed
out-of-band.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genrouter.gateway.types import UsageRecord
from genrouter.models.usage_record import UsageRecordRow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class UsageSink(ABC):
    """Write-only append interface to the external usage store."""

    @abstractmethod
    async def append(self, record: UsageRecord) -> None: ...


class InMemoryUsageSink(UsageSink):
    def __init__(self):
        self.records: list[UsageRecord] = []

    async def append(self, record: UsageRecord) -> None:
        self.records.append(record)


class SqlAlchemyUsageSink(UsageSink):
    """Persists usage records to the ``usage_records`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, record: UsageRecord) -> None:
        async with self.session_factory() as session:
            session.add(
                UsageRecordRow(
                    tenant_id=record.tenant_id,
                    provider_id=record.provider_id,
                    model=record.model,
                    prompt_tokens=record.prompt_tokens,
                    completion_tokens=record.completion_tokens,
                    total_tokens=record.total_tokens,
                    cost=record.cost,
                    request_id=record.request_id,
                    recorded_at=record.timestamp,
                )
            )
            await session.commit()


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@dataclass
class UsageTotals:
    requests: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0

    def add(self, record: UsageRecord) -> None:
        self.requests += 1
        self.prompt_tokens += record.prompt_tokens
        self.completion_tokens += record.completion_tokens
        self.total_tokens += record.total_tokens
        self.cost += record.cost


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageLedger:
    """Append-only usage ledger with best-effort forwarding to a sink.

    Usage:
        ledger = UsageLedger(sink=SqlAlchemyUsageSink(session_factory))
        ledger.record(UsageRecord(...))        # never blocks, never raises
        ledger.usage_in_interval("acme", 60)   # spend in the current window
        await ledger.flush()                   # retry failed sink writes
    """

    def __init__(
        self,
        sink: UsageSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
        retention: timedelta = timedelta(days=1),
    ):
        self.sink = sink or InMemoryUsageSink()
        self._clock = clock
        self._retention = retention
        self._by_tenant: dict[str, deque[UsageRecord]] = defaultdict(deque)
        self._total_recorded = 0
        self._backlog: deque[UsageRecord] = deque()
        self._writes: set[asyncio.Task] = set()
        self._flush_task: asyncio.Task | None = None

    def record(self, record: UsageRecord) -> None:
        records = self._by_tenant[record.tenant_id]
        records.append(record)
        self._total_recorded += 1
        self._prune(records)

        try:
            task = asyncio.get_running_loop().create_task(self._write(record))
        except RuntimeError:
            # No loop (sync caller): leave it for the next flush
            self._backlog.append(record)
            return
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    def _prune(self, records: deque[UsageRecord]) -> None:
        cutoff = self._clock() - self._retention
        while records and records[0].timestamp < cutoff:
            records.popleft()

    async def _write(self, record: UsageRecord) -> None:
        try:
            await self.sink.append(record)
        except Exception as e:
            logger.warning(
                "Usage sink write failed for tenant %s (request %s), queued for retry: %s",
                record.tenant_id,
                record.request_id,
                e,
            )
            self._backlog.append(record)

    def usage_in_interval(self, tenant_id: str, interval_seconds: float, now: datetime | None = None) -> UsageTotals:
        """Totals for the tenant's current interval window (wall-clock aligned)."""
        now = now or self._clock()
        ts = now.timestamp()
        window_start = datetime.fromtimestamp(ts - (ts % interval_seconds), tz=timezone.utc)

        totals = UsageTotals()
        for record in self._by_tenant.get(tenant_id, ()):
            if window_start <= record.timestamp <= now:
                totals.add(record)
        return totals

    def records(self, tenant_id: str | None = None) -> list[UsageRecord]:
        if tenant_id is not None:
            return list(self._by_tenant.get(tenant_id, ()))
        return [r for records in self._by_tenant.values() for r in records]

    @property
    def backlog_size(self) -> int:
        return len(self._backlog)

    async def drain(self) -> None:
        """Wait for in-flight sink writes to finish."""
        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    async def flush(self) -> int:
        """Retry backlogged writes once. Returns how many succeeded."""
        await self.drain()
        written = 0
        for _ in range(len(self._backlog)):
            record = self._backlog.popleft()
            try:
                await self.sink.append(record)
                written += 1
            except Exception as e:
                logger.warning("Usage sink retry failed for request %s: %s", record.request_id, e)
                self._backlog.append(record)
        if written:
            logger.info("Flushed %d backlogged usage records (%d remaining)", written, len(self._backlog))
        return written

    async def _flush_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.flush()

    def start(self, interval: float) -> None:
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_loop(interval))

    async def stop(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()

    def get_stats(self) -> dict:
        return {
            "recorded": self._total_recorded,
            "tenants": len(self._by_tenant),
            "backlog": len(self._backlog),
            "pending_writes": len(self._writes),
        }
