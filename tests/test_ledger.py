"""Tests for the Usage Ledger and its sinks."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from genrouter.db.postgres import create_session_factory, create_usage_engine, init_usage_schema
from genrouter.gateway.ledger import InMemoryUsageSink, SqlAlchemyUsageSink, UsageLedger, UsageSink
from genrouter.gateway.types import UsageRecord
from genrouter.models.usage_record import UsageRecordRow

NOW = datetime(2026, 3, 1, 12, 0, 30, tzinfo=timezone.utc)


def _record(tenant_id="acme", cost=0.01, tokens=30, at: datetime | None = None, request_id="r1") -> UsageRecord:
    return UsageRecord(
        tenant_id=tenant_id,
        provider_id="openai",
        model="gpt-4o-mini",
        prompt_tokens=10,
        completion_tokens=tokens - 10,
        total_tokens=tokens,
        cost=cost,
        request_id=request_id,
        timestamp=at or NOW - timedelta(seconds=5),
    )


class _FlakySink(UsageSink):
    def __init__(self, failures: int):
        self.failures = failures
        self.records: list[UsageRecord] = []

    async def append(self, record: UsageRecord) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("usage store unavailable")
        self.records.append(record)


class TestUsageLedger:
    @pytest.mark.asyncio
    async def test_record_forwards_to_sink(self):
        sink = InMemoryUsageSink()
        ledger = UsageLedger(sink=sink, clock=lambda: NOW)

        ledger.record(_record())
        await ledger.drain()

        assert len(sink.records) == 1
        assert ledger.records("acme")[0].cost == 0.01

    @pytest.mark.asyncio
    async def test_usage_in_interval_window(self):
        ledger = UsageLedger(clock=lambda: NOW)
        ledger.record(_record(cost=0.1, at=datetime(2026, 3, 1, 12, 0, 10, tzinfo=timezone.utc)))
        ledger.record(_record(cost=0.2, at=datetime(2026, 3, 1, 12, 0, 25, tzinfo=timezone.utc)))
        ledger.record(_record(cost=0.4, at=datetime(2026, 3, 1, 11, 59, 50, tzinfo=timezone.utc)))
        ledger.record(_record(tenant_id="globex", cost=1.0))

        totals = ledger.usage_in_interval("acme", 60)
        assert totals.requests == 2
        assert totals.cost == pytest.approx(0.3)
        assert totals.total_tokens == 60

    @pytest.mark.asyncio
    async def test_sink_failure_goes_to_backlog(self):
        sink = _FlakySink(failures=1)
        ledger = UsageLedger(sink=sink, clock=lambda: NOW)

        ledger.record(_record())
        await ledger.drain()

        assert ledger.backlog_size == 1
        assert sink.records == []
        assert len(ledger.records()) == 1

        assert await ledger.flush() == 1
        assert ledger.backlog_size == 0
        assert len(sink.records) == 1

    @pytest.mark.asyncio
    async def test_flush_keeps_still_failing_records(self):
        sink = _FlakySink(failures=5)
        ledger = UsageLedger(sink=sink, clock=lambda: NOW)
        ledger.record(_record(request_id="a"))
        ledger.record(_record(request_id="b"))
        await ledger.drain()

        assert await ledger.flush() == 0
        assert ledger.backlog_size == 2

    def test_record_without_event_loop_is_backlogged(self):
        ledger = UsageLedger(clock=lambda: NOW)
        ledger.record(_record())
        assert ledger.backlog_size == 1
        assert ledger.usage_in_interval("acme", 60).requests == 1

    @pytest.mark.asyncio
    async def test_retention_prunes_old_records(self):
        ledger = UsageLedger(clock=lambda: NOW, retention=timedelta(hours=1))
        ledger.record(_record(at=NOW - timedelta(hours=2)))
        ledger.record(_record(at=NOW - timedelta(minutes=1)))
        assert len(ledger.records("acme")) == 1

    @pytest.mark.asyncio
    async def test_stop_flushes_backlog(self):
        sink = _FlakySink(failures=1)
        ledger = UsageLedger(sink=sink, clock=lambda: NOW)
        ledger.start(interval=3600)
        ledger.record(_record())
        await ledger.drain()

        await ledger.stop()
        assert ledger.backlog_size == 0
        assert len(sink.records) == 1

    @pytest.mark.asyncio
    async def test_get_stats(self):
        ledger = UsageLedger(clock=lambda: NOW)
        ledger.record(_record())
        ledger.record(_record(tenant_id="globex"))
        await ledger.drain()
        stats = ledger.get_stats()
        assert stats["recorded"] == 2
        assert stats["tenants"] == 2
        assert stats["backlog"] == 0


class TestSqlAlchemyUsageSink:
    @pytest.mark.asyncio
    async def test_append_persists_row(self, tmp_path):
        engine = create_usage_engine(f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}")
        try:
            await init_usage_schema(engine)
            factory = create_session_factory(engine)
            sink = SqlAlchemyUsageSink(factory)

            await sink.append(_record(cost=0.25, request_id="req-42"))

            async with factory() as session:
                rows = (await session.execute(select(UsageRecordRow))).scalars().all()

            assert len(rows) == 1
            assert rows[0].tenant_id == "acme"
            assert rows[0].cost == pytest.approx(0.25)
            assert rows[0].request_id == "req-42"
            assert rows[0].total_tokens == 30
        finally:
            await engine.dispose()
