"""Tests for structured log output and the request context carried on records."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from genrouter.core.logging import JSONFormatter, log_context
from genrouter.gateway.dispatcher import FailoverDispatcher
from genrouter.gateway.resolver import resolve_candidates
from genrouter.gateway.types import AttemptStatus, GenerationRequest
from tests.conftest import ScriptedAdapter, failed_result, ok_result


def _record(msg: str = "Request %s failed", args: tuple = ("r-1",), **extra) -> logging.LogRecord:
    record = logging.LogRecord("genrouter.gateway", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_context_fields_reach_output(self):
        record = _record(**log_context("r-1", tenant_id="acme", provider_id="openai", model="gpt-4o-mini"))

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "Request r-1 failed"
        assert data["level"] == "INFO"
        assert data["logger"] == "genrouter.gateway"
        assert data["request_id"] == "r-1"
        assert data["tenant_id"] == "acme"
        assert data["provider_id"] == "openai"
        assert data["model"] == "gpt-4o-mini"

    def test_missing_context_is_omitted(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert "request_id" not in data
        assert "provider_id" not in data

    def test_exception_is_included(self):
        try:
            raise ValueError("bad schema")
        except ValueError:
            record = logging.LogRecord("genrouter", logging.ERROR, __file__, 1, "boom", (), sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad schema" in data["exception"]


def test_log_context_drops_unset_fields():
    assert log_context("r-2", tenant_id="") == {"request_id": "r-2"}
    assert log_context("r-2", provider_id="gemini") == {"request_id": "r-2", "provider_id": "gemini"}


class TestDispatcherRecords:
    @pytest.mark.asyncio
    async def test_failover_records_carry_provider_and_request(self, snapshot, caplog):
        candidates = resolve_candidates(snapshot, "fast", estimated_tokens=100)
        dispatcher = FailoverDispatcher(
            adapters={
                "backup": ScriptedAdapter(failed_result(AttemptStatus.VENDOR_ERROR, "503")),
                "openai": ScriptedAdapter(ok_result()),
            }
        )
        request = GenerationRequest(prompt="Hi", tenant_id="acme", request_id="req-42")

        with caplog.at_level(logging.INFO, logger="genrouter.gateway.dispatcher"):
            await dispatcher.dispatch(request, candidates)

        records = [r for r in caplog.records if r.name == "genrouter.gateway.dispatcher" and r.levelno >= logging.INFO]
        assert [r.provider_id for r in records] == ["backup", "openai"]
        assert {r.request_id for r in records} == {"req-42"}
        assert {r.tenant_id for r in records} == {"acme"}
