"""HTTP surface tests: /api/v1/generate, /api/v1/health and /metrics."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from genrouter.gateway.dispatcher import FailoverDispatcher
from genrouter.gateway.gateway import RoutingGateway
from genrouter.gateway.quota import TenantRateLimiter
from genrouter.gateway.snapshot import SnapshotStore, StaticConfigSource
from genrouter.gateway.types import AttemptStatus
from genrouter.main import app
from tests.conftest import ACME_KEY, GLOBEX_KEY, FakeClock, ScriptedAdapter, failed_result, make_payload, ok_result


@pytest.fixture
def adapters():
    return {"backup": ScriptedAdapter(ok_result("routed answer"))}


@pytest.fixture
async def gateway(adapters):
    gw = RoutingGateway(
        store=SnapshotStore(StaticConfigSource(make_payload())),
        dispatcher=FailoverDispatcher(adapters=adapters, attempt_timeout=1.0, request_deadline=2.0),
        limiter=TenantRateLimiter(clock=FakeClock()),
    )
    await gw.store.reload()
    return gw


@pytest.fixture
async def client(gateway):
    # ASGITransport does not run the lifespan, so the gateway is wired directly
    app.state.gateway = gateway
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.state.gateway = None


def _auth(key: str = GLOBEX_KEY) -> dict[str, str]:
    return {"Authorization": f"Bearer {key}"}


class TestGenerateEndpoint:
    @pytest.mark.asyncio
    async def test_generate(self, client):
        resp = await client.post("/api/v1/generate", json={"model": "fast", "prompt": "Hi"}, headers=_auth())

        assert resp.status_code == 200
        data = resp.json()
        assert data["content"] == "routed answer"
        assert data["provider_id"] == "backup"
        assert data["model"] == "gpt-4o-mini-backup"
        assert data["usage"]["total_tokens"] == 30
        assert data["cache_hit"] is False
        assert data["request_id"]

    @pytest.mark.asyncio
    async def test_second_call_is_cache_hit(self, client, adapters):
        body = {"model": "fast", "prompt": "Hi"}
        await client.post("/api/v1/generate", json=body, headers=_auth())
        resp = await client.post("/api/v1/generate", json=body, headers=_auth())

        assert resp.json()["cache_hit"] is True
        assert adapters["backup"].calls == 1

    @pytest.mark.asyncio
    async def test_chat_messages(self, client):
        body = {
            "model": "fast",
            "prompt": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello"},
                {"role": "user", "content": "How are you?"},
            ],
        }
        resp = await client.post("/api/v1/generate", json=body, headers=_auth())
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_tenant_header_must_match(self, client):
        resp = await client.post(
            "/api/v1/generate",
            json={"model": "fast", "prompt": "Hi"},
            headers={**_auth(ACME_KEY), "X-Tenant-Id": "globex"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_authorization(self, client):
        resp = await client.post("/api/v1/generate", json={"model": "fast", "prompt": "Hi"})

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_error"

    @pytest.mark.asyncio
    async def test_unknown_credential(self, client):
        resp = await client.post("/api/v1/generate", json={"model": "fast", "prompt": "Hi"}, headers=_auth("nope"))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_rate_limited_sets_retry_after(self, client):
        for i in range(5):
            resp = await client.post("/api/v1/generate", json={"model": "fast", "prompt": f"p{i}"}, headers=_auth(ACME_KEY))
            assert resp.status_code == 200

        resp = await client.post("/api/v1/generate", json={"model": "fast", "prompt": "p5"}, headers=_auth(ACME_KEY))

        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) >= 1

    @pytest.mark.asyncio
    async def test_unknown_alias(self, client):
        resp = await client.post("/api/v1/generate", json={"model": "nope", "prompt": "Hi"}, headers=_auth())

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "no_provider_available"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"prompt": "Hi"},
            {"model": "fast", "prompt": "Hi", "temperature": 5},
            {"model": "fast", "prompt": [{"role": "robot", "content": "Hi"}]},
        ],
    )
    async def test_validation_error(self, client, body):
        resp = await client.post("/api/v1/generate", json=body, headers=_auth())
        assert resp.status_code == 422


class TestProviderFailures:
    @pytest.fixture
    def adapters(self):
        return {
            "backup": ScriptedAdapter(failed_result(AttemptStatus.VENDOR_ERROR, "503")),
            "openai": ScriptedAdapter(failed_result(AttemptStatus.BAD_REQUEST, "400")),
        }

    @pytest.mark.asyncio
    async def test_fatal_rejection_reports_attempts(self, client):
        resp = await client.post("/api/v1/generate", json={"model": "fast", "prompt": "Hi"}, headers=_auth())

        assert resp.status_code == 502
        error = resp.json()["error"]
        assert error["code"] == "provider_rejected"
        assert [a["provider_id"] for a in error["details"]["attempts"]] == ["backup", "openai"]


class TestInternalErrors:
    @pytest.fixture
    def adapters(self):
        return {"backup": ScriptedAdapter(RuntimeError("token sk-live-123 leaked"))}

    @pytest.mark.asyncio
    async def test_internal_error_hides_exception_text(self, client):
        resp = await client.post("/api/v1/generate", json={"model": "fast", "prompt": "Hi"}, headers=_auth())

        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == "internal_error"
        assert "sk-live-123" not in resp.text
        assert "RuntimeError" not in error["message"]


class TestHealthAndMetrics:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["active_provider_count"] == 4
        assert data["snapshot_generation"] == 1

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        await client.post("/api/v1/generate", json={"model": "fast", "prompt": "Hi"}, headers=_auth())
        resp = await client.get("/metrics")

        assert resp.status_code == 200
        assert "generate_requests_total" in resp.text
        assert "upstream_attempts_total" in resp.text
