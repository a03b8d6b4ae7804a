"""Tests for the Config Snapshot Loader."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from genrouter.core.exceptions import ConfigError, InternalError
from genrouter.gateway.snapshot import (
    FileConfigSource,
    HttpConfigSource,
    SnapshotStore,
    StaticConfigSource,
    build_snapshot,
)
from tests.conftest import make_payload


def _make_httpx_response(status_code: int, json_data: dict | None = None, text: str = "") -> httpx.Response:
    request = httpx.Request("GET", "https://config.example.com/routing")
    if json_data is not None:
        return httpx.Response(status_code, json=json_data, request=request)
    return httpx.Response(status_code, text=text, request=request)


class TestBuildSnapshot:
    def test_valid_payload(self, payload):
        snapshot = build_snapshot(payload, generation=7)
        assert snapshot.generation == 7
        assert list(snapshot.providers) == ["openai", "gemini", "yandex", "backup"]
        assert snapshot.active_provider_count == 4
        assert snapshot.alias("fast").bindings[0].model == "gpt-4o-mini"
        assert snapshot.provider("yandex").options == {"folder_id": "b1g-folder"}
        assert snapshot.tenants_by_id["acme"].namespace == "acme"
        assert snapshot.tenants_by_id["initech"].namespace == "initech"

    def test_mappings_are_read_only(self, snapshot):
        with pytest.raises(TypeError):
            snapshot.providers["new"] = snapshot.provider("openai")

    def test_find_model(self, snapshot):
        assert snapshot.find_model("gemini-2.0-flash").provider_id == "gemini"
        assert snapshot.find_model("gpt-4o", provider_id="openai").cost_per_token == 0.002
        assert snapshot.find_model("gpt-4o", provider_id="gemini") is None
        assert snapshot.find_model("nope") is None

    @pytest.mark.parametrize(
        "mutate",
        [
            pytest.param(lambda p: p["providers"].append(dict(p["providers"][0])), id="duplicate-provider"),
            pytest.param(lambda p: p["aliases"].append(dict(p["aliases"][0])), id="duplicate-alias"),
            pytest.param(lambda p: p["aliases"][0].update(bindings=[]), id="empty-bindings"),
            pytest.param(
                lambda p: p["aliases"][0]["bindings"][0].update(provider_id="ghost"), id="unknown-provider"
            ),
            pytest.param(lambda p: p["aliases"][2]["bindings"][0].update(cost_per_token=-1), id="negative-cost"),
            pytest.param(lambda p: p["providers"][0].update(wire_format="smoke_signals"), id="unknown-wire-format"),
            pytest.param(
                lambda p: p["tenants"][1].update(credential_hash=p["tenants"][0]["credential_hash"]),
                id="shared-credential",
            ),
            pytest.param(lambda p: p["tenants"][0].update(requests_per_interval=0), id="zero-limit"),
            pytest.param(lambda p: p["providers"][0].pop("wire_format"), id="missing-field"),
        ],
    )
    def test_invalid_payloads_rejected(self, payload, mutate):
        mutate(payload)
        with pytest.raises(ConfigError):
            build_snapshot(payload, generation=1)

    @pytest.mark.parametrize(
        "raw",
        [["not", "an", "object"], "routing", None, {"providers": [["openai", "openai_chat"]]}],
        ids=["list", "string", "null", "list-entry"],
    )
    def test_non_object_payloads_rejected(self, raw):
        with pytest.raises(ConfigError):
            build_snapshot(raw, generation=1)


class TestSnapshotStore:
    def test_current_before_load(self):
        store = SnapshotStore(StaticConfigSource(make_payload()))
        assert store.loaded is False
        with pytest.raises(InternalError):
            store.current()

    @pytest.mark.asyncio
    async def test_reload_publishes_generations(self):
        source = StaticConfigSource(make_payload())
        store = SnapshotStore(source)

        first = await store.reload()
        assert first.generation == 1

        source.payload = make_payload()
        source.payload["providers"][1]["active"] = False
        second = await store.reload()

        assert second.generation == 2
        assert store.current() is second
        # a request holding the old generation keeps seeing it
        assert first.provider("gemini").active is True

    @pytest.mark.asyncio
    async def test_failed_reload_keeps_previous(self):
        source = StaticConfigSource(make_payload())
        store = SnapshotStore(source)
        await store.reload()

        source.payload = {"providers": [{"provider_id": "x", "wire_format": "nope"}]}
        kept = await store.reload()

        assert kept.generation == 1
        assert store.current().generation == 1
        assert "unknown wire format" in store.last_error

    @pytest.mark.asyncio
    async def test_non_object_reload_keeps_previous(self):
        source = StaticConfigSource(make_payload())
        store = SnapshotStore(source)
        await store.reload()

        source.payload = ["not", "an", "object"]
        kept = await store.reload()

        assert kept.generation == 1
        assert "JSON object" in store.last_error

    @pytest.mark.asyncio
    async def test_initial_failure_raises(self):
        store = SnapshotStore(StaticConfigSource({"aliases": [{"alias": "a", "bindings": []}]}))
        with pytest.raises(ConfigError):
            await store.reload()
        assert store.loaded is False

    @pytest.mark.asyncio
    async def test_start_and_stop_refresh_task(self):
        store = SnapshotStore(StaticConfigSource(make_payload()))
        await store.reload()
        store.start(interval=3600)
        assert store._task is not None
        await store.stop()
        assert store._task is None


class TestConfigSources:
    @pytest.mark.asyncio
    async def test_file_source(self, tmp_path):
        path = tmp_path / "routing.json"
        path.write_text(json.dumps(make_payload()), encoding="utf-8")

        store = SnapshotStore(FileConfigSource(path))
        snapshot = await store.reload()
        assert "fast" in snapshot.aliases

    @pytest.mark.asyncio
    async def test_file_source_missing_file(self, tmp_path):
        store = SnapshotStore(FileConfigSource(tmp_path / "missing.json"))
        with pytest.raises(OSError):
            await store.reload()

    @pytest.mark.asyncio
    async def test_http_source(self):
        source = HttpConfigSource("https://config.example.com/routing", token="cfg-token")

        with patch("genrouter.gateway.snapshot.httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.get.return_value = _make_httpx_response(200, json_data=make_payload())
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=None)
            mock_client_cls.return_value = mock_client

            payload = await source.fetch()

        assert len(payload["providers"]) == 4
        headers = mock_client.get.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer cfg-token"

    @pytest.mark.asyncio
    async def test_http_source_error_keeps_previous(self):
        store = SnapshotStore(HttpConfigSource("https://config.example.com/routing"))

        with patch("genrouter.gateway.snapshot.httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.get.side_effect = [
                _make_httpx_response(200, json_data=make_payload()),
                _make_httpx_response(503, text="unavailable"),
            ]
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=None)
            mock_client_cls.return_value = mock_client

            await store.reload()
            snapshot = await store.reload()

        assert snapshot.generation == 1
        assert store.last_error
