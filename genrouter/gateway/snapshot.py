"""Config Snapshot Loader — immutable routing configuration with periodic refresh.

A snapshot bundles the provider list, the alias table and the tenant records
of one configuration generation. The store publishes a new snapshot by
replacing a single reference, so a request that grabbed ``current()`` keeps
reading one consistent generation for its whole lifetime even if a reload
happens mid-flight.

Payload format (as returned by every ConfigSource):

    {
      "providers": [{"provider_id": "openai", "wire_format": "openai_chat",
                     "priority": 1, "active": true, "base_url": "", "options": {}}],
      "aliases":   [{"alias": "fast", "bindings": [{"provider_id": "openai",
                     "model": "gpt-4o-mini", "context_window": 128000,
                     "cost_per_token": 0.0000006, "capabilities": ["text"]}]}],
      "tenants":   [{"tenant_id": "acme", "credential_hash": "<sha256 hex>",
                     "requests_per_interval": 60, "interval_seconds": 60,
                     "cache_namespace": "acme", "model_preference": {},
                     "cost_budget_per_interval": null}]
    }
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import httpx

from genrouter.core.exceptions import ConfigError, InternalError
from genrouter.gateway.adapters import ADAPTER_REGISTRY
from genrouter.gateway.types import AliasBinding, ModelAlias, ProviderEndpoint, TenantConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config sources
# ---------------------------------------------------------------------------


class ConfigSource(ABC):
    """Pull interface to the external routing configuration store."""

    @abstractmethod
    async def fetch(self) -> dict[str, Any]:
        """Return the full {providers, aliases, tenants} payload."""
        ...


class StaticConfigSource(ConfigSource):
    """In-process payload, mostly for tests and embedded use."""

    def __init__(self, payload: dict[str, Any]):
        self.payload = payload

    async def fetch(self) -> dict[str, Any]:
        return self.payload


class FileConfigSource(ConfigSource):
    """Reads a JSON payload from disk on every fetch."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def fetch(self) -> dict[str, Any]:
        text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        return json.loads(text)


class HttpConfigSource(ConfigSource):
    """Fetches the payload from an HTTP endpoint (GET, JSON body)."""

    def __init__(self, url: str, token: str = "", timeout: float = 10.0):
        self.url = url
        self.token = token
        self.timeout = timeout

    async def fetch(self) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(self.url, headers=headers)
        resp.raise_for_status()
        return resp.json()


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigSnapshot:
    """One immutable generation of routing configuration."""

    generation: int
    providers: Mapping[str, ProviderEndpoint]  # insertion order = registration order
    aliases: Mapping[str, ModelAlias]
    tenants_by_id: Mapping[str, TenantConfig]
    tenants_by_hash: Mapping[str, TenantConfig]
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def provider(self, provider_id: str) -> ProviderEndpoint | None:
        return self.providers.get(provider_id)

    def alias(self, name: str) -> ModelAlias | None:
        return self.aliases.get(name)

    def tenant_by_credential_hash(self, credential_hash: str) -> TenantConfig | None:
        return self.tenants_by_hash.get(credential_hash)

    def find_model(self, model: str, provider_id: str | None = None) -> AliasBinding | None:
        """First binding (in registration order) serving ``model``."""
        for alias in self.aliases.values():
            for binding in alias.bindings:
                if binding.model != model:
                    continue
                if provider_id is None or binding.provider_id == provider_id:
                    return binding
        return None

    @property
    def active_provider_count(self) -> int:
        return sum(1 for p in self.providers.values() if p.active)


def _parse_provider(raw: dict[str, Any]) -> ProviderEndpoint:
    return ProviderEndpoint(
        provider_id=str(raw["provider_id"]),
        wire_format=str(raw["wire_format"]),
        priority=int(raw.get("priority", 100)),
        active=bool(raw.get("active", True)),
        base_url=str(raw.get("base_url", "") or ""),
        options=dict(raw.get("options") or {}),
    )


def _parse_binding(raw: dict[str, Any]) -> AliasBinding:
    return AliasBinding(
        provider_id=str(raw["provider_id"]),
        model=str(raw["model"]),
        context_window=int(raw.get("context_window", 8192)),
        cost_per_token=float(raw.get("cost_per_token", 0.0)),
        capabilities=frozenset(raw.get("capabilities") or ["text"]),
    )


def _parse_tenant(raw: dict[str, Any]) -> TenantConfig:
    budget = raw.get("cost_budget_per_interval")
    return TenantConfig(
        tenant_id=str(raw["tenant_id"]),
        credential_hash=str(raw["credential_hash"]).lower(),
        requests_per_interval=int(raw.get("requests_per_interval", 60)),
        interval_seconds=float(raw.get("interval_seconds", 60.0)),
        cache_namespace=str(raw.get("cache_namespace", "") or ""),
        model_preference=dict(raw.get("model_preference") or {}),
        cost_budget_per_interval=float(budget) if budget is not None else None,
    )


def build_snapshot(payload: dict[str, Any], generation: int) -> ConfigSnapshot:
    """Validate a raw payload and freeze it into a ConfigSnapshot.

    Raises ConfigError on any structural problem; a half-valid payload is
    never published.
    """
    if not isinstance(payload, dict):
        raise ConfigError(f"Routing payload must be a JSON object, got {type(payload).__name__}")

    errors: list[str] = []
    try:
        providers_list = [_parse_provider(p) for p in payload.get("providers", [])]
        aliases_raw = payload.get("aliases", [])
        tenants_list = [_parse_tenant(t) for t in payload.get("tenants", [])]
        aliases_list = [
            ModelAlias(alias=str(a["alias"]), bindings=tuple(_parse_binding(b) for b in a.get("bindings", [])))
            for a in aliases_raw
        ]
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Malformed routing payload: {e!r}") from e

    providers: dict[str, ProviderEndpoint] = {}
    for p in providers_list:
        if p.provider_id in providers:
            errors.append(f"duplicate provider '{p.provider_id}'")
        if p.wire_format not in ADAPTER_REGISTRY:
            errors.append(f"provider '{p.provider_id}' has unknown wire format '{p.wire_format}'")
        providers[p.provider_id] = p

    aliases: dict[str, ModelAlias] = {}
    for a in aliases_list:
        if a.alias in aliases:
            errors.append(f"duplicate alias '{a.alias}'")
        if not a.bindings:
            errors.append(f"alias '{a.alias}' has no bindings")
        for b in a.bindings:
            if b.provider_id not in providers:
                errors.append(f"alias '{a.alias}' references unknown provider '{b.provider_id}'")
            if b.cost_per_token < 0:
                errors.append(f"alias '{a.alias}' binding '{b.model}' has negative cost")
        aliases[a.alias] = a

    tenants_by_id: dict[str, TenantConfig] = {}
    tenants_by_hash: dict[str, TenantConfig] = {}
    for t in tenants_list:
        if t.tenant_id in tenants_by_id:
            errors.append(f"duplicate tenant '{t.tenant_id}'")
        if t.credential_hash in tenants_by_hash:
            errors.append(f"tenant '{t.tenant_id}' shares a credential with '{tenants_by_hash[t.credential_hash].tenant_id}'")
        if t.requests_per_interval <= 0 or t.interval_seconds <= 0:
            errors.append(f"tenant '{t.tenant_id}' has a non-positive rate limit")
        tenants_by_id[t.tenant_id] = t
        tenants_by_hash[t.credential_hash] = t

    if errors:
        raise ConfigError("Invalid routing payload: " + "; ".join(errors))

    return ConfigSnapshot(
        generation=generation,
        providers=MappingProxyType(providers),
        aliases=MappingProxyType(aliases),
        tenants_by_id=MappingProxyType(tenants_by_id),
        tenants_by_hash=MappingProxyType(tenants_by_hash),
    )


# ---------------------------------------------------------------------------
# Snapshot store
# ---------------------------------------------------------------------------


class SnapshotStore:
    """Holds the currently published snapshot and refreshes it periodically.

    Usage:
        store = SnapshotStore(FileConfigSource("routing.json"))
        await store.reload()
        store.start(interval=30)

        snapshot = store.current()  # read once per request
    """

    def __init__(self, source: ConfigSource):
        self.source = source
        self._snapshot: ConfigSnapshot | None = None
        self._generation = 0
        self._task: asyncio.Task | None = None
        self.last_error: str = ""
        self.last_reload_at: float = 0.0

    def current(self) -> ConfigSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise InternalError("Routing configuration has not been loaded")
        return snapshot

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    async def reload(self) -> ConfigSnapshot:
        """Fetch, validate and publish a new generation.

        A failed reload keeps the previous generation in place; the error is
        re-raised only when there is nothing to fall back to.
        """
        try:
            payload = await self.source.fetch()
            snapshot = build_snapshot(payload, generation=self._generation + 1)
        except (ConfigError, httpx.HTTPError, OSError, ValueError) as e:
            self.last_error = str(e)
            if self._snapshot is None:
                logger.error("Initial routing config load failed: %s", e)
                raise
            logger.warning(
                "Routing config reload failed, keeping generation %d: %s",
                self._snapshot.generation,
                e,
            )
            return self._snapshot

        self._generation = snapshot.generation
        self._snapshot = snapshot  # single reference swap
        self.last_error = ""
        self.last_reload_at = time.monotonic()
        logger.info(
            "Published routing config generation %d (%d providers, %d aliases, %d tenants)",
            snapshot.generation,
            len(snapshot.providers),
            len(snapshot.aliases),
            len(snapshot.tenants_by_id),
        )
        return snapshot

    async def _refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reload()
            except Exception:
                logger.exception("Unexpected error in routing config refresh loop")

    def start(self, interval: float) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._refresh_loop(interval))

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
