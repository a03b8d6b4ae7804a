"""Routing Gateway — orchestrator integrating all gateway components.

Main entry point for generation requests:
  1. Reads the current config snapshot (once per request)
  2. Authenticates the tenant and applies the quota gate
  3. Fingerprints the request within the tenant's cache namespace
  4. Serves from the Result Cache, or joins/starts the single in-flight dispatch
  5. Resolves the target into ordered candidates
  6. Dispatches with failover under per-attempt and overall deadlines
  7. Normalizes the response and appends a usage record

Usage:
    gateway = RoutingGateway.from_settings(settings)
    await gateway.start()

    response = await gateway.generate(GenerationRequest(target="fast", prompt="Hi", credential="..."))
    gateway.health()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import replace

from genrouter.core.config import Settings
from genrouter.core.exceptions import GatewayError, InternalError
from genrouter.core.logging import log_context
from genrouter.core.metrics import CACHE_LOOKUPS, GENERATE_OUTCOMES
from genrouter.gateway.cache import ResultCache
from genrouter.gateway.dispatcher import FailoverDispatcher
from genrouter.gateway.fingerprint import fingerprint
from genrouter.gateway.ledger import UsageLedger, UsageSink
from genrouter.gateway.normalizer import normalize_result
from genrouter.gateway.quota import QuotaGate, TenantRateLimiter, authenticate
from genrouter.gateway.resolver import effective_target, estimate_tokens, resolve_candidates
from genrouter.gateway.snapshot import (
    ConfigSnapshot,
    FileConfigSource,
    HttpConfigSource,
    SnapshotStore,
)
from genrouter.gateway.types import CanonicalResponse, GenerationRequest, TenantConfig, UsageRecord

logger = logging.getLogger(__name__)


class RoutingGateway:
    """Main gateway orchestrator.

    Integrates:
      - SnapshotStore: routing configuration generations
      - QuotaGate: per-tenant request count and cost budget
      - ResultCache: TTL cache with request coalescing
      - FailoverDispatcher: ordered candidates, circuit breaker, adapters
      - UsageLedger: append-only usage records
    """

    def __init__(
        self,
        store: SnapshotStore,
        cache: ResultCache | None = None,
        dispatcher: FailoverDispatcher | None = None,
        ledger: UsageLedger | None = None,
        limiter: TenantRateLimiter | None = None,
        refresh_interval: float = 30.0,
        flush_interval: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.cache = cache or ResultCache()
        self.dispatcher = dispatcher or FailoverDispatcher()
        self.ledger = ledger or UsageLedger()
        self.limiter = limiter or TenantRateLimiter()
        self.quota = QuotaGate(self.limiter, self.ledger)
        self.refresh_interval = refresh_interval
        self.flush_interval = flush_interval
        self._clock = clock
        self._started_at = clock()

    @classmethod
    def from_settings(cls, cfg: Settings, sink: UsageSink | None = None) -> RoutingGateway:
        if cfg.config_source == "http":
            source = HttpConfigSource(cfg.config_url, token=cfg.config_token)
        else:
            source = FileConfigSource(cfg.config_path)

        return cls(
            store=SnapshotStore(source),
            cache=ResultCache(ttl=cfg.cache_ttl_seconds, max_entries=cfg.cache_max_entries),
            dispatcher=FailoverDispatcher(
                api_keys=cfg.provider_api_keys,
                attempt_timeout=cfg.attempt_timeout_seconds,
                request_deadline=cfg.request_deadline_seconds,
            ),
            ledger=UsageLedger(sink=sink),
            refresh_interval=cfg.config_refresh_seconds,
            flush_interval=cfg.usage_flush_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the first snapshot and start the background refresh/flush tasks."""
        if not self.store.loaded:
            await self.store.reload()
        self.store.start(self.refresh_interval)
        self.ledger.start(self.flush_interval)
        logger.info("Routing gateway started (refresh every %.0fs)", self.refresh_interval)

    async def stop(self) -> None:
        await self.store.stop()
        await self.ledger.stop()
        logger.info("Routing gateway stopped")

    # ------------------------------------------------------------------
    # generate
    # ------------------------------------------------------------------

    async def generate(self, request: GenerationRequest) -> CanonicalResponse:
        """Serve one generation request. Raises GatewayError subclasses only."""
        context = log_context(request.request_id, tenant_id=request.tenant_id)
        try:
            response = await self._generate(request)
        except GatewayError as e:
            GENERATE_OUTCOMES.labels(outcome=e.code).inc()
            logger.info("Request %s failed: %s (%s)", request.request_id, e.code, e.message, extra=context)
            raise
        except Exception as e:
            GENERATE_OUTCOMES.labels(outcome=InternalError.code).inc()
            logger.exception("Unexpected error while serving request %s", request.request_id, extra=context)
            # Exception text stays in the log and Sentry, not in the client payload
            raise InternalError("Internal error while serving the request") from e

        GENERATE_OUTCOMES.labels(outcome="cache_hit" if response.cache_hit else "success").inc()
        return response

    async def _generate(self, request: GenerationRequest) -> CanonicalResponse:
        snapshot = self.store.current()

        tenant = authenticate(snapshot, request.tenant_id, request.credential)
        self.quota.check(tenant)

        target = effective_target(request.target, tenant)
        key = fingerprint(request, target, tenant.namespace)

        async def compute() -> CanonicalResponse:
            return await self._dispatch(snapshot, tenant, request, target)

        response, hit = await self.cache.get_or_compute(key, compute)
        CACHE_LOOKUPS.labels(result="hit" if hit else "miss").inc()

        if hit:
            logger.debug(
                "Request %s served from cache (%s)",
                request.request_id,
                key[:12],
                extra=log_context(request.request_id, tenant_id=tenant.tenant_id, provider_id=response.provider_id),
            )
            return replace(response, cache_hit=True)
        return response

    async def _dispatch(
        self,
        snapshot: ConfigSnapshot,
        tenant: TenantConfig,
        request: GenerationRequest,
        target: str,
    ) -> CanonicalResponse:
        started = time.perf_counter()

        candidates = resolve_candidates(
            snapshot,
            target,
            capabilities=request.required_capabilities(),
            estimated_tokens=estimate_tokens(request),
        )
        outcome = await self.dispatcher.dispatch(request, candidates)

        response = normalize_result(
            outcome.result,
            outcome.candidate,
            attempts=outcome.attempts,
            latency_ms=int((time.perf_counter() - started) * 1000),
        )

        self.ledger.record(
            UsageRecord(
                tenant_id=tenant.tenant_id,
                provider_id=response.provider_id,
                model=response.model,
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                total_tokens=response.usage.total_tokens,
                cost=response.cost,
                request_id=request.request_id,
            )
        )
        return response

    # ------------------------------------------------------------------
    # health
    # ------------------------------------------------------------------

    def health(self) -> dict:
        """Read-only health summary for the current snapshot generation."""
        uptime = round(self._clock() - self._started_at, 3)

        if not self.store.loaded:
            return {
                "status": "unavailable",
                "active_provider_count": 0,
                "cache_hit_rate": self.cache.hit_rate,
                "uptime_seconds": uptime,
                "snapshot_generation": None,
                "open_circuits": [],
            }

        snapshot = self.store.current()
        breaker = self.dispatcher.circuit_breaker
        open_circuits = [pid for pid in snapshot.providers if breaker.is_open(pid)]
        active = snapshot.active_provider_count

        return {
            "status": "degraded" if active == 0 or open_circuits else "ok",
            "active_provider_count": active,
            "cache_hit_rate": self.cache.hit_rate,
            "uptime_seconds": uptime,
            "snapshot_generation": snapshot.generation,
            "open_circuits": open_circuits,
        }

    def get_stats(self) -> dict:
        """Detailed component stats for diagnostics."""
        return {
            "cache": self.cache.stats(),
            "dispatcher": self.dispatcher.get_status(),
            "quota": self.limiter.get_all_stats(),
            "ledger": self.ledger.get_stats(),
            "config": {
                "loaded": self.store.loaded,
                "last_error": self.store.last_error,
            },
        }
