"""Dispatcher / Failover Engine.

Per request:  PENDING → TRYING(i) → SUCCESS | NEXT | EXHAUSTED

  - TRYING(i): candidate i's adapter runs under the per-attempt timeout.
  - Transient failure (network, 5xx, provider 429, attempt timeout, safety
    filter, open circuit) → NEXT, i.e. TRYING(i + 1).
  - Fatal failure (bad request, provider auth, unsupported capability,
    schema mismatch) → EXHAUSTED immediately, raised as the specific error.
  - List consumed with only transient failures → NoProviderAvailable.

An overall deadline bounds the whole loop. When it elapses the in-flight
attempt is cancelled and Timeout is raised. Each candidate is tried at most
once; there is no backoff-and-retry on the same candidate.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from genrouter.core.exceptions import GatewayError, NoProviderAvailable, ProviderRejected, SchemaMismatch, Timeout
from genrouter.core.logging import log_context
from genrouter.core.metrics import UPSTREAM_ATTEMPTS
from genrouter.gateway.adapters import BaseProviderAdapter, get_adapter
from genrouter.gateway.circuit_breaker import CircuitBreaker
from genrouter.gateway.types import (
    AdapterResult,
    AttemptRecord,
    AttemptStatus,
    Candidate,
    FailureClass,
    GenerationRequest,
    ProviderEndpoint,
    classify_status,
)

logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    PENDING = "pending"
    TRYING = "trying"
    SUCCESS = "success"
    NEXT = "next"
    EXHAUSTED = "exhausted"


@dataclass
class DispatchOutcome:
    """Successful dispatch: the candidate that answered and what came before."""

    candidate: Candidate
    result: AdapterResult
    attempts: list[AttemptRecord]


def _attempt_record(candidate: Candidate, result: AdapterResult, failure: FailureClass) -> AttemptRecord:
    return AttemptRecord(
        provider_id=candidate.provider_id,
        model=candidate.model,
        status=result.status,
        failure_class=failure,
        error_code=result.error_code,
        message=result.error_message,
        latency_ms=result.latency_ms,
    )


def _fatal_error(record: AttemptRecord, attempts: list[AttemptRecord]) -> GatewayError:
    target = f"{record.provider_id}/{record.model}"
    if record.status == AttemptStatus.SCHEMA_MISMATCH:
        return SchemaMismatch(f"{target}: {record.message}", attempts=attempts)
    return ProviderRejected(
        f"{target} rejected the request ({record.status.value}): {record.message}",
        details={"reason": record.status.value},
        attempts=attempts,
    )


class FailoverDispatcher:
    """Tries candidates in order with per-attempt and per-request time bounds.

    Usage:
        dispatcher = FailoverDispatcher(api_keys={"openai": "sk-..."})
        outcome = await dispatcher.dispatch(request, candidates)
    """

    def __init__(
        self,
        api_keys: dict[str, str] | None = None,
        attempt_timeout: float = 30.0,
        request_deadline: float = 90.0,
        circuit_breaker: CircuitBreaker | None = None,
        adapters: dict[str, BaseProviderAdapter] | None = None,
    ):
        """
        Args:
            api_keys: Mapping of provider_id → API key
            attempt_timeout: Seconds allowed for a single candidate attempt
            request_deadline: Seconds allowed for the whole dispatch
            circuit_breaker: Shared breaker (a private one is created if omitted)
            adapters: Pre-built adapters per provider_id, bypassing the factory
        """
        self.api_keys = api_keys or {}
        self.attempt_timeout = attempt_timeout
        self.request_deadline = request_deadline
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._overrides = dict(adapters or {})
        self._adapters: dict[str, tuple[str, BaseProviderAdapter]] = {}

    def _get_adapter(self, provider: ProviderEndpoint) -> BaseProviderAdapter | None:
        """Get or create the adapter for a provider (rebuilt if its endpoint changed)."""
        if provider.provider_id in self._overrides:
            return self._overrides[provider.provider_id]

        signature = json.dumps(
            [provider.wire_format, provider.base_url, provider.options], sort_keys=True, default=str
        )
        cached = self._adapters.get(provider.provider_id)
        if cached is not None and cached[0] == signature:
            return cached[1]

        api_key = self.api_keys.get(provider.provider_id, "")
        if not api_key:
            return None
        adapter = get_adapter(provider.wire_format, api_key, base_url=provider.base_url, **provider.options)
        self._adapters[provider.provider_id] = (signature, adapter)
        return adapter

    async def dispatch(self, request: GenerationRequest, candidates: Sequence[Candidate]) -> DispatchOutcome:
        """Run the failover state machine under the overall request deadline."""
        attempts: list[AttemptRecord] = []
        try:
            return await asyncio.wait_for(
                self._try_candidates(request, candidates, attempts),
                timeout=self.request_deadline,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Request %s exceeded its %.1fs deadline after %d attempt(s)",
                request.request_id,
                self.request_deadline,
                len(attempts),
                extra=log_context(request.request_id, tenant_id=request.tenant_id),
            )
            raise Timeout(
                f"Request deadline of {self.request_deadline:g}s exceeded",
                details={"deadline_seconds": self.request_deadline},
                attempts=attempts,
            ) from None

    async def _attempt(self, request: GenerationRequest, candidate: Candidate, adapter: BaseProviderAdapter) -> AdapterResult:
        try:
            return await asyncio.wait_for(
                adapter.send(request, candidate.provider_id, candidate.model, timeout=self.attempt_timeout),
                timeout=self.attempt_timeout,
            )
        except asyncio.TimeoutError:
            return AdapterResult(
                provider_id=candidate.provider_id,
                model=candidate.model,
                status=AttemptStatus.TIMEOUT,
                error_message=f"Attempt timeout after {self.attempt_timeout:g}s",
                latency_ms=int(self.attempt_timeout * 1000),
            )

    async def _try_candidates(
        self,
        request: GenerationRequest,
        candidates: Sequence[Candidate],
        attempts: list[AttemptRecord],
    ) -> DispatchOutcome:
        state = DispatchState.PENDING

        for index, candidate in enumerate(candidates):
            provider_id = candidate.provider_id
            context = log_context(
                request.request_id, tenant_id=request.tenant_id, provider_id=provider_id, model=candidate.model
            )
            state = DispatchState.TRYING
            logger.debug(
                "Request %s: %s(%d) %s/%s", request.request_id, state.value, index, provider_id, candidate.model, extra=context
            )

            if not self.circuit_breaker.allow_request(provider_id):
                result = AdapterResult(
                    provider_id=provider_id,
                    model=candidate.model,
                    status=AttemptStatus.CIRCUIT_OPEN,
                    error_message=f"Circuit breaker open for {provider_id}",
                )
                attempts.append(_attempt_record(candidate, result, FailureClass.TRANSIENT))
                UPSTREAM_ATTEMPTS.labels(provider=provider_id, status=result.status.value).inc()
                state = DispatchState.NEXT
                continue

            adapter = self._get_adapter(candidate.provider)
            if adapter is None:
                self.circuit_breaker.release_trial(provider_id)
                result = AdapterResult(
                    provider_id=provider_id,
                    model=candidate.model,
                    status=AttemptStatus.PROVIDER_AUTH,
                    error_message=f"No API key configured for {provider_id}",
                )
                record = _attempt_record(candidate, result, FailureClass.FATAL)
                attempts.append(record)
                raise _fatal_error(record, attempts)

            try:
                result = await self._attempt(request, candidate, adapter)
            except asyncio.CancelledError:
                # Deadline or caller cancellation while this attempt was in flight
                self.circuit_breaker.release_trial(provider_id)
                attempts.append(
                    AttemptRecord(
                        provider_id=provider_id,
                        model=candidate.model,
                        status=AttemptStatus.TIMEOUT,
                        failure_class=FailureClass.TRANSIENT,
                        message="Cancelled while in flight",
                    )
                )
                raise

            UPSTREAM_ATTEMPTS.labels(provider=provider_id, status=result.status.value).inc()
            failure = classify_status(result.status)

            if failure is None:
                self.circuit_breaker.record_success(provider_id)
                state = DispatchState.SUCCESS
                logger.info(
                    "Request %s served by %s/%s after %d failed attempt(s)",
                    request.request_id,
                    provider_id,
                    result.model or candidate.model,
                    len(attempts),
                    extra=context,
                )
                return DispatchOutcome(candidate=candidate, result=result, attempts=attempts)

            record = _attempt_record(candidate, result, failure)
            attempts.append(record)

            if failure == FailureClass.FATAL:
                self.circuit_breaker.release_trial(provider_id)
                state = DispatchState.EXHAUSTED
                logger.warning(
                    "Request %s: fatal %s from %s/%s, not trying further candidates",
                    request.request_id,
                    result.status.value,
                    provider_id,
                    candidate.model,
                    extra=context,
                )
                raise _fatal_error(record, attempts)

            self.circuit_breaker.record_failure(provider_id)
            state = DispatchState.NEXT
            logger.info(
                "Request %s: %s/%s failed (%s %s), advancing to next candidate",
                request.request_id,
                provider_id,
                candidate.model,
                result.status.value,
                result.error_code,
                extra=context,
            )

        state = DispatchState.EXHAUSTED
        logger.warning(
            "Request %s: %s, %d candidate(s) failed",
            request.request_id,
            state.value,
            len(attempts),
            extra=log_context(request.request_id, tenant_id=request.tenant_id),
        )
        raise NoProviderAvailable(
            f"All {len(candidates)} candidate(s) failed with transient errors",
            attempts=attempts,
        )

    def get_status(self) -> dict:
        return {
            "attempt_timeout_seconds": self.attempt_timeout,
            "request_deadline_seconds": self.request_deadline,
            "circuits": self.circuit_breaker.get_all_states(),
        }
