"""Tenant Authenticator & Quota Gate.

Authentication looks the caller's hashed credential up in the current
snapshot. The quota gate then applies, in this order:

  1. Request-count token bucket per tenant (capacity = requests_per_interval).
  2. Cost budget per interval, read from the Usage Ledger (optional per tenant).

Buckets refill on a fixed schedule: interval boundaries are counted from the
limiter's epoch, so a refill happens at the same instants no matter how much
traffic arrives. A rejected request leaves no trace in either check.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from genrouter.core.exceptions import AuthError, RateLimited
from genrouter.gateway.ledger import UsageLedger
from genrouter.gateway.snapshot import ConfigSnapshot
from genrouter.gateway.types import TenantConfig

logger = logging.getLogger(__name__)


def hash_credential(raw: str) -> str:
    """SHA-256 hex digest of a raw tenant credential."""
    return hashlib.sha256(raw.encode()).hexdigest()


def authenticate(snapshot: ConfigSnapshot, tenant_id: str, credential: str) -> TenantConfig:
    """Resolve the caller's TenantConfig or raise AuthError."""
    if not credential:
        raise AuthError("Missing credential")

    digest = hash_credential(credential)
    tenant = snapshot.tenant_by_credential_hash(digest)
    if tenant is None or not hmac.compare_digest(tenant.credential_hash, digest):
        raise AuthError("Unknown or invalid credential")

    if tenant_id and tenant_id != tenant.tenant_id:
        raise AuthError("Credential does not belong to the given tenant")

    return tenant


@dataclass
class _TenantBucket:
    """Token bucket for a single tenant."""

    capacity: int
    interval: float
    tokens: int
    window: int  # index of the refill window the tokens belong to


class TenantRateLimiter:
    """Per-tenant request-count token bucket with schedule-based refill.

    Usage:
        limiter = TenantRateLimiter()
        if not limiter.try_acquire(tenant):
            ...  # reject
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._epoch = clock()
        self._buckets: dict[str, _TenantBucket] = {}

    def _window(self, interval: float, now: float) -> int:
        return int((now - self._epoch) // interval)

    def _bucket(self, tenant: TenantConfig, now: float) -> _TenantBucket:
        window = self._window(tenant.interval_seconds, now)
        bucket = self._buckets.get(tenant.tenant_id)

        if bucket is None or bucket.interval != tenant.interval_seconds:
            bucket = _TenantBucket(
                capacity=tenant.requests_per_interval,
                interval=tenant.interval_seconds,
                tokens=tenant.requests_per_interval,
                window=window,
            )
            self._buckets[tenant.tenant_id] = bucket
        elif bucket.window != window:
            # Scheduled refill; limit changes from a newer snapshot apply here
            bucket.capacity = tenant.requests_per_interval
            bucket.tokens = bucket.capacity
            bucket.window = window

        return bucket

    def available(self, tenant: TenantConfig) -> int:
        return self._bucket(tenant, self._clock()).tokens

    def try_acquire(self, tenant: TenantConfig) -> bool:
        """Consume one token. Returns False (and consumes nothing) when empty."""
        bucket = self._bucket(tenant, self._clock())
        if bucket.tokens <= 0:
            return False
        bucket.tokens -= 1
        return True

    def retry_after(self, tenant: TenantConfig) -> float:
        """Seconds until the tenant's next scheduled refill."""
        now = self._clock()
        interval = tenant.interval_seconds
        next_boundary = self._epoch + (self._window(interval, now) + 1) * interval
        return max(next_boundary - now, 0.0)

    def get_stats(self, tenant_id: str) -> dict:
        bucket = self._buckets.get(tenant_id)
        if bucket is None:
            return {"tenant_id": tenant_id, "tokens": None, "capacity": None}
        return {
            "tenant_id": tenant_id,
            "tokens": bucket.tokens,
            "capacity": bucket.capacity,
            "interval_seconds": bucket.interval,
        }

    def get_all_stats(self) -> list[dict]:
        return [self.get_stats(t) for t in self._buckets]


class QuotaGate:
    """Count-based quota first, then cost budget. Both are terminal."""

    def __init__(self, limiter: TenantRateLimiter, ledger: UsageLedger):
        self.limiter = limiter
        self.ledger = ledger

    def check(self, tenant: TenantConfig) -> None:
        if self.limiter.available(tenant) <= 0:
            retry_after = round(self.limiter.retry_after(tenant), 3)
            logger.info("Tenant %s hit request quota (%d/%.0fs)", tenant.tenant_id, tenant.requests_per_interval, tenant.interval_seconds)
            raise RateLimited(
                f"Request quota of {tenant.requests_per_interval} per {tenant.interval_seconds:g}s exhausted",
                details={
                    "reason": "request_count",
                    "limit": tenant.requests_per_interval,
                    "retry_after": retry_after,
                },
            )

        if tenant.cost_budget_per_interval is not None:
            spent = self.ledger.usage_in_interval(tenant.tenant_id, tenant.interval_seconds).cost
            if spent >= tenant.cost_budget_per_interval:
                logger.info("Tenant %s hit cost budget (%.6f >= %.6f)", tenant.tenant_id, spent, tenant.cost_budget_per_interval)
                raise RateLimited(
                    f"Cost budget of {tenant.cost_budget_per_interval:g} per {tenant.interval_seconds:g}s exhausted",
                    details={
                        "reason": "cost_budget",
                        "budget": tenant.cost_budget_per_interval,
                        "spent": round(spent, 10),
                    },
                )

        self.limiter.try_acquire(tenant)
