"""Terminal error taxonomy for the routing gateway.

Every failure that crosses the gateway boundary is one of these. Attempt
records (per-candidate failures) travel in ``details["attempts"]`` so callers
can see which backends were tried and why each one failed.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for all terminal gateway errors."""

    code: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None, attempts: list | None = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})
        self.attempts = list(attempts or [])

    def to_dict(self) -> dict[str, Any]:
        details = dict(self.details)
        if self.attempts:
            details["attempts"] = [a.to_dict() for a in self.attempts]
        return {"code": self.code, "message": self.message, "details": details}


class AuthError(GatewayError):
    """Unknown tenant or bad credential."""

    code = "auth_error"
    status_code = 401


class RateLimited(GatewayError):
    """Tenant quota exhausted (request count or cost budget)."""

    code = "rate_limited"
    status_code = 429


class NoProviderAvailable(GatewayError):
    """Zero usable candidates, or every candidate failed transiently."""

    code = "no_provider_available"
    status_code = 503


class SchemaMismatch(GatewayError):
    """Structured-output contract violated."""

    code = "schema_mismatch"
    status_code = 422


class ProviderRejected(GatewayError):
    """A provider refused the request for a non-retryable reason.

    Covers malformed requests, authentication failures against the provider
    and capabilities the provider does not actually support.
    """

    code = "provider_rejected"
    status_code = 502


class Timeout(GatewayError):
    """The overall request deadline elapsed before an outcome was reached."""

    code = "timeout"
    status_code = 504


class InternalError(GatewayError):
    code = "internal_error"
    status_code = 500


class ConfigError(Exception):
    """Raised when a routing configuration payload fails validation."""
