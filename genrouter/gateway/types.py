"""Core types and DTOs for the routing gateway."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AttemptStatus(str, Enum):
    """Outcome of a single adapter call against one candidate."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"  # 429 from the provider
    VENDOR_ERROR = "vendor_error"  # 5xx
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"  # per-attempt timeout
    CENSORED = "censored"  # provider safety filter
    CIRCUIT_OPEN = "circuit_open"
    BAD_REQUEST = "bad_request"
    PROVIDER_AUTH = "provider_auth"
    UNSUPPORTED = "unsupported"
    SCHEMA_MISMATCH = "schema_mismatch"


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


TRANSIENT_STATUSES = frozenset(
    {
        AttemptStatus.RATE_LIMITED,
        AttemptStatus.VENDOR_ERROR,
        AttemptStatus.NETWORK_ERROR,
        AttemptStatus.TIMEOUT,
        AttemptStatus.CENSORED,  # another backend may still answer
        AttemptStatus.CIRCUIT_OPEN,
    }
)

FATAL_STATUSES = frozenset(
    {
        AttemptStatus.BAD_REQUEST,
        AttemptStatus.PROVIDER_AUTH,
        AttemptStatus.UNSUPPORTED,
        AttemptStatus.SCHEMA_MISMATCH,
    }
)


def classify_status(status: AttemptStatus) -> FailureClass | None:
    """Map an attempt status to its failure class. None means success."""
    if status == AttemptStatus.SUCCESS:
        return None
    if status in FATAL_STATUSES:
        return FailureClass.FATAL
    return FailureClass.TRANSIENT


# ---------------------------------------------------------------------------
# Routing configuration (read-only, owned by the configuration source)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderEndpoint:
    """A backend vendor endpoint and how to talk to it."""

    provider_id: str
    wire_format: str  # adapter registry key, e.g. "openai_chat"
    priority: int = 100  # lower = tried first
    active: bool = True
    base_url: str = ""  # empty = adapter default
    options: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class AliasBinding:
    """One alias target: a (provider, model) pair with cost/capability metadata."""

    provider_id: str
    model: str
    context_window: int = 8192
    cost_per_token: float = 0.0
    capabilities: frozenset[str] = frozenset({"text"})


@dataclass(frozen=True)
class ModelAlias:
    alias: str
    bindings: tuple[AliasBinding, ...] = ()


@dataclass(frozen=True)
class TenantConfig:
    tenant_id: str
    credential_hash: str  # sha256 hex of the raw credential
    requests_per_interval: int = 60
    interval_seconds: float = 60.0
    cache_namespace: str = ""
    model_preference: dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    cost_budget_per_interval: float | None = None

    @property
    def namespace(self) -> str:
        return self.cache_namespace or self.tenant_id


# ---------------------------------------------------------------------------
# Generation Request — input to the gateway
# ---------------------------------------------------------------------------


@dataclass
class GenerationRequest:
    """A single generation call addressed by alias or explicit model.

    ``request_id``, ``trace_id`` and ``submitted_at`` are bookkeeping only and
    never influence routing or caching.
    """

    target: str = ""  # alias ("fast") or model ("gpt-4o-mini", "openai/gpt-4o-mini")
    prompt: str | list[dict[str, Any]] = ""
    system_prompt: str = ""
    temperature: float = 0.0
    max_tokens: int = 1024
    response_format: dict[str, Any] | None = None  # JSON schema for structured output
    capabilities: frozenset[str] = frozenset()

    tenant_id: str = ""
    credential: str = ""

    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    trace_id: str = ""
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def messages(self) -> list[dict[str, Any]]:
        """Prompt payload as a list of chat messages (system prompt excluded)."""
        if isinstance(self.prompt, str):
            return [{"role": "user", "content": self.prompt}]
        return list(self.prompt)

    @property
    def has_images(self) -> bool:
        for message in self.messages():
            content = message.get("content")
            if isinstance(content, list) and any(p.get("type") == "image_url" for p in content):
                return True
        return False

    def required_capabilities(self) -> frozenset[str]:
        caps = set(self.capabilities)
        if self.has_images:
            caps.add("vision")
        return frozenset(caps)


# ---------------------------------------------------------------------------
# Dispatch artifacts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Candidate:
    """A binding eligible for an attempt, in dispatch order."""

    provider: ProviderEndpoint
    binding: AliasBinding
    alias: str | None = None
    registration_index: int = 0
    estimated_cost: float = 0.0

    @property
    def provider_id(self) -> str:
        return self.provider.provider_id

    @property
    def model(self) -> str:
        return self.binding.model


@dataclass
class AdapterResult:
    """Provider-tagged intermediate result produced by an adapter."""

    provider_id: str = ""
    model: str = ""
    status: AttemptStatus = AttemptStatus.SUCCESS
    content: str = ""
    structured: Any = None
    finish_reason: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    latency_ms: int = 0
    error_code: str = ""  # e.g. "429", "503", "SAFETY"
    error_message: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AttemptRecord:
    """Diagnostic record of one failed candidate attempt."""

    provider_id: str
    model: str
    status: AttemptStatus
    failure_class: FailureClass
    error_code: str = ""
    message: str = ""
    latency_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "provider_id": self.provider_id,
            "model": self.model,
            "status": self.status.value,
            "failure_class": self.failure_class.value,
            "error_code": self.error_code,
            "message": self.message,
            "latency_ms": self.latency_ms,
        }


# ---------------------------------------------------------------------------
# Canonical Response — unified DTO (output of the gateway)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class CanonicalResponse:
    """Normalized response, same shape regardless of which provider served it."""

    content: str = ""
    structured: Any = None
    provider_id: str = ""
    model: str = ""
    usage: TokenUsage = TokenUsage()
    cost: float = 0.0
    cache_hit: bool = False
    finish_reason: str = ""
    attempts: tuple[AttemptRecord, ...] = ()
    latency_ms: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for the API."""
        return {
            "content": self.content,
            "structured": self.structured,
            "provider_id": self.provider_id,
            "model": self.model,
            "usage": {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            },
            "cost": self.cost,
            "cache_hit": self.cache_hit,
            "finish_reason": self.finish_reason,
            "attempts": [a.to_dict() for a in self.attempts],
            "latency_ms": self.latency_ms,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    response: CanonicalResponse
    created_at: float  # clock() reading at insert
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class UsageRecord:
    """One completed upstream call, attributed to a tenant."""

    tenant_id: str
    provider_id: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    request_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
