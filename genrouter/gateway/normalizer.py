"""Response Normalizer — AdapterResult → CanonicalResponse.

Applies the final normalization steps after an adapter succeeds:
  - Fills total_tokens when the vendor only reported the parts
  - Prices the call from the binding actually used (cost_per_token × tokens)
  - Carries the failed attempts that preceded the success for diagnostics
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from genrouter.gateway.types import (
    AdapterResult,
    AttemptRecord,
    CanonicalResponse,
    Candidate,
    TokenUsage,
)

logger = logging.getLogger(__name__)

COST_PRECISION = 10  # decimal places kept on computed cost


def compute_cost(cost_per_token: float, total_tokens: int) -> float:
    """Cost of a call: cost_per_token × token count."""
    return round(cost_per_token * total_tokens, COST_PRECISION)


def normalize_result(
    result: AdapterResult,
    candidate: Candidate,
    attempts: Sequence[AttemptRecord] = (),
    latency_ms: int | None = None,
) -> CanonicalResponse:
    """Map a successful adapter result onto the canonical response shape."""
    total_tokens = result.total_tokens
    if total_tokens == 0 and (result.prompt_tokens or result.completion_tokens):
        total_tokens = result.prompt_tokens + result.completion_tokens

    return CanonicalResponse(
        content=result.content,
        structured=result.structured,
        provider_id=candidate.provider_id,
        model=result.model or candidate.model,
        usage=TokenUsage(
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            total_tokens=total_tokens,
        ),
        cost=compute_cost(candidate.binding.cost_per_token, total_tokens),
        cache_hit=False,
        finish_reason=result.finish_reason,
        attempts=tuple(attempts),
        latency_ms=result.latency_ms if latency_ms is None else latency_ms,
    )
