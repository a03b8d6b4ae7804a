"""Alias Resolver — expands an alias (or explicit model) into ordered candidates.

Pure function over a ConfigSnapshot: no I/O, no mutable state, so the same
snapshot and request always produce the same candidate list.

Ordering: ascending provider priority, then ascending estimated cost, then
registration order within the alias.
"""

from __future__ import annotations

import logging

from genrouter.core.exceptions import NoProviderAvailable
from genrouter.gateway.snapshot import ConfigSnapshot
from genrouter.gateway.types import AliasBinding, Candidate, GenerationRequest, TenantConfig

logger = logging.getLogger(__name__)

_CHARS_PER_TOKEN = 4


def estimate_tokens(request: GenerationRequest) -> int:
    """Rough token estimate (prompt chars / 4 + max_tokens), used only for ordering."""
    chars = len(request.system_prompt)
    for message in request.messages():
        content = message.get("content")
        if isinstance(content, str):
            chars += len(content)
        elif isinstance(content, list):
            chars += sum(len(p.get("text", "")) for p in content if isinstance(p, dict))
    return chars // _CHARS_PER_TOKEN + max(request.max_tokens, 0)


def effective_target(target: str, tenant: TenantConfig | None) -> str:
    """Apply the tenant's model-preference override, if any."""
    if tenant is not None and target in tenant.model_preference:
        return tenant.model_preference[target]
    return target


def _eligible(snapshot: ConfigSnapshot, binding: AliasBinding, capabilities: frozenset[str]) -> str:
    """Empty string if the binding can serve the request, else the reason it can't."""
    provider = snapshot.provider(binding.provider_id)
    if provider is None:
        return f"provider '{binding.provider_id}' is not configured"
    if not provider.active:
        return f"provider '{binding.provider_id}' is inactive"
    missing = capabilities - binding.capabilities
    if missing:
        return f"{binding.provider_id}/{binding.model} lacks {sorted(missing)}"
    return ""


def _explicit_binding(snapshot: ConfigSnapshot, target: str) -> AliasBinding | None:
    if "/" in target:
        provider_id, model = target.split("/", 1)
        if snapshot.provider(provider_id) is not None:
            known = snapshot.find_model(model, provider_id=provider_id)
            return known or AliasBinding(provider_id=provider_id, model=model)
    return snapshot.find_model(target)


def resolve_candidates(
    snapshot: ConfigSnapshot,
    target: str,
    capabilities: frozenset[str] = frozenset(),
    estimated_tokens: int = 0,
) -> list[Candidate]:
    """Ordered candidate list for ``target``. Raises NoProviderAvailable when empty."""
    alias = snapshot.alias(target)

    if alias is not None:
        bindings = list(alias.bindings)
        alias_name: str | None = alias.alias
    else:
        binding = _explicit_binding(snapshot, target)
        if binding is None:
            raise NoProviderAvailable(
                f"'{target}' is neither a known alias nor a known model",
                details={"target": target},
            )
        bindings = [binding]
        alias_name = None

    candidates: list[Candidate] = []
    rejected: list[str] = []
    for index, binding in enumerate(bindings):
        reason = _eligible(snapshot, binding, capabilities)
        if reason:
            rejected.append(reason)
            continue
        candidates.append(
            Candidate(
                provider=snapshot.providers[binding.provider_id],
                binding=binding,
                alias=alias_name,
                registration_index=index,
                estimated_cost=binding.cost_per_token * max(estimated_tokens, 1),
            )
        )

    if not candidates:
        raise NoProviderAvailable(
            f"No active binding for '{target}' supports {sorted(capabilities) or 'the request'}",
            details={"target": target, "rejected": rejected},
        )

    candidates.sort(key=lambda c: (c.provider.priority, c.estimated_cost, c.registration_index))

    logger.debug(
        "Resolved '%s' to %s",
        target,
        [f"{c.provider_id}/{c.model}" for c in candidates],
    )
    return candidates
