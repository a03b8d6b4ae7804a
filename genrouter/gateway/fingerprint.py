"""Request Fingerprinter — deterministic cache keys.

The key covers only what changes the logical request: resolved target,
prompt payload, system prompt, output-affecting parameters, response schema
and the tenant's cache namespace. Request ids, trace ids, timestamps and
credentials are left out, and the payload is serialized with sorted keys so
field order never matters.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from genrouter.gateway.types import GenerationRequest


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def fingerprint_payload(request: GenerationRequest, target: str, namespace: str) -> dict[str, Any]:
    """The semantic subset of a request that feeds the fingerprint."""
    return {
        "target": target,
        "messages": request.messages(),
        "system": request.system_prompt,
        "temperature": float(request.temperature),
        "max_tokens": int(request.max_tokens),
        "response_format": request.response_format,
        "capabilities": sorted(request.required_capabilities()),
        "namespace": namespace,
    }


def fingerprint(request: GenerationRequest, target: str, namespace: str) -> str:
    """SHA-256 hex digest of the request's semantic content."""
    raw = _canonical(fingerprint_payload(request, target, namespace))
    return hashlib.sha256(raw.encode()).hexdigest()
