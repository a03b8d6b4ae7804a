"""Provider Adapters — wire-format translation for each backend family.

Each adapter is a translation boundary:
  - build_payload(): canonical GenerationRequest → vendor request body (pure)
  - parse_response(): vendor response body → provider-tagged AdapterResult (pure)
  - send(): performs the HTTP call and maps transport/HTTP outcomes onto an
    AttemptStatus. Adapters never raise for vendor problems; the dispatcher
    decides what a status means.

Wire formats:
  - openai_chat: OpenAI Chat Completions and compatible APIs (DeepSeek,
    Perplexity, ...). Native json_schema output unless the endpoint sets
    options.native_schema = false.
  - gemini: Google generateContent. Native responseSchema in Gemini's reduced
    schema dialect,
    finishReason SAFETY / promptFeedback.blockReason → CENSORED.
  - yandexgpt: Foundation Models sync completion. No image input; structured
    output emulated with a prompt-level instruction.

Whenever a response schema was requested the content is parsed and validated
with jsonschema, emulated or not. Unvalidated text is never returned as a
structured result.
"""

from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx
import jsonschema

from genrouter.gateway.types import AdapterResult, AttemptStatus, GenerationRequest

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)
_DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


def schema_instruction(schema: dict[str, Any]) -> str:
    """Prompt-level constraint used where a provider lacks native structured output."""
    return (
        "Respond with a single JSON document and nothing else. "
        "It must validate against this JSON Schema:\n" + json.dumps(schema, ensure_ascii=False, sort_keys=True)
    )


def extract_json(text: str) -> Any:
    """Parse JSON from model output, tolerating a surrounding ``` fence."""
    match = _FENCE_PATTERN.match(text)
    if match:
        text = match.group(1)
    return json.loads(text)


def _status_for_http(status_code: int) -> AttemptStatus | None:
    """Map a non-2xx HTTP status to an attempt status (None for 2xx)."""
    if status_code < 300:
        return None
    if status_code == 429:
        return AttemptStatus.RATE_LIMITED
    if status_code in (401, 403):
        return AttemptStatus.PROVIDER_AUTH
    if status_code >= 500:
        return AttemptStatus.VENDOR_ERROR
    if status_code == 408:
        return AttemptStatus.TIMEOUT
    return AttemptStatus.BAD_REQUEST


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    wire_format: str
    default_base_url: str = ""
    supports_vision: bool = True
    native_schema: bool = False

    def __init__(self, api_key: str, base_url: str = "", **kwargs):
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        if "native_schema" in kwargs:
            self.native_schema = bool(kwargs["native_schema"])

    # -- translation (pure) -------------------------------------------------

    @abstractmethod
    def build_payload(self, request: GenerationRequest, model: str) -> dict[str, Any]:
        """Translate the canonical request into the vendor body."""
        ...

    @abstractmethod
    def parse_response(self, data: dict[str, Any], model: str) -> AdapterResult:
        """Translate the vendor body into an AdapterResult."""
        ...

    @abstractmethod
    def endpoint_url(self, model: str) -> str: ...

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def query_params(self) -> dict[str, str] | None:
        return None

    def system_text(self, request: GenerationRequest) -> str:
        """System prompt, plus the schema instruction when emulating structured output."""
        if request.response_format and not self.native_schema:
            parts = [request.system_prompt, schema_instruction(request.response_format)]
            return "\n\n".join(p for p in parts if p)
        return request.system_prompt

    # -- transport ----------------------------------------------------------

    async def send(self, request: GenerationRequest, provider_id: str, model: str, timeout: float = 30.0) -> AdapterResult:
        """Send the request to the vendor and return a provider-tagged result."""
        start = time.monotonic()

        if request.has_images and not self.supports_vision:
            return AdapterResult(
                provider_id=provider_id,
                model=model,
                status=AttemptStatus.UNSUPPORTED,
                error_message=f"{self.wire_format} does not accept image input",
            )

        try:
            payload = self.build_payload(request, model)
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(
                    self.endpoint_url(model),
                    json=payload,
                    headers=self.headers(),
                    params=self.query_params(),
                )

            latency_ms = int((time.monotonic() - start) * 1000)

            http_status = _status_for_http(resp.status_code)
            if http_status is not None:
                return AdapterResult(
                    provider_id=provider_id,
                    model=model,
                    status=http_status,
                    error_code=str(resp.status_code),
                    error_message=resp.text[:500],
                    latency_ms=latency_ms,
                )

            result = self.parse_response(resp.json(), model)

        except httpx.TimeoutException:
            return AdapterResult(
                provider_id=provider_id,
                model=model,
                status=AttemptStatus.TIMEOUT,
                error_message=f"Timeout after {timeout}s",
                latency_ms=int((time.monotonic() - start) * 1000),
            )
        except httpx.TransportError as e:
            return AdapterResult(
                provider_id=provider_id,
                model=model,
                status=AttemptStatus.NETWORK_ERROR,
                error_message=f"{type(e).__name__}: {e}",
                latency_ms=int((time.monotonic() - start) * 1000),
            )
        except (ValueError, KeyError, IndexError, TypeError) as e:
            # Undecodable or unexpected body from the vendor
            return AdapterResult(
                provider_id=provider_id,
                model=model,
                status=AttemptStatus.VENDOR_ERROR,
                error_code="MALFORMED_RESPONSE",
                error_message=f"{type(e).__name__}: {e}",
                latency_ms=int((time.monotonic() - start) * 1000),
            )

        result.provider_id = provider_id
        result.latency_ms = latency_ms
        if result.status == AttemptStatus.SUCCESS and request.response_format:
            self.validate_structured(result, request.response_format)
        return result

    @staticmethod
    def validate_structured(result: AdapterResult, schema: dict[str, Any]) -> AdapterResult:
        """Parse and validate structured output in place; SCHEMA_MISMATCH on failure."""
        try:
            document = extract_json(result.content)
            jsonschema.validate(instance=document, schema=schema)
        except json.JSONDecodeError as e:
            result.status = AttemptStatus.SCHEMA_MISMATCH
            result.error_code = "INVALID_JSON"
            result.error_message = f"Output is not valid JSON: {e.msg}"
            return result
        except jsonschema.ValidationError as e:
            result.status = AttemptStatus.SCHEMA_MISMATCH
            result.error_code = "SCHEMA_VALIDATION"
            result.error_message = f"Output violates schema: {e.message}"
            return result
        except jsonschema.SchemaError as e:
            result.status = AttemptStatus.BAD_REQUEST
            result.error_code = "INVALID_SCHEMA"
            result.error_message = f"Requested response schema is invalid: {e.message}"
            return result

        result.structured = document
        return result


# ---------------------------------------------------------------------------
# OpenAI Chat Completions (and compatible)
# ---------------------------------------------------------------------------


class OpenAIChatAdapter(BaseProviderAdapter):
    """OpenAI Chat Completions adapter, also used for compatible vendors."""

    wire_format = "openai_chat"
    default_base_url = "https://api.openai.com/v1"
    native_schema = True

    def endpoint_url(self, model: str) -> str:
        return f"{self.base_url}/chat/completions"

    def build_payload(self, request: GenerationRequest, model: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        system = self.system_text(request)
        if system:
            payload["messages"].append({"role": "system", "content": system})
        payload["messages"].extend(request.messages())

        if request.response_format and self.native_schema:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": request.response_format},
            }
        return payload

    def parse_response(self, data: dict[str, Any], model: str) -> AdapterResult:
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens", 0))
        completion_tokens = int(usage.get("completion_tokens", 0))
        return AdapterResult(
            model=data.get("model", model),
            status=AttemptStatus.SUCCESS,
            content=choice["message"].get("content") or "",
            finish_reason=choice.get("finish_reason") or "",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=int(usage.get("total_tokens", prompt_tokens + completion_tokens)),
            raw=data,
        )


# ---------------------------------------------------------------------------
# Gemini (Google AI generateContent)
# ---------------------------------------------------------------------------


def _gemini_part(part: dict[str, Any]) -> dict[str, Any]:
    if part.get("type") == "image_url":
        url = part.get("image_url", {}).get("url", "")
        match = _DATA_URL_PATTERN.match(url)
        if match:
            return {"inlineData": {"mimeType": match.group("mime"), "data": match.group("data")}}
        return {"fileData": {"fileUri": url, "mimeType": part.get("image_url", {}).get("mime_type", "image/jpeg")}}
    return {"text": part.get("text", "")}


# OpenAPI Schema subset accepted by generationConfig.responseSchema
_GEMINI_SCHEMA_KEYS = frozenset(
    {
        "type",
        "format",
        "description",
        "nullable",
        "enum",
        "properties",
        "required",
        "propertyOrdering",
        "items",
        "anyOf",
        "minItems",
        "maxItems",
        "minimum",
        "maximum",
        "minLength",
        "maxLength",
        "pattern",
    }
)


class UnsupportedSchema(ValueError):
    """JSON Schema construct with no responseSchema equivalent."""


def gemini_response_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Reduce a JSON Schema to what Gemini accepts as responseSchema.

    Unknown keywords ($schema, additionalProperties, $id, default, ...) are
    dropped, ``"type": [..., "null"]`` becomes ``nullable`` and a string
    ``const`` becomes a one-value ``enum``. Raises UnsupportedSchema for
    ``$ref`` since references cannot be expressed.
    """
    if not isinstance(schema, dict):
        raise UnsupportedSchema(f"schema node must be an object, got {type(schema).__name__}")
    if "$ref" in schema:
        raise UnsupportedSchema("$ref is not supported by responseSchema")

    reduced: dict[str, Any] = {}
    for key, value in schema.items():
        if key == "properties" and isinstance(value, dict):
            reduced[key] = {name: gemini_response_schema(sub) for name, sub in value.items()}
        elif key == "items":
            reduced[key] = gemini_response_schema(value)
        elif key == "anyOf" and isinstance(value, list):
            reduced[key] = [gemini_response_schema(sub) for sub in value]
        elif key in ("properties", "anyOf"):
            raise UnsupportedSchema(f"malformed {key!r}")
        elif key == "type" and isinstance(value, list):
            types = [t for t in value if t != "null"]
            if len(types) != len(value):
                reduced["nullable"] = True
            if len(types) != 1:
                raise UnsupportedSchema(f"union type {value!r} is not supported by responseSchema")
            reduced["type"] = types[0]
        elif key == "const" and isinstance(value, str):
            reduced["enum"] = [value]
        elif key in _GEMINI_SCHEMA_KEYS:
            reduced[key] = value
    return reduced


class GeminiAdapter(BaseProviderAdapter):
    """Google Gemini adapter with SAFETY filter detection.

    The requested JSON Schema is sent as responseSchema in Gemini's reduced
    dialect. Schemas that cannot be reduced fall back to the prompt-level
    instruction; validation always runs against the full schema.
    """

    wire_format = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    native_schema = True

    def endpoint_url(self, model: str) -> str:
        return f"{self.base_url}/models/{model}:generateContent"

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def query_params(self) -> dict[str, str] | None:
        return {"key": self.api_key}

    def build_payload(self, request: GenerationRequest, model: str) -> dict[str, Any]:
        contents = []
        for message in request.messages():
            role = "model" if message.get("role") == "assistant" else "user"
            content = message.get("content", "")
            if isinstance(content, str):
                parts = [{"text": content}]
            else:
                parts = [_gemini_part(p) for p in content]
            contents.append({"role": role, "parts": parts})

        generation_config: dict[str, Any] = {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_tokens,
        }
        system = self.system_text(request)
        if request.response_format and self.native_schema:
            generation_config["responseMimeType"] = "application/json"
            try:
                generation_config["responseSchema"] = gemini_response_schema(request.response_format)
            except UnsupportedSchema as e:
                logger.debug("Gemini responseSchema not usable (%s), emulating with instruction", e)
                pieces = [system, schema_instruction(request.response_format)]
                system = "\n\n".join(p for p in pieces if p)

        payload: dict[str, Any] = {"contents": contents, "generationConfig": generation_config}

        # System instruction (separate from contents in Gemini API)
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    def parse_response(self, data: dict[str, Any], model: str) -> AdapterResult:
        result = AdapterResult(model=model, raw=data)

        candidates = data.get("candidates", [])
        if not candidates:
            block_reason = data.get("promptFeedback", {}).get("blockReason", "")
            result.status = AttemptStatus.CENSORED if block_reason else AttemptStatus.VENDOR_ERROR
            result.error_code = f"BLOCKED_{block_reason}" if block_reason else "NO_CANDIDATES"
            result.error_message = f"Prompt blocked: {block_reason}" if block_reason else "Gemini returned no candidates"
            return result

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason", "")
        if finish_reason == "SAFETY":
            result.status = AttemptStatus.CENSORED
            result.error_code = "SAFETY"
            result.error_message = "Gemini safety filter triggered"
            result.finish_reason = finish_reason
            return result

        parts = candidate.get("content", {}).get("parts", [])
        result.content = "".join(p.get("text", "") for p in parts if "text" in p)
        result.finish_reason = finish_reason

        usage = data.get("usageMetadata", {})
        result.prompt_tokens = int(usage.get("promptTokenCount", 0))
        result.completion_tokens = int(usage.get("candidatesTokenCount", 0))
        result.total_tokens = int(usage.get("totalTokenCount", 0))
        result.model = data.get("modelVersion", model)
        result.status = AttemptStatus.SUCCESS
        return result


# ---------------------------------------------------------------------------
# YandexGPT (Foundation Models, sync completion)
# ---------------------------------------------------------------------------


class YandexGPTAdapter(BaseProviderAdapter):
    """YandexGPT adapter.

    Supports two auth modes:
      - API Key: Authorization: Api-Key <key>
      - IAM Token: Authorization: Bearer <iam_token>
    """

    wire_format = "yandexgpt"
    default_base_url = "https://llm.api.cloud.yandex.net/foundationModels/v1"
    supports_vision = False
    native_schema = False

    def __init__(self, api_key: str, base_url: str = "", folder_id: str = "", use_iam: bool = False, **kwargs):
        super().__init__(api_key=api_key, base_url=base_url, **kwargs)
        self.folder_id = folder_id
        self.use_iam = use_iam

    def endpoint_url(self, model: str) -> str:
        return f"{self.base_url}/completion"

    def model_uri(self, model: str) -> str:
        return f"gpt://{self.folder_id}/{model}"

    def headers(self) -> dict[str, str]:
        if self.use_iam:
            return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        return {"Authorization": f"Api-Key {self.api_key}", "Content-Type": "application/json"}

    def build_payload(self, request: GenerationRequest, model: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "modelUri": self.model_uri(model),
            "completionOptions": {
                "stream": False,
                "temperature": request.temperature,
                "maxTokens": str(request.max_tokens),
            },
            "messages": [],
        }
        system = self.system_text(request)
        if system:
            payload["messages"].append({"role": "system", "text": system})
        for message in request.messages():
            content = message.get("content", "")
            if not isinstance(content, str):
                content = "".join(p.get("text", "") for p in content if p.get("type") == "text")
            payload["messages"].append({"role": message.get("role", "user"), "text": content})
        return payload

    def parse_response(self, data: dict[str, Any], model: str) -> AdapterResult:
        result = data.get("result", data)
        alternatives = result.get("alternatives", [])
        if not alternatives:
            return AdapterResult(
                model=model,
                status=AttemptStatus.VENDOR_ERROR,
                error_code="NO_ALTERNATIVES",
                error_message="YandexGPT returned no alternatives",
                raw=data,
            )

        alternative = alternatives[0]
        usage = result.get("usage", {})
        prompt_tokens = int(usage.get("inputTextTokens", 0))
        completion_tokens = int(usage.get("completionTokens", 0))
        return AdapterResult(
            model=f"{model}@{result['modelVersion']}" if result.get("modelVersion") else model,
            status=AttemptStatus.SUCCESS,
            content=alternative.get("message", {}).get("text", ""),
            finish_reason=alternative.get("status", ""),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=int(usage.get("totalTokens", prompt_tokens + completion_tokens)),
            raw=data,
        )


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[str, type[BaseProviderAdapter]] = {
    OpenAIChatAdapter.wire_format: OpenAIChatAdapter,
    GeminiAdapter.wire_format: GeminiAdapter,
    YandexGPTAdapter.wire_format: YandexGPTAdapter,
}


def get_adapter(wire_format: str, api_key: str, **kwargs) -> BaseProviderAdapter:
    """Factory: get the appropriate adapter for a wire format."""
    cls = ADAPTER_REGISTRY.get(wire_format)
    if cls is None:
        raise ValueError(f"No adapter registered for wire format: {wire_format}")
    return cls(api_key=api_key, **kwargs)
