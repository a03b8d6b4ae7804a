from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ImageURL(BaseModel):
    url: str


class ContentPart(BaseModel):
    type: str = Field(pattern=r"^(text|image_url)$")
    text: str | None = None
    image_url: ImageURL | None = None


class ChatMessage(BaseModel):
    role: str = Field(pattern=r"^(system|user|assistant)$")
    content: str | list[ContentPart]


class GenerateRequest(BaseModel):
    model: str = Field(min_length=1, max_length=255, description="Alias or explicit model")
    prompt: str | list[ChatMessage]
    system_prompt: str = ""
    temperature: float = Field(0.0, ge=0.0, le=2.0)
    max_tokens: int = Field(1024, ge=1, le=200_000)
    response_format: dict[str, Any] | None = Field(None, description="JSON schema for structured output")
    capabilities: list[str] = []
    trace_id: str = ""


class UsageOut(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class AttemptOut(BaseModel):
    provider_id: str
    model: str
    status: str
    failure_class: str
    error_code: str
    message: str
    latency_ms: int


class GenerateResponse(BaseModel):
    request_id: str
    content: str
    structured: Any = None
    provider_id: str
    model: str
    usage: UsageOut
    cost: float
    cache_hit: bool
    finish_reason: str
    attempts: list[AttemptOut] = []
    latency_ms: int
    created_at: datetime


class HealthResponse(BaseModel):
    status: str
    active_provider_count: int
    cache_hit_rate: float
    uptime_seconds: float
    snapshot_generation: int | None
    open_circuits: list[str] = []


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = {}


class ErrorResponse(BaseModel):
    error: ErrorBody
