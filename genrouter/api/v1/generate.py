"""Generation endpoint: one routed call per request."""

import logging

from fastapi import APIRouter, Depends, Header

from genrouter.core.dependencies import get_credential, get_gateway
from genrouter.gateway.gateway import RoutingGateway
from genrouter.gateway.types import GenerationRequest
from genrouter.schemas.generate import ErrorResponse, GenerateRequest, GenerateResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["generate"])

_ERROR_RESPONSES = {
    status: {"model": ErrorResponse}
    for status in (401, 422, 429, 500, 502, 503, 504)
}


def _to_generation_request(body: GenerateRequest, tenant_id: str, credential: str) -> GenerationRequest:
    if isinstance(body.prompt, str):
        prompt = body.prompt
    else:
        prompt = [m.model_dump(exclude_none=True) for m in body.prompt]

    return GenerationRequest(
        target=body.model,
        prompt=prompt,
        system_prompt=body.system_prompt,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        response_format=body.response_format,
        capabilities=frozenset(body.capabilities),
        tenant_id=tenant_id,
        credential=credential,
        trace_id=body.trace_id,
    )


@router.post("/generate", response_model=GenerateResponse, responses=_ERROR_RESPONSES)
async def generate(
    body: GenerateRequest,
    credential: str = Depends(get_credential),
    x_tenant_id: str = Header("", description="Tenant the credential belongs to"),
    gateway: RoutingGateway = Depends(get_gateway),
):
    request = _to_generation_request(body, x_tenant_id, credential)
    response = await gateway.generate(request)
    return GenerateResponse(request_id=request.request_id, **response.to_dict())
