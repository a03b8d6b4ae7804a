from fastapi import APIRouter, Depends

from genrouter.core.dependencies import get_gateway
from genrouter.gateway.gateway import RoutingGateway
from genrouter.schemas.generate import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(gateway: RoutingGateway = Depends(get_gateway)):
    return gateway.health()
