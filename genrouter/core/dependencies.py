from fastapi import Header, Request

from genrouter.core.exceptions import AuthError
from genrouter.gateway.gateway import RoutingGateway


def get_gateway(request: Request) -> RoutingGateway:
    return request.app.state.gateway


async def get_credential(
    authorization: str = Header("", description="Bearer <tenant credential>"),
) -> str:
    if not authorization.startswith("Bearer "):
        raise AuthError("Invalid authorization header")
    credential = authorization[7:].strip()
    if not credential:
        raise AuthError("Missing credential")
    return credential
