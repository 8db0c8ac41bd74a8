"""
Route dependencies.

The gateway is created at startup and stored on `app.state.gateway`;
routes receive it through `Depends(get_gateway)`.
"""
from fastapi import HTTPException, Request

from ai_gateway.services.ai.gateway import AIGateway


def get_gateway(request: Request) -> AIGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="AI gateway not initialized")
    return gateway
