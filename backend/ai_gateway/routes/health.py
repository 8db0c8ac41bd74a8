"""
Health check endpoints.
"""
from fastapi import APIRouter, Depends

from ai_gateway.core.logging import get_logger
from ai_gateway.routes.deps import get_gateway
from ai_gateway.services.ai.gateway import AIGateway

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "AI gateway is running"
    }


@router.get("/gateway")
async def gateway_health(gateway: AIGateway = Depends(get_gateway)):
    """
    Gateway health: overall status plus provider, cache, rate limiter and
    error statistics.

    Status is "healthy", "degraded" (some provider unavailable or high error
    rate) or "unhealthy" (no provider available).
    """
    return gateway.get_health_status()
