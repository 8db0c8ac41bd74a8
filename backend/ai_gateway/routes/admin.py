"""
Admin endpoints for cache, rate limiting, errors and costs.

POST /admin/cache/invalidate
GET /admin/cache/stats
GET /admin/rate-limit/status
DELETE /admin/rate-limit
GET /admin/errors
GET /admin/costs/{user_id}

Security: should require admin authentication in production.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ai_gateway.core.logging import get_logger
from ai_gateway.models.responses import CacheInvalidateRequest
from ai_gateway.routes.deps import get_gateway
from ai_gateway.services.ai.gateway import AIGateway
from ai_gateway.services.ai.schema import AgentType, Priority

logger = get_logger(__name__)

router = APIRouter()


@router.post("/cache/invalidate")
async def invalidate_cache(body: CacheInvalidateRequest, gateway: AIGateway = Depends(get_gateway)):
    """Bulk-invalidate cache entries by user, agent type and/or key substring."""
    try:
        removed = gateway.cache.invalidate(
            user_id=body.user_id,
            agent_type=body.agent_type,
            pattern=body.pattern,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "invalidated", "removed": removed}


@router.get("/cache/stats")
async def cache_stats(gateway: AIGateway = Depends(get_gateway)):
    return {
        "stats": gateway.cache.get_stats(),
        "efficiency": gateway.cache.get_efficiency_metrics(),
    }


@router.get("/rate-limit/status")
async def rate_limit_status(
    user_id: str = Query(..., min_length=1),
    agent_type: AgentType = Query(...),
    priority: Priority = Query(Priority.MEDIUM),
    gateway: AIGateway = Depends(get_gateway),
):
    """Non-consuming view of every rate-limit scope for a user and agent."""
    return {
        "user_id": user_id,
        "agent_type": agent_type.value,
        "strategy": gateway.rate_limiter.strategy,
        "scopes": gateway.rate_limiter.get_status(user_id, agent_type, priority),
    }


@router.delete("/rate-limit")
async def clear_rate_limits(
    user_id: Optional[str] = Query(None),
    gateway: AIGateway = Depends(get_gateway),
):
    """Clear limits for one user, or every limit when no user is given."""
    removed = gateway.rate_limiter.clear_limits(user_id)
    logger.info("admin_rate_limits_cleared", target_user_id=user_id, removed=removed)
    return {"status": "cleared", "removed": removed}


@router.get("/errors")
async def error_report(gateway: AIGateway = Depends(get_gateway)):
    return gateway.error_tracker.get_detailed_report()


@router.get("/costs/{user_id}")
async def user_costs(
    user_id: str,
    timeframe: str = Query("month", pattern="^(day|week|month)$"),
    gateway: AIGateway = Depends(get_gateway),
):
    """Spending analysis, active budget alerts and efficiency recommendations for a user."""
    optimizer = gateway.cost_optimizer
    return {
        "spending": optimizer.analyze_spending(user_id, timeframe),
        "budget_alerts": [alert.to_dict() for alert in optimizer.check_budget(user_id)],
        "recommendations": optimizer.get_efficiency_recommendations(user_id),
    }
