"""
Prometheus metrics endpoint.

GET /metrics
Returns Prometheus-formatted metrics for scraping.
"""
from fastapi import APIRouter, Response
from fastapi.responses import PlainTextResponse

from ai_gateway.core.logging import get_logger
from ai_gateway.core.metrics import get_metrics, get_metrics_content_type

logger = get_logger(__name__)
router = APIRouter()


@router.get("", response_class=PlainTextResponse)
async def metrics():
    """
    Prometheus metrics endpoint.

    No authentication required (standard Prometheus practice).
    """
    try:
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type(),
        )
    except Exception as e:
        logger.error(
            "metrics_endpoint_error",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        # Empty metrics on error (better than failing completely)
        return Response(
            content=b"# Error collecting metrics\n",
            media_type=get_metrics_content_type(),
        )
