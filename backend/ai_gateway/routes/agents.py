"""
AI processing endpoints.

POST /ai/process
POST /ai/batch
"""
from typing import List

from fastapi import APIRouter, Depends

from ai_gateway.core.logging import get_logger
from ai_gateway.models.responses import BatchItem, BatchRequest, ErrorDetail
from ai_gateway.routes.deps import get_gateway
from ai_gateway.services.ai.gateway import AIGateway
from ai_gateway.services.ai.schema import AIRequest, AIResponse

logger = get_logger(__name__)

router = APIRouter()


@router.post("/process", response_model=AIResponse)
async def process(ai_request: AIRequest, gateway: AIGateway = Depends(get_gateway)):
    """
    Process a single AI request.

    Gateway failures are raised as AIGatewayError and rendered by the
    application's exception handler (429 carries a Retry-After header).
    """
    return await gateway.submit(ai_request)


@router.post("/batch", response_model=List[BatchItem])
async def process_batch(batch: BatchRequest, gateway: AIGateway = Depends(get_gateway)):
    """
    Process several requests concurrently.

    Each item carries either a response or a typed error. With `fail_fast`
    the first failure aborts the batch and is returned as the error response.
    """
    results = await gateway.process_batch(
        batch.requests,
        max_concurrency=batch.max_concurrency,
        fail_fast=batch.fail_fast,
    )
    return [
        BatchItem(
            request_id=result.request_id,
            response=result.response,
            error=ErrorDetail(**result.error.to_dict()) if result.error else None,
        )
        for result in results
    ]
