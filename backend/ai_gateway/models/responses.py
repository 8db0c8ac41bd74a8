"""
Request and response models for API endpoints.

These models define the structure of HTTP payloads; the domain models live
in `ai_gateway.services.ai.schema`.
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from ai_gateway.services.ai.schema import AgentType, AIRequest, AIResponse


class ErrorDetail(BaseModel):
    """Typed gateway error as returned to HTTP callers."""
    code: str
    message: str
    retryable: bool
    reset_time: Optional[float] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
    trace_id: Optional[str] = None


class BatchRequest(BaseModel):
    requests: List[AIRequest] = Field(..., min_length=1)
    max_concurrency: Optional[int] = Field(None, ge=1)
    fail_fast: bool = False


class BatchItem(BaseModel):
    """Outcome of one batch entry: exactly one of `response` / `error` is set."""
    request_id: str
    response: Optional[AIResponse] = None
    error: Optional[ErrorDetail] = None


class CacheInvalidateRequest(BaseModel):
    user_id: Optional[str] = None
    agent_type: Optional[AgentType] = None
    pattern: Optional[str] = None
