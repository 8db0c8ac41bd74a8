"""Pydantic models for API payloads."""

from .responses import BatchItem, BatchRequest, CacheInvalidateRequest, ErrorDetail, ErrorResponse

__all__ = ["BatchItem", "BatchRequest", "CacheInvalidateRequest", "ErrorDetail", "ErrorResponse"]
