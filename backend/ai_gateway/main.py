import math
import os
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import load_settings
from .core.logging import configure_logging, get_logger, get_trace_id
from .core.metrics import record_http_request
from .core.middleware import TraceIDMiddleware
from .core.tracing import (
    StatusCode,
    configure_tracing,
    get_trace_id_from_context,
    instrument_fastapi,
    record_exception,
    set_span_status,
    shutdown_tracing,
)
from .routes import admin, agents, health, metrics
from .services.ai.errors import AIGatewayError, ErrorCode
from .services.ai.gateway import AIGateway

# Configure structured logging
# Use JSON output in production (containerized), console output in development
log_level = os.getenv("LOG_LEVEL", "INFO")
json_output = os.getenv("LOG_JSON", "true").lower() == "true"
configure_logging(log_level=log_level, json_output=json_output)

logger = get_logger(__name__)

# OTLP export is enabled when OTEL_EXPORTER_OTLP_ENDPOINT is set
configure_tracing()

ERROR_STATUS_CODES = {
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.AUTHENTICATION_FAILED: 401,
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.INSUFFICIENT_CREDITS: 402,
    ErrorCode.MODEL_OVERLOADED: 503,
    ErrorCode.PROVIDER_UNAVAILABLE: 503,
    ErrorCode.UNKNOWN_ERROR: 500,
}

app = FastAPI(
    title="AI Gateway API",
    description="Routing, admission control, caching and cost control for AI coaching agents",
    version="1.0.0"
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add trace ID middleware (must be after CORS middleware)
app.add_middleware(TraceIDMiddleware)

# Instrument FastAPI with OpenTelemetry (creates automatic spans for HTTP requests)
instrument_fastapi(app)


@app.on_event("startup")
async def startup_event():
    """Create (unless already provided) and start the AI gateway."""
    logger.info("app_startup_started")
    if getattr(app.state, "gateway", None) is None:
        app.state.gateway = AIGateway(load_settings())
    await app.state.gateway.start()
    logger.info(
        "app_startup_completed",
        providers=sorted(app.state.gateway.transports),
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Stop background tasks, close provider clients and flush spans."""
    logger.info("app_shutdown_started")
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        await gateway.stop()
    shutdown_tracing()
    logger.info("app_shutdown_completed")


def _trace_id() -> str:
    return get_trace_id() or get_trace_id_from_context()


# Error handlers
@app.exception_handler(AIGatewayError)
async def gateway_error_handler(request: Request, exc: AIGatewayError):
    """Render typed gateway errors; 429 responses carry Retry-After."""
    status_code = ERROR_STATUS_CODES.get(exc.code, 500)
    trace_id = _trace_id()
    set_span_status(StatusCode.ERROR if status_code >= 500 else StatusCode.OK, exc.message)

    logger.warning(
        "ai_gateway_error",
        code=exc.code.value,
        status_code=status_code,
        retryable=exc.retryable,
        path=request.url.path,
        method=request.method,
    )
    response = JSONResponse(
        status_code=status_code,
        content={"error": exc.to_dict(), "trace_id": trace_id},
    )
    if exc.code == ErrorCode.RATE_LIMIT_EXCEEDED:
        retry_after = 1
        if exc.reset_time is not None:
            retry_after = max(1, math.ceil(exc.reset_time - time.time()))
        response.headers["Retry-After"] = str(retry_after)
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    start_time = getattr(request.state, "start_time", time.time())
    duration = time.time() - start_time
    trace_id = _trace_id()

    set_span_status(StatusCode.ERROR if exc.status_code >= 500 else StatusCode.OK, exc.detail)

    record_http_request(
        method=request.method,
        endpoint=request.url.path,
        status_code=exc.status_code,
        duration_seconds=duration,
    )

    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    response = JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "status_code": exc.status_code,
            "trace_id": trace_id,
        }
    )
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    trace_id = _trace_id()

    record_exception(exc)
    set_span_status(StatusCode.ERROR, str(exc))

    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    response = JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "status_code": 500,
            "trace_id": trace_id,
        }
    )
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(agents.router, prefix="/ai", tags=["AI"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])
