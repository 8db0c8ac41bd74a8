"""
Structured logging configuration for the gateway.

JSON-structured logs via structlog. Every entry carries:
- timestamp (ISO 8601)
- level
- service (service name identifier)
- trace_id / request_id (correlation IDs for the HTTP request being served)
- user_id and agent_type (when a gateway request is in flight)
"""
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import structlog
from structlog.types import Processor

trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
agent_type_var: ContextVar[Optional[str]] = ContextVar("agent_type", default=None)

SERVICE_NAME = "ai_gateway"


def add_request_context(
    logger: structlog.BoundLogger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Add request context (trace_id, request_id, user_id, agent_type) to log entries.
    """
    for key, var in (
        ("trace_id", trace_id_var),
        ("request_id", request_id_var),
        ("user_id", user_id_var),
        ("agent_type", agent_type_var),
    ):
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value

    event_dict["service"] = SERVICE_NAME

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    service_name: Optional[str] = None,
    json_output: bool = True
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Service name identifier (defaults to SERVICE_NAME)
        json_output: JSON lines for production, console rendering for development
    """
    global SERVICE_NAME
    if service_name:
        SERVICE_NAME = service_name

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_request_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)
    """
    return structlog.get_logger(name)


def set_trace_id(trace_id: Optional[str]) -> None:
    trace_id_var.set(trace_id)


def get_trace_id() -> Optional[str]:
    return trace_id_var.get()


def set_request_id(request_id: Optional[str]) -> None:
    request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_user_id(user_id: Optional[str]) -> None:
    user_id_var.set(user_id)


def get_user_id() -> Optional[str]:
    return user_id_var.get()


def get_agent_type() -> Optional[str]:
    return agent_type_var.get()


@contextmanager
def gateway_request_context(user_id: str, agent_type: str) -> Iterator[None]:
    """
    Bind user and agent type to every log entry emitted while a gateway
    request is processed. Previous values are restored on exit so that
    nested or concurrent tasks keep their own context.
    """
    user_token = user_id_var.set(user_id)
    agent_token = agent_type_var.set(agent_type)
    try:
        yield
    finally:
        agent_type_var.reset(agent_token)
        user_id_var.reset(user_token)


def generate_request_id() -> str:
    """
    Generate a new unique request ID.

    Returns:
        UUID4 string
    """
    return str(uuid.uuid4())


def generate_trace_id() -> str:
    return str(uuid.uuid4())
