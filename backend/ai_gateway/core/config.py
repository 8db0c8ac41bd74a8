"""
Gateway configuration.

Values come from environment variables prefixed with ``AI_GATEWAY_``
(optionally loaded from a ``.env`` file in the repository root) and are
validated by pydantic at startup.

Examples:
- AI_GATEWAY_RATE_LIMIT_STRATEGY=token_bucket
- AI_GATEWAY_CACHE_MAX_SIZE=5000
- AI_GATEWAY_ANTHROPIC_API_KEY=...
"""
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from ai_gateway.core.logging import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "AI_GATEWAY_"

RateLimitStrategy = Literal["token_bucket", "sliding_window", "fixed_window"]


class GatewaySettings(BaseModel):
    """Tunables for the rate limiter, cache, providers, retries and cost optimizer."""

    # Rate limiting
    rate_limit_strategy: RateLimitStrategy = "sliding_window"
    rate_limit_cleanup_interval_seconds: float = Field(300.0, gt=0)
    rate_limit_retention_seconds: float = Field(3600.0, gt=0)

    # Semantic cache
    cache_max_size: int = Field(10000, ge=1)
    cache_default_ttl_seconds: float = Field(24 * 60 * 60, gt=0)
    cache_similarity_threshold: float = Field(0.85, gt=0.0, le=1.0)
    cache_embedding_dimensions: int = Field(100, ge=8)
    cache_cleanup_interval_seconds: float = Field(3600.0, gt=0)
    cache_cross_user_lookup: bool = False

    # Providers
    provider_timeout_seconds: float = Field(30.0, gt=0)
    health_check_interval_seconds: float = Field(300.0, gt=0)
    health_check_failure_threshold: int = Field(3, ge=1)
    anthropic_api_key: Optional[str] = None
    anthropic_api_base: str = "https://api.anthropic.com/v1"
    openai_api_key: Optional[str] = None
    openai_api_base: str = "https://api.openai.com/v1"
    use_fake_providers: Optional[bool] = None

    # Circuit breaker
    breaker_failure_threshold: int = Field(5, ge=1)
    breaker_monitor_window_seconds: float = Field(60.0, gt=0)
    breaker_reset_timeout_seconds: float = Field(30.0, gt=0)

    # Cost optimizer
    peak_hours_start: int = Field(9, ge=0, le=23)
    peak_hours_end: int = Field(17, ge=0, le=24)
    cost_cleanup_interval_seconds: float = Field(3600.0, gt=0)

    # Batch processing
    max_batch_size: int = Field(10, ge=1)
    max_concurrent_requests: int = Field(10, ge=1)

    # Error tracking
    error_retention_days: float = Field(7.0, gt=0)
    error_cleanup_interval_seconds: float = Field(24 * 60 * 60, gt=0)

    @field_validator("anthropic_api_key", "openai_api_key")
    @classmethod
    def blank_key_is_missing(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def resolve_fake_providers(self) -> "GatewaySettings":
        # Without any real credentials the gateway runs on fake transports.
        if self.use_fake_providers is None:
            self.use_fake_providers = not (self.anthropic_api_key or self.openai_api_key)
        return self


def _read_env(environ: Dict[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in GatewaySettings.model_fields:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            values[name] = raw
    return values


def load_settings(
    environ: Optional[Dict[str, str]] = None,
    env_file: Optional[Path] = None,
) -> GatewaySettings:
    """
    Build settings from the environment.

    Args:
        environ: Mapping to read from (defaults to os.environ)
        env_file: Optional .env file loaded before reading os.environ

    Raises:
        pydantic.ValidationError: If a value cannot be parsed
    """
    if environ is None:
        env_path = env_file or Path(__file__).parent.parent.parent.parent / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.info("env_loaded", env_path=str(env_path))
        environ = dict(os.environ)

    settings = GatewaySettings.model_validate(_read_env(environ))
    logger.info(
        "gateway_settings_loaded",
        rate_limit_strategy=settings.rate_limit_strategy,
        cache_max_size=settings.cache_max_size,
        fake_providers=settings.use_fake_providers,
    )
    return settings
