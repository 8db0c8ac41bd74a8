"""
Tests for environment-driven gateway settings.
"""
import os

import pytest
from pydantic import ValidationError

from ai_gateway.core.config import GatewaySettings, load_settings


def test_defaults():
    settings = GatewaySettings()

    assert settings.rate_limit_strategy == "sliding_window"
    assert settings.cache_max_size == 10000
    assert settings.cache_similarity_threshold == 0.85
    assert settings.provider_timeout_seconds == 30.0
    assert settings.health_check_failure_threshold == 3
    assert settings.breaker_failure_threshold == 5
    assert (settings.peak_hours_start, settings.peak_hours_end) == (9, 17)


def test_fake_providers_without_keys():
    assert GatewaySettings().use_fake_providers is True
    assert GatewaySettings(openai_api_key="sk-test").use_fake_providers is False
    assert GatewaySettings(openai_api_key="sk-test", use_fake_providers=True).use_fake_providers is True


def test_blank_key_is_treated_as_missing():
    settings = GatewaySettings(anthropic_api_key="   ")

    assert settings.anthropic_api_key is None
    assert settings.use_fake_providers is True


def test_load_from_environment():
    settings = load_settings(environ={
        "AI_GATEWAY_RATE_LIMIT_STRATEGY": "token_bucket",
        "AI_GATEWAY_CACHE_MAX_SIZE": "500",
        "AI_GATEWAY_CACHE_CROSS_USER_LOOKUP": "true",
        "AI_GATEWAY_PROVIDER_TIMEOUT_SECONDS": "12.5",
        "UNRELATED": "ignored",
    })

    assert settings.rate_limit_strategy == "token_bucket"
    assert settings.cache_max_size == 500
    assert settings.cache_cross_user_lookup is True
    assert settings.provider_timeout_seconds == 12.5


def test_env_file_is_loaded(tmp_path, monkeypatch):
    clean = {k: v for k, v in os.environ.items() if not k.startswith("AI_GATEWAY_")}
    monkeypatch.setattr(os, "environ", clean)
    env_file = tmp_path / ".env"
    env_file.write_text("AI_GATEWAY_MAX_BATCH_SIZE=25\n")

    settings = load_settings(env_file=env_file)

    assert settings.max_batch_size == 25


@pytest.mark.parametrize(
    "env",
    [
        {"AI_GATEWAY_RATE_LIMIT_STRATEGY": "leaky_bucket"},
        {"AI_GATEWAY_CACHE_MAX_SIZE": "0"},
        {"AI_GATEWAY_CACHE_SIMILARITY_THRESHOLD": "1.5"},
        {"AI_GATEWAY_PEAK_HOURS_START": "24"},
    ],
)
def test_invalid_values_are_rejected(env):
    with pytest.raises(ValidationError):
        load_settings(environ=env)
