"""
Static model, provider and agent catalog.

Costs are dollars per token. Cache TTLs are seconds.
"""
from typing import Dict, List, Optional

from ai_gateway.services.ai.schema import (
    AgentConfig,
    AgentType,
    AIModel,
    Priority,
    ProviderConfig,
    RetryConfig,
)

CLAUDE_SONNET = "claude-3-5-sonnet-20241022"
CLAUDE_HAIKU = "claude-3-haiku-20240307"
GPT_4O = "gpt-4o"
GPT_35_TURBO = "gpt-3.5-turbo"

HOUR = 60 * 60

AI_MODELS: List[AIModel] = [
    AIModel(
        id=CLAUDE_SONNET,
        name="Claude 3.5 Sonnet",
        provider="claude",
        max_tokens=200000,
        cost_per_token=0.000003,
        strengths=["reasoning", "analysis", "empathy", "complex_instructions"],
        recommended_for=[
            AgentType.ASSESSMENT_ANALYST,
            AgentType.INSIGHT_GENERATOR,
            AgentType.COMMUNICATION_ADVISOR,
        ],
        quality=0.95,
    ),
    AIModel(
        id=CLAUDE_HAIKU,
        name="Claude 3 Haiku",
        provider="claude",
        max_tokens=200000,
        cost_per_token=0.00000025,
        strengths=["speed", "efficiency", "simple_tasks"],
        recommended_for=[AgentType.PROGRESS_TRACKER],
        quality=0.75,
    ),
    AIModel(
        id=GPT_4O,
        name="GPT-4 Omni",
        provider="openai",
        max_tokens=128000,
        cost_per_token=0.0000025,
        strengths=["structured_output", "function_calling", "multimodal"],
        recommended_for=[AgentType.LEARNING_COACH, AgentType.PROGRESS_TRACKER],
        quality=0.9,
    ),
    AIModel(
        id=GPT_35_TURBO,
        name="GPT-3.5 Turbo",
        provider="openai",
        max_tokens=16385,
        cost_per_token=0.0000005,
        strengths=["speed", "cost", "general_tasks"],
        recommended_for=[AgentType.PROGRESS_TRACKER],
        quality=0.7,
    ),
]

AI_PROVIDERS: List[ProviderConfig] = [
    ProviderConfig(
        name="claude",
        priority=1,
        reliability=0.98,
        base_latency_ms=1500,
        models=[m.id for m in AI_MODELS if m.provider == "claude"],
    ),
    ProviderConfig(
        name="openai",
        priority=2,
        reliability=0.96,
        base_latency_ms=1000,
        models=[m.id for m in AI_MODELS if m.provider == "openai"],
    ),
    ProviderConfig(
        name="local",
        priority=3,
        reliability=0.85,
        base_latency_ms=3000,
        models=[],
    ),
]

SYSTEM_PROMPTS: Dict[AgentType, str] = {
    AgentType.ASSESSMENT_ANALYST: (
        "You are an expert relationship assessment analyst. Analyze user responses "
        "to provide accurate, empathetic insights about their relationship readiness, "
        "communication patterns, and growth opportunities. Be supportive and focus on "
        "actionable improvements."
    ),
    AgentType.LEARNING_COACH: (
        "You are a personalized learning coach specializing in relationship development. "
        "Create customized learning paths that match the user's goals, current skill level, "
        "and time constraints. Focus on practical, evidence-based practices."
    ),
    AgentType.PROGRESS_TRACKER: (
        "You are a progress tracking specialist who identifies patterns in user behavior "
        "and growth. Analyze activity data to provide insights about consistency, "
        "improvement trends, and milestone achievement."
    ),
    AgentType.INSIGHT_GENERATOR: (
        "You are a relationship insight generator who provides daily, personalized guidance. "
        "Create relevant, actionable insights based on user context and recent activity."
    ),
    AgentType.COMMUNICATION_ADVISOR: (
        "You are an expert communication advisor specializing in conflict resolution and "
        "relationship skills. Provide specific, practical advice for challenging "
        "interpersonal situations."
    ),
}

_STANDARD_RETRY = RetryConfig(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=10.0, backoff_multiplier=2.0)

AGENT_CONFIGS: Dict[AgentType, AgentConfig] = {
    AgentType.ASSESSMENT_ANALYST: AgentConfig(
        default_model=CLAUDE_SONNET,
        fallback_model=GPT_4O,
        max_tokens=4000,
        temperature=0.3,
        priority=Priority.HIGH,
        cache_ttl_seconds=24 * HOUR,
        retry=_STANDARD_RETRY,
        system_prompt=SYSTEM_PROMPTS[AgentType.ASSESSMENT_ANALYST],
    ),
    AgentType.LEARNING_COACH: AgentConfig(
        default_model=GPT_4O,
        fallback_model=CLAUDE_SONNET,
        max_tokens=6000,
        temperature=0.5,
        priority=Priority.HIGH,
        cache_ttl_seconds=12 * HOUR,
        retry=_STANDARD_RETRY,
        system_prompt=SYSTEM_PROMPTS[AgentType.LEARNING_COACH],
    ),
    AgentType.PROGRESS_TRACKER: AgentConfig(
        default_model=CLAUDE_HAIKU,
        fallback_model=GPT_35_TURBO,
        max_tokens=2000,
        temperature=0.2,
        priority=Priority.MEDIUM,
        cache_ttl_seconds=6 * HOUR,
        retry=RetryConfig(max_attempts=2, base_delay_seconds=0.5, max_delay_seconds=5.0, backoff_multiplier=2.0),
        system_prompt=SYSTEM_PROMPTS[AgentType.PROGRESS_TRACKER],
    ),
    AgentType.INSIGHT_GENERATOR: AgentConfig(
        default_model=CLAUDE_SONNET,
        fallback_model=GPT_4O,
        max_tokens=3000,
        temperature=0.7,
        priority=Priority.MEDIUM,
        cache_ttl_seconds=4 * HOUR,
        retry=RetryConfig(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=8.0, backoff_multiplier=2.0),
        system_prompt=SYSTEM_PROMPTS[AgentType.INSIGHT_GENERATOR],
    ),
    AgentType.COMMUNICATION_ADVISOR: AgentConfig(
        default_model=CLAUDE_SONNET,
        fallback_model=GPT_4O,
        max_tokens=5000,
        temperature=0.4,
        priority=Priority.HIGH,
        cache_ttl_seconds=8 * HOUR,
        retry=_STANDARD_RETRY,
        system_prompt=SYSTEM_PROMPTS[AgentType.COMMUNICATION_ADVISOR],
    ),
}

_MODELS_BY_ID: Dict[str, AIModel] = {m.id: m for m in AI_MODELS}
_PROVIDERS_BY_NAME: Dict[str, ProviderConfig] = {p.name: p for p in AI_PROVIDERS}


def get_model(model_id: str) -> Optional[AIModel]:
    return _MODELS_BY_ID.get(model_id)


def get_provider_config(name: str) -> Optional[ProviderConfig]:
    return _PROVIDERS_BY_NAME.get(name)


def get_agent_config(agent_type: AgentType) -> AgentConfig:
    return AGENT_CONFIGS[agent_type]


def models_for_agent(agent_type: AgentType) -> List[AIModel]:
    """Models whose `recommended_for` includes the agent type, in catalog order."""
    return [m for m in AI_MODELS if agent_type in m.recommended_for]


def suitable_models(agent_type: AgentType) -> List[AIModel]:
    """
    Models an agent may run on: its `recommended_for` models plus its
    configured default and fallback, even when those are not listed.
    """
    config = AGENT_CONFIGS[agent_type]
    candidates = {m.id: m for m in models_for_agent(agent_type)}
    for model_id in (config.default_model, config.fallback_model):
        candidate = _MODELS_BY_ID.get(model_id)
        if candidate is not None:
            candidates[candidate.id] = candidate
    return list(candidates.values())


def is_suitable_model(model_id: Optional[str], agent_type: AgentType) -> bool:
    return any(m.id == model_id for m in suitable_models(agent_type))


def cheaper_alternatives(model: AIModel, agent_type: AgentType) -> List[AIModel]:
    """Models suitable for the agent that cost less than `model`, cheapest first."""
    cheaper = [m for m in suitable_models(agent_type) if m.cost_per_token < model.cost_per_token]
    return sorted(cheaper, key=lambda m: m.cost_per_token)
