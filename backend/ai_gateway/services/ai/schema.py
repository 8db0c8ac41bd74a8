"""
Pydantic models for gateway requests, responses and the model/provider catalog.

Requests are immutable once submitted; the cost optimizer produces a new
request via `model_copy(update=...)` instead of mutating the caller's.
"""
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AgentType(str, Enum):
    """Coaching functions served by the gateway."""
    ASSESSMENT_ANALYST = "assessment_analyst"
    LEARNING_COACH = "learning_coach"
    PROGRESS_TRACKER = "progress_tracker"
    INSIGHT_GENERATOR = "insight_generator"
    COMMUNICATION_ADVISOR = "communication_advisor"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class UserTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class Urgency(str, Enum):
    IMMEDIATE = "immediate"
    NORMAL = "normal"
    BATCH = "batch"


class ConversationMessage(BaseModel):
    role: str
    content: str


class RequestContext(BaseModel):
    """Optional caller context forwarded to the provider."""

    conversation_history: List[ConversationMessage] = Field(default_factory=list)
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AIRequest(BaseModel):
    """
    A request for AI-generated content.

    `model_hint`, `compress_input`, `deferred` and `aggressive_caching` are
    set by the cost optimizer; callers normally leave them unset.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = Field(..., min_length=1)
    agent_type: AgentType
    input_data: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    max_tokens: Optional[int] = Field(None, gt=0)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    context: Optional[RequestContext] = None

    model_hint: Optional[str] = None
    compress_input: bool = False
    deferred: bool = False
    aggressive_caching: bool = False

    @field_validator("user_id")
    @classmethod
    def strip_user_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("user_id must not be blank")
        return value


class AIResponse(BaseModel):
    """
    Gateway response for a single request.

    Live responses always cost something; only cache hits are free.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str
    output: Any
    tokens_used: int = Field(..., ge=0)
    processing_time_ms: float = Field(..., ge=0.0)
    cost_cents: float = Field(..., ge=0.0)
    cache_hit: bool = False
    confidence: float = Field(..., ge=0.0, le=1.0)
    provider: str
    model: str
    warnings: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_cost(self) -> "AIResponse":
        if self.cache_hit and self.cost_cents != 0:
            raise ValueError("cache hits must have zero cost")
        if not self.cache_hit and self.cost_cents <= 0:
            raise ValueError("live responses must have a positive cost")
        return self


class ProviderRequest(BaseModel):
    """Uniform transport contract input."""

    prompt: str
    model: str
    max_tokens: int = Field(..., gt=0)
    temperature: float = Field(0.5, ge=0.0, le=2.0)
    system_prompt: Optional[str] = None
    context: Optional[List[str]] = None


class ProviderResponse(BaseModel):
    """Uniform transport contract output. `cost` is in dollars."""

    content: str
    tokens_used: int = Field(0, ge=0)
    processing_time_ms: float = Field(0.0, ge=0.0)
    cost: float = Field(0.0, ge=0.0)
    provider: str
    model: str


class AIModel(BaseModel):
    """Static catalog entry; not mutated at runtime."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    provider: str
    max_tokens: int
    cost_per_token: float = Field(..., ge=0.0)
    strengths: List[str] = Field(default_factory=list)
    recommended_for: List[AgentType] = Field(default_factory=list)
    quality: float = Field(0.8, ge=0.0, le=1.0)


class ProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    priority: int = 1
    reliability: float = Field(..., ge=0.0, le=1.0)
    base_latency_ms: float = Field(..., gt=0.0)
    models: List[str] = Field(default_factory=list)


class RetryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(3, ge=1)
    base_delay_seconds: float = Field(1.0, ge=0.0)
    max_delay_seconds: float = Field(10.0, ge=0.0)
    backoff_multiplier: float = Field(2.0, ge=1.0)


class AgentConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    default_model: str
    fallback_model: str
    max_tokens: int
    temperature: float
    priority: Priority
    cache_enabled: bool = True
    cache_ttl_seconds: float
    retry: RetryConfig = Field(default_factory=RetryConfig)
    system_prompt: str
