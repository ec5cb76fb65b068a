"""
Models for stage coordination, orchestration requests/responses,
performance plans and compliance results.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field

from study_buddy.core.classifier import QueryClassification
from study_buddy.memory.models import CompressionLevel
from study_buddy.personalization.models import PersonalizationResult
from study_buddy.shared.models import TokenUsage
from study_buddy.shared.utils import new_id, utcnow
from study_buddy.validation.models import ValidationResult


class Stage(IntEnum):
    """Processing stages of one chat turn."""
    INPUT = 1
    CONTEXT = 2
    RESPONSE = 3  # generation followed by validation
    PERSONALIZATION = 4
    MONITORING = 5

    @property
    def label(self) -> str:
        return self.name.lower()


DEFAULT_DEPENDENCIES: Dict[Stage, List[Stage]] = {
    Stage.INPUT: [],
    Stage.CONTEXT: [Stage.INPUT],
    Stage.PERSONALIZATION: [Stage.INPUT],
    Stage.RESPONSE: [Stage.INPUT, Stage.CONTEXT, Stage.PERSONALIZATION],
    Stage.MONITORING: [Stage.RESPONSE],
}


class CoordinationStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CASCADING = "cascading"
    ADAPTIVE = "adaptive"


class HealthLevel(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=2, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    initial_delay_ms: int = Field(default=100, ge=0)

    def delay_seconds(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return self.initial_delay_ms * (self.backoff_multiplier ** attempt) / 1000


class StageConfig(BaseModel):
    stage: Stage
    enabled: bool = True
    required: bool = False
    priority: int = 0  # lower runs first within a dependency level
    dependencies: List[Stage] = Field(default_factory=list)
    timeout_ms: int = Field(default=5000, gt=0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)


class StageHealthStatus(BaseModel):
    stage: Stage
    healthy: bool = True
    last_check: Optional[datetime] = None
    response_time_ms: float = 0.0
    error_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    throughput: int = 0
    attempts: int = 0
    dependencies: List[Stage] = Field(default_factory=list)
    last_error: Optional[str] = None


class IntegrationHealthStatus(BaseModel):
    overall: HealthLevel
    stages: Dict[str, StageHealthStatus] = Field(default_factory=dict)
    healthy_count: int = 0
    total_count: int = 0
    mean_response_time_ms: float = 0.0
    recommendations: List[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utcnow)

    def is_healthy(self, stage: Stage) -> bool:
        status = self.stages.get(stage.label)
        return status.healthy if status else True


class StageResult(BaseModel):
    stage: Stage
    success: bool = False
    skipped: bool = False
    duration_ms: float = 0.0
    error: Optional[str] = None


class CoordinationResult(BaseModel):
    id: str = Field(default_factory=new_id)
    strategy: CoordinationStrategy
    success: bool
    stage_results: List[StageResult] = Field(default_factory=list)
    total_time_ms: float = 0.0
    parallel_efficiency: float = 1.0
    fallback_used: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    def result_for(self, stage: Stage) -> Optional[StageResult]:
        # Later entries supersede earlier ones (adaptive reruns)
        for result in reversed(self.stage_results):
            if result.stage == stage:
                return result
        return None

    @property
    def stages_run(self) -> List[str]:
        return [r.stage.label for r in self.stage_results if not r.skipped]


class OptimizationPlan(BaseModel):
    """Generation parameters chosen for one request."""
    max_tokens: int
    temperature: float
    context_level_cap: Optional[CompressionLevel] = None
    preferred_provider: Optional[str] = None
    cacheable: bool = False
    cache_key: Optional[str] = None
    p50_ms: Optional[float] = None
    p95_ms: Optional[float] = None
    applied: List[str] = Field(default_factory=list)


class ComplianceResult(BaseModel):
    passed: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)
    violations: List[str] = Field(default_factory=list)
    storage_allowed: bool = True
    redacted_message: Optional[str] = None
    pii_types: List[str] = Field(default_factory=list)


class ChatRequest(BaseModel):
    user_id: str = Field(min_length=1)
    message: str = Field(min_length=1)
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    chat_type: str = "general"
    is_personal_query: bool = False
    subject: Optional[str] = None
    context_level: Optional[CompressionLevel] = None
    token_limit: Optional[int] = Field(default=None, ge=0)
    goals: List[str] = Field(default_factory=list)
    interaction_id: str = Field(default_factory=new_id)


class OrchestrationMetadata(BaseModel):
    strategy: Optional[CoordinationStrategy] = None
    stages: List[StageResult] = Field(default_factory=list)
    health: Optional[HealthLevel] = None
    total_time_ms: float = 0.0
    context_level: Optional[CompressionLevel] = None
    context_tokens: int = 0
    optimizations: List[str] = Field(default_factory=list)
    compliance: Optional[ComplianceResult] = None
    cached: bool = False


class ChatResponse(BaseModel):
    content: str
    interaction_id: str
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    model_used: Optional[str] = None
    provider_used: Optional[str] = None
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)
    latency_ms: float = 0.0
    validation: Optional[ValidationResult] = None
    personalization: Optional[PersonalizationResult] = None
    query_classification: Optional[QueryClassification] = None
    unvalidated: bool = False
    fallback: bool = False
    error: Optional[str] = None
    retry_after: Optional[int] = None
    metadata: OrchestrationMetadata = Field(default_factory=OrchestrationMetadata)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
