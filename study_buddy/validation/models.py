"""
Validation request and result models.
"""

from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field

from study_buddy.shared.models import ConversationTurn


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    TIMEOUT = "timeout"


class ResponseDraft(BaseModel):
    """A generated response awaiting validation."""
    content: str
    model_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    model_used: Optional[str] = None
    provider_used: Optional[str] = None


class ValidationRequest(BaseModel):
    """The request a response was generated for."""
    user_id: str
    query: str
    subject: Optional[str] = None
    conversation_history: List[ConversationTurn] = Field(default_factory=list)


class ValidationIssue(BaseModel):
    type: str  # factual, contradiction, appropriateness, quality, timeout
    severity: IssueSeverity
    description: str

    model_config = {"frozen": True}


class ClaimCheck(BaseModel):
    claim: str
    verified: bool
    passed: bool
    source_id: Optional[str] = None
    reason: str = ""

    model_config = {"frozen": True}


class FactCheckSummary(BaseModel):
    total_claims: int = 0
    verified_claims: int = 0
    passed_claims: int = 0
    failed_claims: int = 0
    pass_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    checks: List[ClaimCheck] = Field(default_factory=list)

    model_config = {"frozen": True}


class Contradiction(BaseModel):
    kind: str  # numeric, categorical
    statement: str
    earlier_statement: str

    model_config = {"frozen": True}


class ContradictionAnalysis(BaseModel):
    has_contradictions: bool = False
    contradictions: List[Contradiction] = Field(default_factory=list)

    model_config = {"frozen": True}


class ValidationResult(BaseModel):
    """Verdict for one response. Never mutated once produced."""
    is_valid: bool
    validation_score: float = Field(ge=0.0, le=1.0)
    fact_check: FactCheckSummary = Field(default_factory=FactCheckSummary)
    confidence_score: float = Field(ge=0.0, le=1.0)
    contradictions: ContradictionAnalysis = Field(default_factory=ContradictionAnalysis)
    issues: List[ValidationIssue] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    educational_value: float = Field(default=0.0, ge=0.0, le=1.0)
    processing_time_ms: float = 0.0

    model_config = {"frozen": True}

    @property
    def timed_out(self) -> bool:
        return any(i.severity == IssueSeverity.TIMEOUT for i in self.issues)
