"""
Personalization profile, request/result and pattern-analysis models.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from study_buddy.shared.utils import ensure_aware, new_id, utcnow


class LearningStyleType(str, Enum):
    VISUAL = "visual"
    AUDITORY = "auditory"
    KINESTHETIC = "kinesthetic"
    READING_WRITING = "reading_writing"


class AdaptationType(str, Enum):
    SIMPLIFY = "simplify"
    ENGAGEMENT_BOOST = "engagement_boost"
    DIFFICULTY_ADJUSTMENT = "difficulty_adjustment"
    RESPONSE_OPTIMIZATION = "response_optimization"
    STYLE_MATCH = "style_match"


class PersonalizationStatus(str, Enum):
    COMPLETED = "completed"
    # Low confidence: callers treat the result as "no adaptation applied"
    PARTIAL = "partial"


class LearningStyle(BaseModel):
    type: LearningStyleType = LearningStyleType.READING_WRITING
    strength: float = Field(default=0.5, ge=0.0, le=1.0)
    preferences: Dict[str, Any] = Field(default_factory=dict)


class PerformanceMetrics(BaseModel):
    """Rolling averages over the user's interactions (None until first sample)."""
    interaction_count: int = Field(default=0, ge=0)
    average_satisfaction: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    average_accuracy: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    average_engagement: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    average_response_time_ms: Optional[float] = Field(default=None, ge=0.0)


class AdaptationRecord(BaseModel):
    interaction_id: str
    type: AdaptationType
    description: str = ""
    success: Optional[bool] = None
    impact: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)


class AdaptationHistory(BaseModel):
    adaptation_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    log: List[AdaptationRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def _success_within_count(self) -> "AdaptationHistory":
        if self.success_count > self.adaptation_count:
            raise ValueError("success_count cannot exceed adaptation_count")
        return self

    @property
    def success_rate(self) -> float:
        if not self.adaptation_count:
            return 0.0
        return self.success_count / self.adaptation_count


class PersonalizationProfile(BaseModel):
    """Per-user persistent record of style, preferences and adaptation history."""
    user_id: str = Field(min_length=1)
    learning_style: LearningStyle = Field(default_factory=LearningStyle)
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    adaptation_history: AdaptationHistory = Field(default_factory=AdaptationHistory)
    # Only explicit user choices live here; adaptations never write to it
    preferences: Dict[str, str] = Field(default_factory=dict)
    effective_patterns: List[str] = Field(default_factory=list)
    style_signals: Dict[str, int] = Field(default_factory=dict)
    processed_interaction_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SessionSignals(BaseModel):
    """Signals observed for the current session or interaction."""
    satisfaction: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    accuracy: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    engagement: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    response_time_ms: Optional[float] = Field(default=None, ge=0.0)


class PersonalizationRequest(BaseModel):
    user_id: str = Field(min_length=1)
    interaction_id: Optional[str] = None
    query: str = ""
    subject: Optional[str] = None
    signals: SessionSignals = Field(default_factory=SessionSignals)
    session_history_length: Optional[int] = Field(default=None, ge=0)


class PersonalizationTargets(BaseModel):
    format: str = "structured"  # structured, visual_outline, conversational, interactive
    style: str = "encouraging"
    pace: str = "moderate"  # slow, moderate, fast
    complexity: str = "intermediate"  # basic, intermediate, advanced
    response_length: str = "medium"  # short, medium, long
    include_examples: bool = False

    def as_preferences(self) -> Dict[str, Any]:
        """Flatten into the key/value hints handed to generation."""
        prefs = self.model_dump()
        prefs["include_examples"] = "yes" if self.include_examples else ""
        return prefs


class Adaptation(BaseModel):
    type: AdaptationType
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class PersonalizationResult(BaseModel):
    # Kept out of API payloads; read it from the attribute
    user_profile: PersonalizationProfile = Field(exclude=True)
    personalization: PersonalizationTargets
    adaptations: List[Adaptation] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    status: PersonalizationStatus

    @property
    def applied(self) -> bool:
        return self.status == PersonalizationStatus.COMPLETED


class LearningProgress(BaseModel):
    user_id: str
    interaction_count: int = 0
    average_satisfaction: Optional[float] = None
    average_accuracy: Optional[float] = None
    adaptation_success_rate: float = 0.0
    learning_style: LearningStyleType = LearningStyleType.READING_WRITING
    trend: str = "stable"


# Pattern recognition

class PatternType(str, Enum):
    BEHAVIORAL = "behavioral"
    FEEDBACK = "feedback"
    PERFORMANCE = "performance"
    QUALITY = "quality"
    ENGAGEMENT = "engagement"
    SATISFACTION = "satisfaction"
    CORRECTION = "correction"
    ABANDONMENT = "abandonment"


class RecognitionMethod(str, Enum):
    FREQUENCY = "frequency"
    THRESHOLD = "threshold"


class TimeRange(BaseModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _ordered(self) -> "TimeRange":
        if self.end < self.start:
            raise ValueError("time range end precedes start")
        return self

    @property
    def previous(self) -> "TimeRange":
        """The window of equal length immediately before this one."""
        return TimeRange(start=self.start - (self.end - self.start), end=self.start)


class PatternAnalysisRequest(BaseModel):
    user_id: str = Field(min_length=1)
    pattern_type: Optional[PatternType] = None  # None analyzes every type
    time_range: Optional[TimeRange] = None
    recognition_method: RecognitionMethod = RecognitionMethod.FREQUENCY
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    max_patterns: int = Field(default=10, gt=0)
    include_correlations: bool = False


class RecognizedPattern(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    pattern_type: PatternType
    description: str
    frequency: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    trend: str = "stable"  # improving, stable, declining
    data_points: int = 0
    insights: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


class PatternAnalysisResult(BaseModel):
    user_id: str
    patterns: List[RecognizedPattern] = Field(default_factory=list)
    data_points: int = 0
    correlations: Dict[str, float] = Field(default_factory=dict)
    time_range: Optional[TimeRange] = None
    processed_at: datetime = Field(default_factory=utcnow)


class PatternEvolution(BaseModel):
    user_id: str
    pattern_type: PatternType
    windows: List[TimeRange] = Field(default_factory=list)
    frequencies: List[float] = Field(default_factory=list)
    trend: str = "stable"
