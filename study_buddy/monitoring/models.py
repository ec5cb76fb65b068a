"""
Study session, health and alert models for the real-time monitor.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field

from study_buddy.shared.utils import new_id, utcnow


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.INTERRUPTED)


class SessionHealthLevel(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(str, Enum):
    PERFORMANCE = "performance"
    QUALITY = "quality"
    ENGAGEMENT = "engagement"
    TECHNICAL = "technical"
    COMPLIANCE = "compliance"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StudySessionMetrics(BaseModel):
    total_messages: int = 0
    response_times_ms: List[float] = Field(default_factory=list)
    accuracy_score: float = Field(default=0.0, ge=0.0, le=1.0)
    accuracy_samples: int = 0
    engagement_score: float = Field(default=1.0, ge=0.0, le=1.0)
    engagement_samples: int = 0
    satisfaction_score: float = Field(default=0.0, ge=0.0, le=1.0)
    satisfaction_samples: int = 0
    error_count: int = 0
    error_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    learning_velocity: float = 0.0
    topics_covered: List[str] = Field(default_factory=list)
    context_switches: int = 0
    questions_asked: int = 0
    corrections_made: int = 0

    @property
    def average_response_time_ms(self) -> Optional[float]:
        if not self.response_times_ms:
            return None
        return sum(self.response_times_ms) / len(self.response_times_ms)


class SessionHealthStatus(BaseModel):
    overall: SessionHealthLevel = SessionHealthLevel.HEALTHY
    providers: Dict[str, bool] = Field(default_factory=dict)
    session_quality: float = Field(default=1.0, ge=0.0, le=1.0)
    error_count: int = 0
    warnings: List[str] = Field(default_factory=list)
    critical_issues: List[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utcnow)


class StudySessionEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    type: str  # message, error, warning, alert, status_change, feedback
    severity: str = "info"  # info, warning, error, critical
    description: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


class StudySessionContext(BaseModel):
    subject: Optional[str] = None
    learning_goals: List[str] = Field(default_factory=list)
    session_type: str = "exploration"  # practice, review, exploration, assessment
    difficulty: Optional[str] = None


class MonitoringAlert(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    resolved: bool = False
    action_required: bool = False
    suggested_actions: List[str] = Field(default_factory=list)


class StudySession(BaseModel):
    session_id: str = Field(default_factory=new_id)
    user_id: str = Field(min_length=1)
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    status: SessionStatus = SessionStatus.ACTIVE
    metrics: StudySessionMetrics = Field(default_factory=StudySessionMetrics)
    health: SessionHealthStatus = Field(default_factory=SessionHealthStatus)
    events: List[StudySessionEvent] = Field(default_factory=list)
    alerts: List[MonitoringAlert] = Field(default_factory=list)
    context: StudySessionContext = Field(default_factory=StudySessionContext)
    last_activity: datetime = Field(default_factory=utcnow)

    def close(self, status: SessionStatus, when: Optional[datetime] = None):
        """Move to a terminal state. end_time is set once and never cleared."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        self.status = status
        if self.end_time is None:
            self.end_time = when or utcnow()

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or utcnow()
        return max(0.0, (end - self.start_time).total_seconds())


class InteractionMetrics(BaseModel):
    """What the pipeline reports to the monitor after each turn."""
    response_time_ms: float = Field(default=0.0, ge=0.0)
    accuracy: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    engagement: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    error: bool = False
    subject: Optional[str] = None
    is_question: bool = True


class StudyEffectivenessReport(BaseModel):
    session_id: str
    session_effectiveness: float = Field(ge=0.0, le=1.0)
    learning_velocity: float = 0.0
    retention_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    engagement_score: float = Field(default=0.0, ge=0.0, le=1.0)
    satisfaction_trend: str = "stable"
    adaptation_success: float = Field(default=0.0, ge=0.0, le=1.0)
    duration_minutes: float = 0.0
    recommended_actions: List[str] = Field(default_factory=list)
    next_session_preparation: List[str] = Field(default_factory=list)


class MonitoringStatistics(BaseModel):
    active_sessions: int = 0
    paused_sessions: int = 0
    closed_sessions: int = 0
    average_session_minutes: float = 0.0
    average_session_quality: float = 0.0
    open_alerts: int = 0
    sessions_by_health: Dict[str, int] = Field(default_factory=dict)
