"""
Feedback models and correction categories.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from pydantic import BaseModel, Field

from study_buddy.shared.utils import new_id, utcnow


class FeedbackSource(str, Enum):
    EXPLICIT = "explicit"
    IMPLICIT = "implicit"
    HYBRID = "hybrid"


class ExplicitFeedback(BaseModel):
    """What the student told us."""
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    corrections: List[str] = Field(default_factory=list)
    text: Optional[str] = None
    flags: List[str] = Field(default_factory=list)


class ImplicitFeedback(BaseModel):
    """What the student's behaviour told us."""
    time_spent_ms: float = Field(default=0.0, ge=0.0)
    scroll_depth: float = Field(default=0.0, ge=0.0, le=1.0)
    follow_up_questions: int = Field(default=0, ge=0)
    corrections_count: int = Field(default=0, ge=0)
    abandonment: bool = False


class FeedbackRequest(BaseModel):
    user_id: str = Field(min_length=1)
    interaction_id: str = Field(min_length=1)
    session_id: Optional[str] = None
    source: FeedbackSource
    explicit: Optional[ExplicitFeedback] = None
    implicit: Optional[ImplicitFeedback] = None


class Feedback(BaseModel):
    """One feedback event. Immutable."""
    id: str = Field(default_factory=new_id)
    user_id: str
    session_id: Optional[str] = None
    interaction_id: str
    source: FeedbackSource
    explicit: Optional[ExplicitFeedback] = None
    implicit: Optional[ImplicitFeedback] = None
    quality_score: float = Field(ge=0.0, le=1.0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @property
    def rating(self) -> Optional[int]:
        return self.explicit.rating if self.explicit else None

    @property
    def corrections(self) -> List[str]:
        return list(self.explicit.corrections) if self.explicit else []

    @property
    def abandoned(self) -> bool:
        return bool(self.implicit and self.implicit.abandonment)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Feedback":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            session_id=row.get("session_id"),
            interaction_id=row["interaction_id"],
            source=row["source"],
            explicit=row.get("explicit"),
            implicit=row.get("implicit"),
            quality_score=row["quality_score"],
            is_active=bool(row.get("is_active", 1)),
            created_at=row["created_at"],
        )


class FeedbackPatternSummary(BaseModel):
    total: int = 0
    by_sentiment: Dict[str, int] = Field(default_factory=dict)
    by_source: Dict[str, int] = Field(default_factory=dict)
    top_correction_categories: List[Tuple[str, int]] = Field(default_factory=list)
    average_quality: float = 0.0
    abandonment_rate: float = 0.0


class SatisfactionTrend(BaseModel):
    user_id: str
    average: float = 0.0
    previous_average: Optional[float] = None
    trend: str = "stable"  # improving, stable, declining
    sample_size: int = 0


class CommonIssue(BaseModel):
    category: str
    count: int
    example: str


# Keyword tables for classifying free-text corrections
CORRECTION_CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "factual_accuracy": (
        "factual", "factually", "wrong", "incorrect", "inaccurate", "false",
        "not true", "untrue", "mistake", "error", "made up", "hallucinat", "outdated",
    ),
    "clarity": ("confusing", "unclear", "hard to understand", "too complex", "jargon", "clarify"),
    "completeness": ("incomplete", "missing", "left out", "more detail", "too short", "didn't cover"),
    "relevance": ("irrelevant", "off topic", "not what i asked", "didn't answer", "unrelated"),
    "tone": ("rude", "condescending", "patronizing", "tone", "too casual"),
    "formatting": ("format", "formatting", "too long", "wall of text", "bullet", "layout"),
}


def categorize_correction(text: str) -> str:
    """First matching category, 'other' when nothing matches."""
    lowered = text.lower()
    for category, keywords in CORRECTION_CATEGORIES.items():
        if any(k in lowered for k in keywords):
            return category
    return "other"
