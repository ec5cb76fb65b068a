"""
Pydantic models for interactions, memories, knowledge sources and context bundles.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator

from study_buddy.shared.models import TokenUsage
from study_buddy.shared.utils import clamp01, new_id, utcnow


class CompressionLevel(str, Enum):
    """Context fidelity tiers, lowest to highest."""
    LIGHT = "light"
    RECENT = "recent"
    SELECTIVE = "selective"
    FULL = "full"

    @property
    def rank(self) -> int:
        return LEVEL_ORDER.index(self)

    def at_least(self, other: "CompressionLevel") -> "CompressionLevel":
        return self if self.rank >= other.rank else other


LEVEL_ORDER = [
    CompressionLevel.LIGHT,
    CompressionLevel.RECENT,
    CompressionLevel.SELECTIVE,
    CompressionLevel.FULL,
]


class RetentionClass(str, Enum):
    """How long a memory should be kept relevant."""
    SESSION = "session"
    SHORT_TERM = "short_term"
    MEDIUM_TERM = "medium_term"
    LONG_TERM = "long_term"


class PerformanceSnapshot(BaseModel):
    """Per-interaction performance signals."""
    response_time_ms: float = Field(default=0.0, ge=0.0)
    accuracy_estimate: float = Field(default=0.5, ge=0.0, le=1.0)
    engagement_estimate: float = Field(default=0.5, ge=0.0, le=1.0)


class Interaction(BaseModel):
    """One user turn plus one assistant turn."""
    id: str = Field(default_factory=new_id)
    user_id: str = Field(min_length=1)
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    query: str
    response: str
    subject: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    performance: PerformanceSnapshot = Field(default_factory=PerformanceSnapshot)

    model_config = {"frozen": True}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Interaction":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            session_id=row.get("session_id"),
            conversation_id=row.get("conversation_id"),
            query=row["query"],
            response=row["response"],
            subject=row.get("subject"),
            timestamp=row["timestamp"],
            performance=row.get("performance") or {},
        )


class Memory(BaseModel):
    """A durable, retrievable record derived from an interaction."""
    id: str = Field(default_factory=new_id)
    user_id: str = Field(min_length=1)
    conversation_id: Optional[str] = None
    memory_type: str = "learning_interaction"
    content: str
    quality_score: float = Field(default=0.5, ge=0.0, le=1.0)
    relevance_score: float = Field(default=0.5, ge=0.0, le=1.0)
    retention: RetentionClass = RetentionClass.SHORT_TERM
    tags: List[str] = Field(default_factory=list)
    linked_memory_ids: List[str] = Field(default_factory=list)
    access_count: int = Field(default=0, ge=0)
    last_accessed: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("quality_score", "relevance_score", mode="before")
    @classmethod
    def _clamp(cls, v):
        return clamp01(float(v))

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Memory":
        data = {k: v for k, v in row.items() if k != "embedding"}
        data["tags"] = data.get("tags") or []
        data["linked_memory_ids"] = data.get("linked_memory_ids") or []
        return cls(**data)


class KnowledgeSource(BaseModel):
    """A reference fact or document. Read-only for the pipeline."""
    id: str = Field(default_factory=new_id)
    title: str = ""
    subjects: List[str] = Field(default_factory=list)
    reliability_score: float = Field(default=0.8, ge=0.0, le=1.0)
    educational_value: float = Field(default=0.5, ge=0.0, le=1.0)
    content: str
    # Query relevance, filled in on search results only
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0, exclude=True)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "KnowledgeSource":
        return cls(
            id=row["id"],
            title=row.get("title") or "",
            subjects=row.get("subjects") or [],
            reliability_score=row["reliability_score"],
            educational_value=row["educational_value"],
            content=row["content"],
        )


class KnowledgeFilters(BaseModel):
    """Filters applied before knowledge search ranking."""
    min_reliability: float = Field(default=0.0, ge=0.0, le=1.0)
    min_educational_value: float = Field(default=0.0, ge=0.0, le=1.0)
    subjects: List[str] = Field(default_factory=list)
    limit: int = Field(default=5, gt=0)


class ContextBundle(BaseModel):
    """Budget-bounded context handed to generation. Built per request, never persisted."""
    compression_level: CompressionLevel
    requested_level: CompressionLevel
    token_limit: int
    memory_ids: List[str] = Field(default_factory=list)
    knowledge_source_ids: List[str] = Field(default_factory=list)
    history_turns: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    text: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.text
