"""
Query classifier: decides whether a question needs the student's own history,
which subject it belongs to and whether fresh web information would help.
"""

import re
from enum import Enum
from typing import Optional, List, Dict, Tuple

from pydantic import BaseModel, Field

from study_buddy.shared.logging import get_logger

logger = get_logger(__name__)


class QueryType(str, Enum):
    """How much of the student's own history a query needs."""
    PERSONALIZED = "personalized"
    GENERAL = "general"
    HYBRID = "hybrid"


class QueryClassification(BaseModel):
    """Query classification result."""
    query_type: QueryType
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    web_search_needed: bool = False
    subject: Optional[str] = None
    goals: List[str] = Field(default_factory=list)
    question_type: str = "conceptual"  # factual, conceptual, procedural, comparison, personal
    complexity: float = Field(default=0.0, ge=0.0, le=1.0)


SUBJECT_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "math": ("equation", "formula", "solve", "function", "theorem", "proof", "variable", "derivative"),
    "physics": ("force", "energy", "velocity", "mass", "acceleration", "light", "wave", "gravity"),
    "chemistry": ("molecule", "atom", "reaction", "element", "bond", "compound", "boil", "solution"),
    "biology": ("cell", "organism", "gene", "protein", "evolution", "dna", "photosynthesis", "organelle"),
    "history": ("war", "century", "empire", "revolution", "treaty", "era", "ended", "civilization"),
    "computer_science": ("algorithm", "complexity", "array", "function", "data", "search", "recursion", "memory"),
    "english": ("grammar", "sentence", "verb", "noun", "essay", "paragraph", "metaphor", "tone"),
}

PERSONAL_KEYWORDS = (
    "my ", "for me", "i struggle", "i'm struggling", "i keep", "remember when", "last time",
    "we discussed", "you told me", "my exam", "my grade", "my notes", "my progress", "help me study",
)

WEB_SEARCH_KEYWORDS = (
    "latest", "today", "current", "news", "recent", "this week", "this year", "right now", "nowadays",
)

DEEP_UNDERSTANDING_KEYWORDS = (
    "why", "explain in depth", "in detail", "prove", "derive", "intuition", "understand deeply",
    "what is the reason",
)

TECHNICAL_TERMS = frozenset(
    term for terms in SUBJECT_KEYWORDS.values() for term in terms
)

_WORD_RE = re.compile(r"[a-z0-9']+")


class QueryClassifier:
    """Classify queries with keyword heuristics."""

    def __init__(self, config: Optional[Dict] = None):
        self.config = config or {}
        self.hybrid_threshold = self.config.get("hybrid_threshold", 0.5)

    def classify(self, query: str, is_personal_query: bool = False, subject: Optional[str] = None) -> QueryClassification:
        """
        Classify a query.

        Args:
            query: Student message
            is_personal_query: Caller already knows the query is about the student
            subject: Subject chosen by the caller, if any

        Returns:
            QueryClassification
        """
        lowered = query.lower()
        words = _WORD_RE.findall(lowered)

        personal_hits = [k.strip() for k in PERSONAL_KEYWORDS if k in f"{lowered} "]
        if is_personal_query:
            personal_hits.append("flagged personal")

        subject = subject or self.detect_subject(lowered)
        complexity = self.complexity(query)

        if personal_hits and subject:
            query_type = QueryType.HYBRID
            confidence = 0.7
            reasoning = f"Personal cues ({', '.join(personal_hits)}) about {subject}"
        elif personal_hits:
            query_type = QueryType.PERSONALIZED
            confidence = min(0.95, 0.6 + 0.1 * len(personal_hits))
            reasoning = f"Personal cues: {', '.join(personal_hits)}"
        else:
            query_type = QueryType.GENERAL
            confidence = 0.8 if subject else 0.6
            reasoning = f"General {subject} question" if subject else "General question"

        goals = []
        if any(k in lowered for k in DEEP_UNDERSTANDING_KEYWORDS):
            goals.append("deep_understanding")
        if any(k in lowered for k in ("quiz me", "practice", "exercise", "test me")):
            goals.append("practice")

        classification = QueryClassification(
            query_type=query_type,
            confidence=confidence,
            reasoning=reasoning,
            web_search_needed=any(k in lowered for k in WEB_SEARCH_KEYWORDS),
            subject=subject,
            goals=goals,
            question_type=self.question_type(lowered, bool(personal_hits)),
            complexity=complexity,
        )
        logger.debug(
            f"Classified query as {query_type.value} ({len(words)} words)",
            extra={"action": "classify_query"},
        )
        return classification

    @staticmethod
    def detect_subject(lowered: str) -> Optional[str]:
        words = set(_WORD_RE.findall(lowered))
        best, best_hits = None, 0
        for subject, keywords in SUBJECT_KEYWORDS.items():
            hits = sum(1 for k in keywords if k in words or (" " in k and k in lowered))
            if hits > best_hits:
                best, best_hits = subject, hits
        return best

    @staticmethod
    def question_type(lowered: str, personal: bool) -> str:
        if personal:
            return "personal"
        if any(k in lowered for k in ("compare", "difference between", " vs ", "versus")):
            return "comparison"
        if any(k in lowered for k in ("how do i", "how to", "steps", "solve", "calculate")):
            return "procedural"
        if re.match(r"\s*(what|when|who|where|which|how many|how much)\b", lowered):
            return "factual"
        return "conceptual"

    @staticmethod
    def complexity(query: str) -> float:
        words = _WORD_RE.findall(query.lower())
        questions = query.count("?")
        technical = sum(1 for w in words if w in TECHNICAL_TERMS)
        return min(1.0, (len(words) + questions * 2 + technical * 3) / 20)
