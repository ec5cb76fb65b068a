"""
Learning engine: turn collected feedback into correction insights, parameter
adjustments and hallucination-risk hints.

All rules are deterministic heuristics over feedback counts and scores.
"""

from collections import Counter, defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, List, Dict

from pydantic import BaseModel, Field

from study_buddy.feedback.collector import summarize_feedback
from study_buddy.feedback.models import Feedback, categorize_correction
from study_buddy.shared.config import FeedbackConfig, LearningConfig, settings
from study_buddy.shared.logging import get_logger
from study_buddy.shared.utils import clamp01, mean, utcnow

logger = get_logger(__name__)


class LearningType(str, Enum):
    CORRECTION_LEARNING = "correction_learning"
    PATTERN_RECOGNITION = "pattern_recognition"
    HALLUCINATION_DETECTION = "hallucination_detection"
    QUALITY_OPTIMIZATION = "quality_optimization"
    BEHAVIORAL_ADAPTATION = "behavioral_adaptation"


class LearningStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"


class LearningRequest(BaseModel):
    learning_type: LearningType
    feedback_data: List[Feedback]
    target_metrics: Dict[str, float] = Field(default_factory=dict)
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    require_validation: bool = True
    lookback_days: Optional[int] = Field(default=None, gt=0)


class LearningInsight(BaseModel):
    category: str
    description: str
    frequency: int
    evidence_ids: List[str] = Field(default_factory=list)


class ModelAdjustment(BaseModel):
    """A recommended generation-parameter change."""
    parameter: str  # temperature, max_tokens, response_style, explanation_depth
    direction: str  # increase, decrease, set
    value: Optional[str] = None
    reason: str


class HallucinationRisk(BaseModel):
    """A hint, not a diagnosis."""
    feedback_id: str
    interaction_id: str
    risk_score: float = Field(ge=0.0, le=1.0)
    reason: str


class LearningResult(BaseModel):
    learning_type: LearningType
    status: LearningStatus
    confidence: float = Field(ge=0.0, le=1.0)
    data_points: int
    insights: List[LearningInsight] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    adjustments: List[ModelAdjustment] = Field(default_factory=list)
    hallucination_risks: List[HallucinationRisk] = Field(default_factory=list)
    processed_at: datetime = Field(default_factory=utcnow)


CATEGORY_RECOMMENDATIONS = {
    "factual_accuracy": "Ground answers in reference sources and lower sampling temperature",
    "clarity": "Use simpler wording and define terms before using them",
    "completeness": "Cover every part of the question and allow longer answers",
    "relevance": "Restate the question and answer it directly before elaborating",
    "tone": "Keep an encouraging, neutral tone",
    "formatting": "Break long answers into short paragraphs or lists",
    "other": "Review the free-text corrections for recurring themes",
}


class LearningEngine:
    """Derive learning results from feedback."""

    def __init__(
        self,
        config: Optional[LearningConfig] = None,
        feedback_config: Optional[FeedbackConfig] = None
    ):
        self.config = config or settings.learning
        self.feedback_config = feedback_config or settings.feedback

    def _in_window(self, feedback: List[Feedback], lookback_days: int) -> List[Feedback]:
        cutoff = utcnow() - timedelta(days=lookback_days)
        return [fb for fb in feedback if fb.is_active and fb.created_at >= cutoff]

    def _sample_confidence(self, n: int) -> float:
        return clamp01(n / self.config.full_confidence_samples)

    async def learn_from_feedback(self, request: LearningRequest) -> LearningResult:
        """
        Run one learning pass.

        When the computed confidence is below min_confidence and validation is
        required, the result is `partial`: callers should gather more data
        before acting on it.
        """
        lookback = request.lookback_days or self.config.lookback_days
        feedback = self._in_window(request.feedback_data, lookback)

        handlers = {
            LearningType.CORRECTION_LEARNING: self._correction_learning,
            LearningType.PATTERN_RECOGNITION: self._pattern_recognition,
            LearningType.HALLUCINATION_DETECTION: self._hallucination_detection,
            LearningType.QUALITY_OPTIMIZATION: self._quality_optimization,
            LearningType.BEHAVIORAL_ADAPTATION: self._behavioral_adaptation,
        }
        result = handlers[request.learning_type](feedback, request.target_metrics)

        min_confidence = request.min_confidence if request.min_confidence is not None else self.config.min_confidence
        status = LearningStatus.COMPLETED
        if request.require_validation and result["confidence"] < min_confidence:
            status = LearningStatus.PARTIAL

        logger.info(
            f"Learning pass {request.learning_type.value}: {status.value}",
            extra={"action": "learning_pass", "data_points": len(feedback)},
        )
        return LearningResult(
            learning_type=request.learning_type,
            status=status,
            data_points=len(feedback),
            **result,
        )

    async def analyze_corrections(self, feedback: List[Feedback]) -> LearningResult:
        return await self.learn_from_feedback(LearningRequest(
            learning_type=LearningType.CORRECTION_LEARNING, feedback_data=feedback
        ))

    async def detect_hallucinations(self, feedback: List[Feedback]) -> LearningResult:
        return await self.learn_from_feedback(LearningRequest(
            learning_type=LearningType.HALLUCINATION_DETECTION, feedback_data=feedback
        ))

    def _correction_learning(self, feedback: List[Feedback], targets: Dict[str, float]) -> Dict:
        grouped: Dict[str, List[str]] = defaultdict(list)
        for fb in feedback:
            for correction in fb.corrections:
                grouped[categorize_correction(correction)].append(fb.id)

        insights, recommendations, adjustments = [], [], []
        for category, ids in sorted(grouped.items(), key=lambda kv: len(kv[1]), reverse=True):
            if len(ids) < self.config.correction_frequency_threshold:
                continue
            insights.append(LearningInsight(
                category=category,
                description=f"{len(ids)} corrections about {category.replace('_', ' ')}",
                frequency=len(ids),
                evidence_ids=sorted(set(ids)),
            ))
            recommendations.append(CATEGORY_RECOMMENDATIONS[category])
            if category == "factual_accuracy":
                adjustments.append(ModelAdjustment(
                    parameter="temperature", direction="decrease", reason="recurring factual corrections"
                ))
            elif category == "completeness":
                adjustments.append(ModelAdjustment(
                    parameter="max_tokens", direction="increase", reason="answers reported as incomplete"
                ))
            elif category == "clarity":
                adjustments.append(ModelAdjustment(
                    parameter="explanation_depth", direction="set", value="basic", reason="answers reported as unclear"
                ))

        total_corrections = sum(len(ids) for ids in grouped.values())
        return {
            "confidence": self._sample_confidence(total_corrections),
            "insights": insights,
            "recommendations": recommendations,
            "adjustments": adjustments,
        }

    def _pattern_recognition(self, feedback: List[Feedback], targets: Dict[str, float]) -> Dict:
        summary = summarize_feedback(feedback, self.feedback_config)
        insights, recommendations = [], []
        negative = summary.by_sentiment.get("negative", 0)
        if summary.total and negative / summary.total >= 0.3:
            insights.append(LearningInsight(
                category="negative_feedback",
                description=f"{negative} of {summary.total} feedback events are negative",
                frequency=negative,
            ))
            recommendations.append("Review recent low-rated answers for a shared cause")
        if summary.abandonment_rate >= 0.3:
            insights.append(LearningInsight(
                category="abandonment",
                description=f"Abandonment rate {summary.abandonment_rate:.0%}",
                frequency=sum(1 for fb in feedback if fb.abandoned),
            ))
            recommendations.append("Shorten answers and lead with the key point")
        for category, count in summary.top_correction_categories:
            if count >= self.config.correction_frequency_threshold:
                insights.append(LearningInsight(
                    category=category,
                    description=f"Recurring {category.replace('_', ' ')} corrections",
                    frequency=count,
                ))
        return {
            "confidence": self._sample_confidence(summary.total),
            "insights": insights,
            "recommendations": recommendations,
        }

    def _hallucination_detection(self, feedback: List[Feedback], targets: Dict[str, float]) -> Dict:
        risks = []
        for fb in feedback:
            rating = fb.rating
            if rating is None or rating > self.config.hallucination_max_rating:
                continue
            factual = [c for c in fb.corrections if categorize_correction(c) == "factual_accuracy"]
            if not factual:
                continue
            risk = 0.5 + 0.25 * (self.config.hallucination_max_rating - rating) + 0.05 * (len(factual) - 1)
            risks.append(HallucinationRisk(
                feedback_id=fb.id,
                interaction_id=fb.interaction_id,
                risk_score=clamp01(risk),
                reason=f"rating {rating} with factual correction: {factual[0][:80]}",
            ))

        recommendations = []
        if risks:
            recommendations.append("Fact-check the flagged interactions before reusing them as memories")
        return {
            "confidence": self._sample_confidence(len(feedback)),
            "hallucination_risks": risks,
            "recommendations": recommendations,
            "adjustments": [ModelAdjustment(
                parameter="temperature", direction="decrease", reason="possible hallucinations reported"
            )] if risks else [],
        }

    def _quality_optimization(self, feedback: List[Feedback], targets: Dict[str, float]) -> Dict:
        target = targets.get("quality", self.config.quality_target)
        average = mean([fb.quality_score for fb in feedback])
        adjustments, recommendations, insights = [], [], []
        if feedback and average < target:
            insights.append(LearningInsight(
                category="quality",
                description=f"Mean feedback quality {average:.2f} below target {target:.2f}",
                frequency=len(feedback),
            ))
            adjustments.append(ModelAdjustment(
                parameter="temperature", direction="decrease", reason="quality below target"
            ))
            categories = Counter(categorize_correction(c) for fb in feedback for c in fb.corrections)
            if categories and categories.most_common(1)[0][0] == "completeness":
                adjustments.append(ModelAdjustment(
                    parameter="max_tokens", direction="increase", reason="incomplete answers dominate corrections"
                ))
            recommendations.append("Prefer grounded, step-by-step answers until quality recovers")
        return {
            "confidence": self._sample_confidence(len(feedback)),
            "insights": insights,
            "adjustments": adjustments,
            "recommendations": recommendations,
        }

    def _behavioral_adaptation(self, feedback: List[Feedback], targets: Dict[str, float]) -> Dict:
        implicit = [fb.implicit for fb in feedback if fb.implicit is not None]
        adjustments, recommendations = [], []
        if implicit:
            abandonment = sum(1 for i in implicit if i.abandonment) / len(implicit)
            follow_ups = mean([i.follow_up_questions for i in implicit])
            dwell = mean([i.time_spent_ms for i in implicit])
            if abandonment >= 0.3 or dwell < 10000:
                adjustments.append(ModelAdjustment(
                    parameter="response_style", direction="set", value="concise",
                    reason="short dwell time or frequent abandonment",
                ))
                adjustments.append(ModelAdjustment(
                    parameter="max_tokens", direction="decrease", reason="answers not read to the end"
                ))
            if follow_ups >= 2:
                adjustments.append(ModelAdjustment(
                    parameter="explanation_depth", direction="set", value="detailed",
                    reason="frequent follow-up questions",
                ))
                recommendations.append("Anticipate the usual follow-up question in the first answer")
        return {
            "confidence": self._sample_confidence(len(implicit)),
            "adjustments": adjustments,
            "recommendations": recommendations,
        }
