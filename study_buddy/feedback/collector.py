"""
Feedback collector: ingest explicit and implicit signals and score them.
"""

import asyncio
import logging
from collections import Counter
from datetime import timedelta
from typing import Optional, List, Dict, Set

from study_buddy.feedback.models import (
    CommonIssue,
    ExplicitFeedback,
    Feedback,
    FeedbackPatternSummary,
    FeedbackRequest,
    FeedbackSource,
    ImplicitFeedback,
    SatisfactionTrend,
    categorize_correction,
)
from study_buddy.shared.config import FeedbackConfig, settings
from study_buddy.shared.exceptions import InvalidFeedbackError, UnauthorizedError
from study_buddy.shared.logging import get_logger, log_with_context
from study_buddy.shared.utils import clamp01, mean, pearson, to_iso, utcnow
from study_buddy.storage.store import RelationalStore

logger = get_logger(__name__)


def score_feedback(
    explicit: Optional[ExplicitFeedback],
    implicit: Optional[ImplicitFeedback],
    config: FeedbackConfig,
) -> float:
    """
    Derive a quality score in [0, 1].

    A rating dominates: rating/5 minus a penalty per correction. Without a
    rating the implicit signals are blended. Abandonment caps the score.
    """
    if explicit and explicit.rating is not None:
        score = explicit.rating / 5 - config.correction_penalty * len(explicit.corrections)
    elif implicit:
        dwell = min(1.0, implicit.time_spent_ms / config.dwell_target_ms)
        follow_ups = min(1.0, implicit.follow_up_questions / 3)
        corrections = min(1.0, implicit.corrections_count / 3)
        weights = config.scroll_weight + config.dwell_weight + config.follow_up_weight + config.correction_weight
        score = (
            config.scroll_weight * implicit.scroll_depth
            + config.dwell_weight * dwell
            + config.follow_up_weight * follow_ups
            + config.correction_weight * (1 - corrections)
        ) / weights if weights else 0.0
    else:
        # Corrections without a rating
        score = 0.5 - config.correction_penalty * len(explicit.corrections if explicit else [])

    score = clamp01(score)
    if implicit and implicit.abandonment:
        score = min(score, config.abandonment_cap)
    return score


def summarize_feedback(feedback_list: List[Feedback], config: FeedbackConfig) -> FeedbackPatternSummary:
    """Group feedback by sentiment and source and count correction categories."""
    if not feedback_list:
        return FeedbackPatternSummary()

    sentiment: Counter = Counter()
    for fb in feedback_list:
        if fb.quality_score >= config.positive_threshold:
            sentiment["positive"] += 1
        elif fb.quality_score < config.negative_threshold:
            sentiment["negative"] += 1
        else:
            sentiment["neutral"] += 1

    sources = Counter(fb.source.value for fb in feedback_list)
    categories = Counter(categorize_correction(c) for fb in feedback_list for c in fb.corrections)

    return FeedbackPatternSummary(
        total=len(feedback_list),
        by_sentiment=dict(sentiment),
        by_source=dict(sources),
        top_correction_categories=categories.most_common(5),
        average_quality=mean([fb.quality_score for fb in feedback_list]),
        abandonment_rate=sum(1 for fb in feedback_list if fb.abandoned) / len(feedback_list),
    )


class FeedbackCollector:
    """Validate, score and persist feedback events."""

    def __init__(self, store: RelationalStore, config: Optional[FeedbackConfig] = None):
        self.store = store
        self.config = config or settings.feedback
        self._background: Set[asyncio.Task] = set()

    def _check_payload(self, request: FeedbackRequest):
        if request.explicit is None and request.implicit is None:
            raise InvalidFeedbackError("Feedback needs an explicit or implicit payload")
        if request.source == FeedbackSource.EXPLICIT and request.explicit is None:
            raise InvalidFeedbackError("Explicit feedback requires an explicit payload")
        if request.source == FeedbackSource.IMPLICIT and request.implicit is None:
            raise InvalidFeedbackError("Implicit feedback requires an implicit payload")
        if request.source == FeedbackSource.HYBRID and (request.explicit is None or request.implicit is None):
            raise InvalidFeedbackError("Hybrid feedback requires both explicit and implicit payloads")

    async def collect_feedback(self, request: FeedbackRequest) -> Feedback:
        """
        Score and store one feedback event.

        Earlier active feedback for the same interaction and source is
        deactivated so each pair has one active row.

        Raises:
            InvalidFeedbackError if the payload is missing or the interaction does not exist
            UnauthorizedError if the interaction belongs to another user
            StorageError if the store is unavailable
        """
        self._check_payload(request)

        interaction = await self.store.select_by_id("interactions", request.interaction_id)
        if interaction is None:
            raise InvalidFeedbackError(f"Unknown interaction {request.interaction_id}")
        if interaction["user_id"] != request.user_id:
            raise UnauthorizedError("Interaction belongs to a different user")

        feedback = Feedback(
            user_id=request.user_id,
            session_id=request.session_id or interaction.get("session_id"),
            interaction_id=request.interaction_id,
            source=request.source,
            explicit=request.explicit,
            implicit=request.implicit,
            quality_score=score_feedback(request.explicit, request.implicit, self.config),
        )

        previous = await self.store.select_where(
            "feedback",
            {"interaction_id": feedback.interaction_id, "source": feedback.source.value, "is_active": 1},
        )
        for row in previous:
            await self.store.update("feedback", row["id"], {"is_active": 0})

        row = feedback.model_dump(mode="json")
        row["created_at"] = to_iso(feedback.created_at)
        await self.store.insert("feedback", row)

        log_with_context(
            logger, logging.INFO, "Feedback collected",
            user_id=feedback.user_id,
            action="feedback_collected",
            session_id=feedback.session_id,
            interaction_id=feedback.interaction_id,
            quality_score=round(feedback.quality_score, 3),
            source=feedback.source.value,
        )
        return feedback

    async def collect_implicit_feedback(
        self,
        user_id: str,
        interaction_id: str,
        implicit: ImplicitFeedback,
        session_id: Optional[str] = None,
    ) -> None:
        """Fire-and-forget ingestion of behavioural signals. Never raises."""
        try:
            await self.collect_feedback(FeedbackRequest(
                user_id=user_id,
                interaction_id=interaction_id,
                session_id=session_id,
                source=FeedbackSource.IMPLICIT,
                implicit=implicit,
            ))
        except Exception as e:
            logger.warning(f"Implicit feedback dropped: {str(e)}", extra={"action": "implicit_feedback_dropped"})

    def schedule_implicit_feedback(self, *args, **kwargs) -> asyncio.Task:
        """Run collect_implicit_feedback in the background, keeping a reference until done."""
        task = asyncio.create_task(self.collect_implicit_feedback(*args, **kwargs))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def analyze_feedback_patterns(self, feedback_list: List[Feedback]) -> FeedbackPatternSummary:
        return summarize_feedback(feedback_list, self.config)

    async def feedback_for_user(
        self,
        user_id: str,
        days: Optional[int] = None,
        active_only: bool = True
    ) -> List[Feedback]:
        where = {"user_id": user_id}
        if active_only:
            where["is_active"] = 1
        since = ("created_at", to_iso(utcnow() - timedelta(days=days))) if days else None
        rows = await self.store.select_where("feedback", where, order_by="created_at", since=since)
        return [Feedback.from_row(row) for row in rows]

    async def track_user_satisfaction(self, user_id: str, window_days: int = 7) -> SatisfactionTrend:
        """Compare mean quality in the latest window with the window before it."""
        feedback = await self.feedback_for_user(user_id, days=window_days * 2)
        boundary = utcnow() - timedelta(days=window_days)
        current = [fb.quality_score for fb in feedback if fb.created_at >= boundary]
        previous = [fb.quality_score for fb in feedback if fb.created_at < boundary]

        average = mean(current)
        previous_average = mean(previous) if previous else None
        trend = "stable"
        if previous_average and current:
            change = (average - previous_average) / previous_average
            if change > 0.1:
                trend = "improving"
            elif change < -0.1:
                trend = "declining"

        return SatisfactionTrend(
            user_id=user_id,
            average=average,
            previous_average=previous_average,
            trend=trend,
            sample_size=len(current),
        )

    async def identify_common_issues(self, user_id: str, min_occurrences: int = 2) -> List[CommonIssue]:
        feedback = await self.feedback_for_user(user_id)
        examples: Dict[str, str] = {}
        counts: Counter = Counter()
        for fb in feedback:
            for correction in fb.corrections:
                category = categorize_correction(correction)
                counts[category] += 1
                examples.setdefault(category, correction)
        return [
            CommonIssue(category=category, count=count, example=examples[category])
            for category, count in counts.most_common()
            if count >= min_occurrences
        ]

    def correlate_feedback_with_quality(
        self,
        feedback_list: List[Feedback],
        validation_scores: Dict[str, float],
    ) -> Optional[float]:
        """Pearson correlation between feedback quality and validation score per interaction."""
        pairs = [
            (fb.quality_score, validation_scores[fb.interaction_id])
            for fb in feedback_list if fb.interaction_id in validation_scores
        ]
        if not pairs:
            return None
        xs, ys = zip(*pairs)
        return pearson(xs, ys)
