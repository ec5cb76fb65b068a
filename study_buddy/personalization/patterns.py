"""
Pattern recognizer: frequency and threshold heuristics over a user's
interactions and feedback inside a time window.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, List, Dict, Callable, Tuple

from study_buddy.feedback.collector import score_feedback
from study_buddy.feedback.models import Feedback
from study_buddy.memory.models import Interaction
from study_buddy.personalization.models import (
    PatternAnalysisRequest,
    PatternAnalysisResult,
    PatternEvolution,
    PatternType,
    RecognitionMethod,
    RecognizedPattern,
    TimeRange,
)
from study_buddy.shared.config import FeedbackConfig, PatternConfig, settings
from study_buddy.shared.logging import get_logger
from study_buddy.shared.utils import clamp01, mean, pearson, to_iso, utcnow
from study_buddy.storage.store import RelationalStore

logger = get_logger(__name__)

# Minimum frequency for the threshold recognition method
THRESHOLD_FREQUENCY = 0.3


@dataclass
class Detection:
    """Raw detector output before confidence and trend are attached."""
    occurrences: int
    samples: int
    metric: float  # higher is better; drives the trend label
    description: str
    insights: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class WindowData:
    interactions: List[Interaction]
    feedback: List[Feedback]


def _share(count: int, total: int) -> float:
    return count / total if total else 0.0


class PatternRecognizer:
    """Detect recurring behavioural and quality signals for one user."""

    def __init__(
        self,
        store: RelationalStore,
        config: Optional[PatternConfig] = None,
        feedback_config: Optional[FeedbackConfig] = None
    ):
        self.store = store
        self.config = config or settings.patterns
        self.feedback_config = feedback_config or settings.feedback
        self.detectors: Dict[PatternType, Callable[[WindowData], Optional[Detection]]] = {
            PatternType.BEHAVIORAL: self._behavioral,
            PatternType.FEEDBACK: self._feedback,
            PatternType.PERFORMANCE: self._performance,
            PatternType.QUALITY: self._quality,
            PatternType.ENGAGEMENT: self._engagement,
            PatternType.SATISFACTION: self._satisfaction,
            PatternType.CORRECTION: self._correction,
            PatternType.ABANDONMENT: self._abandonment,
        }

    def default_range(self) -> TimeRange:
        end = utcnow()
        return TimeRange(start=end - timedelta(days=self.config.default_window_days), end=end)

    async def _load(self, user_id: str, time_range: TimeRange) -> Tuple[WindowData, WindowData]:
        """Rows for the window and for the equal-length window before it."""
        previous = time_range.previous
        interaction_rows = await self.store.select_where(
            "interactions", {"user_id": user_id},
            order_by="timestamp", since=("timestamp", to_iso(previous.start)),
        )
        feedback_rows = await self.store.select_where(
            "feedback", {"user_id": user_id, "is_active": 1},
            order_by="created_at", since=("created_at", to_iso(previous.start)),
        )
        interactions = [Interaction.from_row(r) for r in interaction_rows]
        feedback = [Feedback.from_row(r) for r in feedback_rows]

        # The requested window includes its end; the previous one stops short of it
        def current(ts) -> bool:
            return time_range.start <= ts <= time_range.end

        def before(ts) -> bool:
            return previous.start <= ts < previous.end

        return (
            WindowData([i for i in interactions if current(i.timestamp)], [f for f in feedback if current(f.created_at)]),
            WindowData([i for i in interactions if before(i.timestamp)], [f for f in feedback if before(f.created_at)]),
        )

    def confidence_for(self, frequency: float, samples: int) -> float:
        confidence = clamp01(0.5 * frequency + 0.5 * min(1.0, samples / self.config.full_confidence_samples))
        if samples < self.config.small_sample_size:
            confidence = min(confidence, self.config.small_sample_confidence_cap)
        return confidence

    def trend_for(self, current: float, previous: Optional[float]) -> str:
        """Relative change of a higher-is-better metric against the previous window."""
        if previous is None:
            return "stable"
        if previous == 0:
            return "improving" if current > 0 else "stable"
        change = (current - previous) / previous
        if change > self.config.trend_threshold:
            return "improving"
        if change < -self.config.trend_threshold:
            return "declining"
        return "stable"

    async def recognize_patterns(self, request: PatternAnalysisRequest) -> PatternAnalysisResult:
        time_range = request.time_range or self.default_range()
        current, previous = await self._load(request.user_id, time_range)
        window_interactions = len(current.interactions)

        types = [request.pattern_type] if request.pattern_type else list(PatternType)
        patterns: List[RecognizedPattern] = []
        for pattern_type in types:
            detection = self.detectors[pattern_type](current)
            if detection is None or detection.occurrences == 0:
                continue
            denominator = window_interactions or detection.samples
            frequency = clamp01(_share(detection.occurrences, denominator))
            if request.recognition_method == RecognitionMethod.THRESHOLD and frequency < THRESHOLD_FREQUENCY:
                continue
            confidence = self.confidence_for(frequency, detection.samples)
            if confidence < request.min_confidence:
                continue
            before = self.detectors[pattern_type](previous)
            patterns.append(RecognizedPattern(
                user_id=request.user_id,
                pattern_type=pattern_type,
                description=detection.description,
                frequency=frequency,
                confidence=confidence,
                trend=self.trend_for(detection.metric, before.metric if before else None),
                data_points=detection.samples,
                insights=detection.insights,
                recommendations=detection.recommendations,
                window_start=time_range.start,
                window_end=time_range.end,
            ))

        patterns.sort(key=lambda p: p.confidence, reverse=True)
        patterns = patterns[:request.max_patterns]

        correlations = self._correlations(current) if request.include_correlations else {}
        logger.debug(
            f"Recognized {len(patterns)} patterns over {window_interactions} interactions",
            extra={"action": "recognize_patterns"},
        )
        return PatternAnalysisResult(
            user_id=request.user_id,
            patterns=patterns,
            data_points=window_interactions + len(current.feedback),
            correlations=correlations,
            time_range=time_range,
        )

    def _correlations(self, data: WindowData) -> Dict[str, float]:
        correlations: Dict[str, float] = {}
        accuracy = [i.performance.accuracy_estimate for i in data.interactions]
        engagement = self._engagement_values(data)
        value = pearson(accuracy, engagement)
        if value is not None:
            correlations["accuracy_engagement"] = value

        response_times = {i.id: i.performance.response_time_ms for i in data.interactions}
        pairs = [(f.quality_score, response_times[f.interaction_id]) for f in data.feedback if f.interaction_id in response_times]
        if pairs:
            xs, ys = zip(*pairs)
            value = pearson(xs, ys)
            if value is not None:
                correlations["satisfaction_response_time"] = value
        return correlations

    async def analyze_pattern_evolution(
        self,
        user_id: str,
        pattern_type: PatternType,
        windows: int = 4,
        window_days: int = 7
    ) -> PatternEvolution:
        """Frequency of one pattern over consecutive windows ending now, oldest first."""
        end = utcnow()
        ranges = [
            TimeRange(start=end - timedelta(days=window_days * (k + 1)), end=end - timedelta(days=window_days * k))
            for k in reversed(range(windows))
        ]
        frequencies, metrics = [], []
        for window in ranges:
            data, _ = await self._load(user_id, window)
            detection = self.detectors[pattern_type](data)
            if detection is None:
                frequencies.append(0.0)
                continue
            frequencies.append(clamp01(_share(detection.occurrences, len(data.interactions) or detection.samples)))
            metrics.append(detection.metric)

        trend = self.trend_for(metrics[-1], metrics[0]) if len(metrics) >= 2 else "stable"
        return PatternEvolution(
            user_id=user_id,
            pattern_type=pattern_type,
            windows=ranges,
            frequencies=frequencies,
            trend=trend,
        )

    @staticmethod
    def get_pattern_insights(result: PatternAnalysisResult, limit: int = 5) -> List[str]:
        """Insights and recommendations of the most confident patterns, deduplicated."""
        seen: List[str] = []
        for pattern in result.patterns:
            for line in pattern.insights + pattern.recommendations:
                if line not in seen:
                    seen.append(line)
        return seen[:limit]

    # Detectors

    def _behavioral(self, data: WindowData) -> Optional[Detection]:
        if not data.interactions:
            return None
        hours = Counter(i.timestamp.hour for i in data.interactions)
        peak_hour, count = hours.most_common(1)[0]
        subjects = Counter(i.subject for i in data.interactions if i.subject)
        insights = [f"Most study sessions start around {peak_hour:02d}:00 UTC"]
        if subjects:
            subject, subject_count = subjects.most_common(1)[0]
            insights.append(f"{subject} accounts for {subject_count} of {len(data.interactions)} questions")
        return Detection(
            occurrences=count,
            samples=len(data.interactions),
            metric=_share(count, len(data.interactions)),
            description=f"Consistent study time around {peak_hour:02d}:00",
            insights=insights,
            recommendations=["Schedule review prompts near the usual study time"],
        )

    def _feedback(self, data: WindowData) -> Optional[Detection]:
        rated = [f for f in data.feedback if f.rating is not None]
        if not rated:
            return None
        low = [f for f in rated if f.rating <= 2]
        streak = longest = 0
        for f in rated:
            streak = streak + 1 if f.rating <= 2 else 0
            longest = max(longest, streak)
        return Detection(
            occurrences=len(low),
            samples=len(rated),
            metric=1 - _share(len(low), len(rated)),
            description=f"{len(low)} low ratings, longest streak {longest}",
            insights=[f"Longest run of low ratings: {longest}"] if longest > 1 else [],
            recommendations=["Check recent low-rated answers for accuracy and clarity"],
        )

    def _performance(self, data: WindowData) -> Optional[Detection]:
        if not data.interactions:
            return None
        times = [i.performance.response_time_ms for i in data.interactions]
        slow = [t for t in times if t > self.config.slow_response_ms]
        return Detection(
            occurrences=len(slow),
            samples=len(times),
            metric=1 - _share(len(slow), len(times)),
            description=f"{len(slow)} slow responses (mean {mean(times):.0f} ms)",
            insights=[f"Mean response time {mean(times):.0f} ms"],
            recommendations=["Use lighter context or shorter answers for this user"],
        )

    def _quality(self, data: WindowData) -> Optional[Detection]:
        if not data.interactions:
            return None
        accuracy = [i.performance.accuracy_estimate for i in data.interactions]
        low = [a for a in accuracy if a < 0.5]
        return Detection(
            occurrences=len(low),
            samples=len(accuracy),
            metric=mean(accuracy),
            description=f"{len(low)} low-quality responses",
            insights=[f"Mean accuracy estimate {mean(accuracy):.2f}"],
            recommendations=["Ground answers in reference material more often"],
        )

    def _engagement_values(self, data: WindowData) -> List[float]:
        """Per interaction: engagement from the latest implicit feedback, else the stored estimate."""
        reported: Dict[str, float] = {}
        for f in data.feedback:
            if f.implicit is not None:
                reported[f.interaction_id] = score_feedback(None, f.implicit, self.feedback_config)
        return [reported.get(i.id, i.performance.engagement_estimate) for i in data.interactions]

    def _engagement(self, data: WindowData) -> Optional[Detection]:
        if not data.interactions:
            return None
        engagement = self._engagement_values(data)
        low = [e for e in engagement if e < 0.5]
        return Detection(
            occurrences=len(low),
            samples=len(engagement),
            metric=mean(engagement),
            description=f"{len(low)} low-engagement interactions",
            insights=[f"Mean engagement {mean(engagement):.2f}"],
            recommendations=["Add worked examples and check-in questions"],
        )

    def _satisfaction(self, data: WindowData) -> Optional[Detection]:
        rated = [f for f in data.feedback if f.rating is not None]
        if not rated:
            return None
        high = [f for f in rated if f.rating >= 4]
        return Detection(
            occurrences=len(high),
            samples=len(rated),
            metric=_share(len(high), len(rated)),
            description=f"{len(high)} of {len(rated)} ratings are 4 or 5",
            insights=[f"Mean rating {mean([f.rating for f in rated]):.1f}"],
            recommendations=["Keep the current explanation style"],
        )

    def _correction(self, data: WindowData) -> Optional[Detection]:
        if not data.feedback:
            return None
        corrected = [f for f in data.feedback if f.corrections]
        return Detection(
            occurrences=len(corrected),
            samples=len(data.feedback),
            metric=1 - _share(len(corrected), len(data.feedback)),
            description=f"{len(corrected)} feedback events carry corrections",
            recommendations=["Review correction categories in the learning engine"],
        )

    def _abandonment(self, data: WindowData) -> Optional[Detection]:
        implicit = [f for f in data.feedback if f.implicit is not None]
        if not implicit:
            return None
        abandoned = [f for f in implicit if f.abandoned]
        return Detection(
            occurrences=len(abandoned),
            samples=len(implicit),
            metric=1 - _share(len(abandoned), len(implicit)),
            description=f"{len(abandoned)} answers abandoned before the end",
            recommendations=["Lead with the key point and keep answers short"],
        )
