"""
Tests for PatternRecognizer detectors, confidence and trends.
"""

from datetime import timedelta

import pytest

from study_buddy.feedback.models import Feedback, FeedbackSource, ImplicitFeedback
from study_buddy.memory.models import Interaction, PerformanceSnapshot
from study_buddy.orchestration.engine import interaction_row
from study_buddy.personalization.models import PatternAnalysisRequest, PatternType, RecognitionMethod, TimeRange
from study_buddy.personalization.patterns import PatternRecognizer
from study_buddy.shared.config import PatternConfig
from study_buddy.shared.utils import to_iso, utcnow


@pytest.fixture
def recognizer(store):
    return PatternRecognizer(store, PatternConfig())


async def _add(store, user_id, accuracy, days_ago=0, response_time_ms=1000.0):
    interaction = Interaction(
        user_id=user_id,
        query="q",
        response="r",
        subject="math",
        timestamp=utcnow() - timedelta(days=days_ago, minutes=1),
        performance=PerformanceSnapshot(response_time_ms=response_time_ms, accuracy_estimate=accuracy),
    )
    await store.insert("interactions", interaction_row(interaction))
    return interaction


@pytest.mark.asyncio
async def test_small_sample_confidence_is_capped(recognizer, store, user_id):
    for _ in range(3):
        await _add(store, user_id, accuracy=0.2)

    result = await recognizer.recognize_patterns(PatternAnalysisRequest(
        user_id=user_id, pattern_type=PatternType.QUALITY
    ))

    assert len(result.patterns) == 1
    assert result.patterns[0].frequency == pytest.approx(1.0)
    assert result.patterns[0].confidence <= 0.3


@pytest.mark.asyncio
async def test_declining_quality_trend(recognizer, store, user_id):
    for _ in range(5):
        await _add(store, user_id, accuracy=0.9, days_ago=40)
    for _ in range(5):
        await _add(store, user_id, accuracy=0.3)

    result = await recognizer.recognize_patterns(PatternAnalysisRequest(
        user_id=user_id, pattern_type=PatternType.QUALITY
    ))

    assert result.patterns[0].trend == "declining"
    assert result.patterns[0].data_points == 5


@pytest.mark.asyncio
async def test_threshold_method_drops_rare_patterns(recognizer, store, user_id):
    await _add(store, user_id, accuracy=0.9, response_time_ms=9000.0)
    for _ in range(9):
        await _add(store, user_id, accuracy=0.9)

    frequency = await recognizer.recognize_patterns(PatternAnalysisRequest(
        user_id=user_id, pattern_type=PatternType.PERFORMANCE
    ))
    threshold = await recognizer.recognize_patterns(PatternAnalysisRequest(
        user_id=user_id, pattern_type=PatternType.PERFORMANCE, recognition_method=RecognitionMethod.THRESHOLD
    ))

    assert frequency.patterns[0].frequency == pytest.approx(0.1)
    assert threshold.patterns == []


@pytest.mark.asyncio
async def test_no_data_no_patterns(recognizer, user_id):
    result = await recognizer.recognize_patterns(PatternAnalysisRequest(user_id=user_id))

    assert result.patterns == []
    assert result.data_points == 0


def test_trend_for(recognizer):
    assert recognizer.trend_for(0.5, None) == "stable"
    assert recognizer.trend_for(0.8, 0.5) == "improving"
    assert recognizer.trend_for(0.3, 0.5) == "declining"
    assert recognizer.trend_for(0.52, 0.5) == "stable"


@pytest.mark.asyncio
async def test_pattern_evolution_windows(recognizer, store, user_id):
    await _add(store, user_id, accuracy=0.9, days_ago=20)
    await _add(store, user_id, accuracy=0.2)

    evolution = await recognizer.analyze_pattern_evolution(user_id, PatternType.QUALITY, windows=4, window_days=7)

    assert len(evolution.windows) == 4
    assert evolution.windows[0].start < evolution.windows[-1].start
    assert evolution.frequencies[-1] == pytest.approx(1.0)
    assert evolution.trend == "declining"


async def _add_implicit(store, interaction, implicit):
    feedback = Feedback(
        user_id=interaction.user_id,
        interaction_id=interaction.id,
        source=FeedbackSource.IMPLICIT,
        implicit=implicit,
        quality_score=0.2,
    )
    row = feedback.model_dump(mode="json")
    row["created_at"] = to_iso(feedback.created_at)
    await store.insert("feedback", row)


@pytest.mark.asyncio
async def test_engagement_comes_from_implicit_feedback(recognizer, store, user_id):
    for _ in range(3):
        interaction = await _add(store, user_id, accuracy=0.8)
        await _add_implicit(store, interaction, ImplicitFeedback(abandonment=True, time_spent_ms=500))
    await _add(store, user_id, accuracy=0.8)

    result = await recognizer.recognize_patterns(PatternAnalysisRequest(
        user_id=user_id, pattern_type=PatternType.ENGAGEMENT
    ))

    assert len(result.patterns) == 1
    assert result.patterns[0].data_points == 4
    assert result.patterns[0].frequency == pytest.approx(0.75)


@pytest.mark.asyncio
async def test_naive_time_range_is_treated_as_utc(recognizer, store, user_id):
    await _add(store, user_id, accuracy=0.2)
    end = utcnow().replace(tzinfo=None)

    result = await recognizer.recognize_patterns(PatternAnalysisRequest(
        user_id=user_id,
        pattern_type=PatternType.QUALITY,
        time_range=TimeRange(start=end - timedelta(days=1), end=end),
    ))

    assert result.data_points == 1
    assert len(result.patterns) == 1


def test_time_range_normalizes_to_utc():
    end = utcnow()
    time_range = TimeRange(start=end.replace(tzinfo=None) - timedelta(hours=1), end=end)

    assert time_range.start.tzinfo is not None
    assert time_range.previous.end == time_range.start
