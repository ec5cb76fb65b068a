"""
Tests for PersonalizationEngine profiles and adaptations.
"""

import asyncio
import gc

import pytest

from study_buddy.personalization.engine import PersonalizationEngine
from study_buddy.personalization.models import (
    AdaptationType,
    LearningStyleType,
    PersonalizationRequest,
    PersonalizationStatus,
    SessionSignals,
)
from study_buddy.shared.config import PersonalizationConfig


@pytest.fixture
def engine(store):
    return PersonalizationEngine(store, PersonalizationConfig())


@pytest.mark.asyncio
async def test_new_user_gets_default_profile_and_no_adaptations(engine, user_id):
    result = await engine.personalize(PersonalizationRequest(
        user_id=user_id, signals=SessionSignals(engagement=0.1)
    ))

    assert result.status == PersonalizationStatus.PARTIAL
    assert result.confidence == pytest.approx(0.5)
    assert result.personalization.format == "structured"
    assert result.user_profile.learning_style.type == LearningStyleType.READING_WRITING


def test_confidence_formula(engine):
    assert engine.compute_confidence(0, 0.0) == pytest.approx(0.5)
    assert engine.compute_confidence(5, 0.5) == pytest.approx(0.75)
    assert engine.compute_confidence(50, 1.0) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_low_engagement_triggers_engagement_boost(engine, user_id):
    result = await engine.personalize(PersonalizationRequest(
        user_id=user_id,
        interaction_id="i1",
        signals=SessionSignals(engagement=0.2),
        session_history_length=10,
    ))

    assert result.status == PersonalizationStatus.COMPLETED
    assert [a.type for a in result.adaptations] == [AdaptationType.ENGAGEMENT_BOOST]
    assert result.personalization.format == "interactive"
    assert result.personalization.include_examples is True


@pytest.mark.asyncio
async def test_adaptations_never_override_preferences(engine, user_id):
    await engine.set_user_preferences(user_id, {"format": "structured"})

    result = await engine.personalize(PersonalizationRequest(
        user_id=user_id,
        interaction_id="i1",
        signals=SessionSignals(engagement=0.2),
        session_history_length=10,
    ))

    assert "format" not in result.adaptations[0].parameters
    assert result.personalization.format == "structured"
    profile = await engine.get_profile(user_id)
    assert profile.preferences == {"format": "structured"}


@pytest.mark.asyncio
async def test_repeated_interaction_is_idempotent(engine, user_id):
    request = PersonalizationRequest(
        user_id=user_id,
        interaction_id="i1",
        signals=SessionSignals(engagement=0.2, accuracy=0.9),
        session_history_length=10,
    )

    first = await engine.personalize(request)
    second = await engine.personalize(request)

    profile = await engine.get_profile(user_id)
    assert profile.performance_metrics.interaction_count == 1
    assert profile.adaptation_history.adaptation_count == 1
    assert [a.type for a in second.adaptations] == [a.type for a in first.adaptations]


@pytest.mark.asyncio
async def test_concurrent_updates_are_not_lost(engine, user_id):
    await asyncio.gather(*[
        engine.update_profile(user_id, f"k{i}", SessionSignals(accuracy=0.8)) for i in range(10)
    ])

    profile = await engine.get_profile(user_id)
    assert profile.performance_metrics.interaction_count == 10


@pytest.mark.asyncio
async def test_success_count_stays_within_adaptation_count(engine, user_id):
    await engine.personalize(PersonalizationRequest(
        user_id=user_id,
        interaction_id="i1",
        signals=SessionSignals(engagement=0.2, accuracy=0.3),
        session_history_length=10,
    ))

    assert await engine.record_adaptation_outcome(user_id, "i1", success=True) == 2
    assert await engine.record_adaptation_outcome(user_id, "i1", success=True) == 0

    profile = await engine.get_profile(user_id)
    history = profile.adaptation_history
    assert history.success_count == history.adaptation_count == 2
    assert "engagement_boost" in profile.effective_patterns


@pytest.mark.asyncio
async def test_learning_style_detected_from_queries(engine, user_id):
    for i in range(3):
        await engine.update_profile(user_id, f"k{i}", SessionSignals(), query="Can you draw a diagram of the cell?")

    profile = await engine.get_profile(user_id)
    assert profile.learning_style.type == LearningStyleType.VISUAL
    assert engine.targets_for(profile).format == "visual_outline"


@pytest.mark.asyncio
async def test_erase_user(engine, user_id):
    await engine.update_profile(user_id, "k1", SessionSignals(accuracy=0.5))

    assert await engine.erase_user(user_id) == 1
    profile = await engine.get_profile(user_id)
    assert profile.performance_metrics.interaction_count == 0


@pytest.mark.asyncio
async def test_profile_locks_do_not_accumulate(engine):
    for i in range(25):
        await engine.personalize(PersonalizationRequest(
            user_id=f"user-{i}", signals=SessionSignals(engagement=0.6)
        ))
    gc.collect()

    assert len(engine._locks) == 0
