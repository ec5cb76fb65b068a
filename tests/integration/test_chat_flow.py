"""
End-to-end chat flows through the pipeline: answer, feedback, learning and
context budgets working together.
"""

import asyncio

import pytest

from study_buddy.feedback.learning import LearningType
from study_buddy.feedback.models import ExplicitFeedback, FeedbackRequest, FeedbackSource, ImplicitFeedback
from study_buddy.memory.models import CompressionLevel
from study_buddy.monitoring.models import AlertType
from study_buddy.personalization.models import PatternType
from study_buddy.shared.config import ValidationConfig
from study_buddy.shared.models import ConversationTurn

from conftest import DEFAULT_ANSWER


async def answer_then_rate(pipeline, user_id, rating, corrections=()):
    turn = await pipeline.process_chat_turn(user_id, "What is photosynthesis?", subject="biology")
    feedback = await pipeline.submit_feedback_fast(
        FeedbackRequest(
            user_id=user_id,
            interaction_id=turn.interaction_id,
            session_id=turn.session_id,
            source=FeedbackSource.EXPLICIT,
            explicit=ExplicitFeedback(rating=rating, corrections=list(corrections)),
        ),
        schedule_full=False,
    )
    return turn, feedback, await pipeline.submit_feedback_full(feedback)


def hallucination_pass(outcome):
    return next(r for r in outcome.learning if r.learning_type == LearningType.HALLUCINATION_DETECTION)


@pytest.mark.asyncio
async def test_top_rating_scores_high_without_hallucination_flag(pipeline, user_id):
    turn, feedback, outcome = await answer_then_rate(pipeline, user_id, rating=5)

    assert feedback.quality_score >= 0.85
    assert hallucination_pass(outcome).hallucination_risks == []

    session = pipeline.monitor.get_session(turn.session_id)
    assert session.metrics.satisfaction_samples == 1
    assert outcome.adaptations_marked >= 0


@pytest.mark.asyncio
async def test_low_rating_with_factual_correction_is_flagged(pipeline, user_id):
    turn, feedback, outcome = await answer_then_rate(
        pipeline, user_id, rating=1, corrections=["factually wrong"]
    )

    assert feedback.quality_score <= 0.3
    risks = hallucination_pass(outcome).hallucination_risks
    assert [r.interaction_id for r in risks] == [turn.interaction_id]


@pytest.mark.asyncio
async def test_light_context_with_empty_history(pipeline, user_id):
    await pipeline.process_chat_turn(user_id, "What is photosynthesis?")

    bundle = await pipeline.context_optimizer.build(user_id, level=CompressionLevel.LIGHT, history=[])

    assert bundle.compression_level == CompressionLevel.LIGHT
    assert bundle.token_usage.total <= 100
    assert bundle.relevance_score < 0.5


@pytest.mark.asyncio
async def test_history_escalates_within_token_limit(pipeline, user_id):
    for question in ("What is photosynthesis?", "What is chlorophyll?", "Where does glucose go?"):
        await pipeline.process_chat_turn(user_id, question, subject="biology")
    history = [
        ConversationTurn(role="user" if i % 2 == 0 else "assistant", content=f"Turn {i} about plant cells")
        for i in range(5)
    ]

    bundle = await pipeline.context_optimizer.build(
        user_id,
        level=CompressionLevel.LIGHT,
        token_limit=150,
        history=history,
        query="photosynthesis",
    )

    assert bundle.compression_level.rank >= CompressionLevel.SELECTIVE.rank
    assert bundle.token_usage.total <= 150


@pytest.mark.asyncio
async def test_validator_timeout_still_answers(pipeline, user_id):
    pipeline.validator.config = ValidationConfig(max_processing_time_ms=10)

    async def slow(*args, **kwargs):
        await asyncio.sleep(1)

    pipeline.validator._validate = slow

    response = await pipeline.process_chat_turn(user_id, "What is photosynthesis?")

    assert response.content == DEFAULT_ANSWER
    assert response.validation is None or not response.validation.is_valid
    assert response.unvalidated


@pytest.mark.asyncio
async def test_abandoned_answers_lower_session_engagement(pipeline, user_id):
    raised = []
    pipeline.monitor.add_alert_callback(raised.append)
    turn = await pipeline.process_chat_turn(user_id, "What is photosynthesis?", subject="biology")

    for _ in range(3):
        feedback = await pipeline.submit_feedback_fast(
            FeedbackRequest(
                user_id=user_id,
                interaction_id=turn.interaction_id,
                source=FeedbackSource.IMPLICIT,
                implicit=ImplicitFeedback(abandonment=True, time_spent_ms=500),
            ),
            schedule_full=False,
        )
        outcome = await pipeline.submit_feedback_full(feedback)

    session = pipeline.monitor.get_session(turn.session_id)
    assert feedback.session_id == turn.session_id
    assert session.metrics.engagement_samples == 3
    assert session.metrics.engagement_score < 0.3
    assert "Low engagement score detected" in session.health.warnings
    assert AlertType.ENGAGEMENT in [a.type for a in raised]

    detected = {p.pattern_type for p in outcome.patterns.patterns}
    assert PatternType.ENGAGEMENT in detected
