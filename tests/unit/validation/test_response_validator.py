"""
Tests for ResponseValidator: fact checks, contradictions and the time budget.
"""

import asyncio

import pytest
import pytest_asyncio

from study_buddy.memory.knowledge import KnowledgeBase
from study_buddy.memory.models import KnowledgeSource
from study_buddy.shared.config import ValidationConfig
from study_buddy.shared.exceptions import ValidationTimeoutError
from study_buddy.shared.models import ConversationTurn
from study_buddy.validation.models import IssueSeverity, ResponseDraft, ValidationRequest
from study_buddy.validation.validator import ResponseValidator


@pytest_asyncio.fixture
async def knowledge_base(store, embedder):
    kb = KnowledgeBase(store, embedder)
    await kb.add_source(KnowledgeSource(
        id="boiling",
        title="Boiling point",
        subjects=["chemistry"],
        reliability_score=0.9,
        content="Water boils at 100 degrees Celsius at sea level.",
    ))
    return kb


@pytest.fixture
def validator(knowledge_base):
    return ResponseValidator(knowledge_base, ValidationConfig())


def _request(user_id, history=None):
    return ValidationRequest(
        user_id=user_id,
        query="At what temperature does water boil?",
        subject="chemistry",
        conversation_history=history or [],
    )


@pytest.mark.asyncio
async def test_supported_claim_is_valid(validator, user_id):
    result = await validator.validate(
        "Water boils at 100 degrees Celsius at sea level. For example, this is why pasta water bubbles.",
        _request(user_id),
    )

    assert result.is_valid
    assert result.fact_check.verified_claims == 1
    assert result.fact_check.pass_rate == 1.0
    assert not result.timed_out


@pytest.mark.asyncio
async def test_conflicting_number_fails_fact_check(validator, user_id):
    result = await validator.validate("Water boils at 90 degrees Celsius at sea level.", _request(user_id))

    assert not result.is_valid
    assert result.fact_check.failed_claims == 1
    assert any(i.type == "factual" and i.severity == IssueSeverity.HIGH for i in result.issues)


@pytest.mark.asyncio
async def test_numeric_contradiction_with_earlier_answer(validator, user_id):
    history = [
        ConversationTurn(role="user", content="How hot is a boiling kettle?"),
        ConversationTurn(role="assistant", content="The kettle water reaches 100 degrees when boiling."),
    ]

    result = await validator.validate(
        "The kettle water reaches 80 degrees when boiling.", _request(user_id, history)
    )

    assert result.contradictions.has_contradictions
    assert result.contradictions.contradictions[0].kind == "numeric"
    assert any(i.type == "contradiction" for i in result.issues)


@pytest.mark.asyncio
async def test_inappropriate_language_is_critical(validator, user_id):
    result = await validator.validate(
        ResponseDraft(content="Shut up and read the textbook.", model_confidence=1.0), _request(user_id)
    )

    assert not result.is_valid
    assert any(i.severity == IssueSeverity.CRITICAL for i in result.issues)


@pytest.mark.asyncio
async def test_timeout_returns_result_instead_of_raising(knowledge_base, user_id):
    validator = ResponseValidator(knowledge_base, ValidationConfig(max_processing_time_ms=10))

    async def slow(*args, **kwargs):
        await asyncio.sleep(1)

    validator._validate = slow

    result = await validator.validate("Anything at all.", _request(user_id))

    assert result.timed_out
    assert not result.is_valid
    assert result.issues[0].type == "timeout"

    with pytest.raises(ValidationTimeoutError):
        await validator.validate_or_raise("Anything at all.", _request(user_id))


def test_confidence_renormalizes_without_model_confidence(validator):
    without = validator.confidence_score(ResponseDraft(content="word " * 30), pass_rate=1.0, hedges=0)
    with_low = validator.confidence_score(
        ResponseDraft(content="word " * 30, model_confidence=0.0), pass_rate=1.0, hedges=0
    )

    assert without == pytest.approx(1.0)
    assert with_low < without


def test_extract_claims_skips_questions_and_fragments(validator):
    claims = validator.extract_claims(
        "Is water wet? Yes. The mitochondria is the powerhouse of the cell. There were 3 apples in total."
    )

    assert claims == [
        "The mitochondria is the powerhouse of the cell.",
        "There were 3 apples in total.",
    ]
