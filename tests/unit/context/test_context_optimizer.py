"""
Tests for ContextOptimizer tier selection and budget enforcement.
"""

import pytest

from study_buddy.context.optimizer import ContextOptimizer
from study_buddy.memory.knowledge import KnowledgeBase
from study_buddy.memory.models import CompressionLevel, KnowledgeSource, Memory
from study_buddy.memory.store import MemoryStore
from study_buddy.shared.exceptions import InvalidInputError
from study_buddy.shared.models import ConversationTurn


@pytest.fixture
def memory_store(store, embedder):
    return MemoryStore(store, embedder)


@pytest.fixture
def knowledge_base(store, embedder):
    return KnowledgeBase(store, embedder)


@pytest.fixture
def optimizer(memory_store, knowledge_base, embedder):
    return ContextOptimizer(memory_store, knowledge_base, embedder)


def _history(n):
    return [
        ConversationTurn(role="user" if i % 2 == 0 else "assistant", content=f"Turn {i} about cell biology and mitosis")
        for i in range(n)
    ]


async def _seed(memory_store, knowledge_base, user_id, count=10):
    for i in range(count):
        await memory_store.store(Memory(
            user_id=user_id,
            content=f"Mitosis note {i}: chromosomes align at the metaphase plate before separating. " * 3,
        ))
    await knowledge_base.add_source(KnowledgeSource(
        title="Cell division",
        subjects=["biology"],
        reliability_score=0.9,
        content="Mitosis produces two genetically identical daughter cells.",
    ))


@pytest.mark.asyncio
async def test_light_with_no_history_is_small_and_low_relevance(optimizer, user_id):
    bundle = await optimizer.build(user_id, level=CompressionLevel.LIGHT, token_limit=100, history=[])

    assert bundle.compression_level == CompressionLevel.LIGHT
    assert bundle.token_usage.total <= 100
    assert bundle.relevance_score < 0.5
    assert bundle.memory_ids == []


@pytest.mark.asyncio
async def test_long_history_escalates_to_selective_within_limit(optimizer, memory_store, knowledge_base, user_id):
    await _seed(memory_store, knowledge_base, user_id)

    bundle = await optimizer.build(
        user_id,
        level=CompressionLevel.LIGHT,
        token_limit=150,
        history=_history(5),
        query="How does mitosis work?",
    )

    assert bundle.compression_level.rank >= CompressionLevel.SELECTIVE.rank
    assert bundle.requested_level == CompressionLevel.LIGHT
    assert bundle.token_usage.total <= 150


@pytest.mark.asyncio
async def test_deep_understanding_goal_forces_full(optimizer, user_id):
    bundle = await optimizer.build(
        user_id,
        level=CompressionLevel.RECENT,
        goals=["deep_understanding"],
        query="explain entropy",
    )

    assert bundle.compression_level == CompressionLevel.FULL


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, 10, 50, 400])
async def test_budget_never_exceeded(optimizer, memory_store, knowledge_base, user_id, limit):
    await _seed(memory_store, knowledge_base, user_id)

    bundle = await optimizer.build(
        user_id,
        level=CompressionLevel.FULL,
        token_limit=limit,
        history=_history(8),
        query="mitosis",
    )

    assert bundle.token_usage.total <= limit
    assert bundle.token_limit <= limit


@pytest.mark.asyncio
async def test_full_tier_includes_memories_and_knowledge(optimizer, memory_store, knowledge_base, user_id):
    await _seed(memory_store, knowledge_base, user_id, count=3)

    bundle = await optimizer.build(user_id, level=CompressionLevel.FULL, query="mitosis chromosomes")

    assert bundle.memory_ids
    assert bundle.knowledge_source_ids
    assert "[source: Cell division]" in bundle.text


@pytest.mark.asyncio
async def test_other_users_memories_are_not_used(optimizer, memory_store, knowledge_base, user_id):
    await _seed(memory_store, knowledge_base, "someone-else", count=3)

    bundle = await optimizer.build(user_id, level=CompressionLevel.FULL, query="mitosis")

    assert bundle.memory_ids == []


@pytest.mark.asyncio
async def test_negative_token_limit_rejected(optimizer, user_id):
    with pytest.raises(InvalidInputError):
        await optimizer.build(user_id, token_limit=-1)


def test_select_level_rules(optimizer):
    assert optimizer.select_level(CompressionLevel.LIGHT, 0) == CompressionLevel.LIGHT
    assert optimizer.select_level(CompressionLevel.LIGHT, 4) == CompressionLevel.SELECTIVE
    assert optimizer.select_level(CompressionLevel.FULL, 4) == CompressionLevel.FULL
    assert optimizer.select_level(CompressionLevel.RECENT, 0, ["deep_understanding"]) == CompressionLevel.FULL
