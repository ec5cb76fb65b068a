"""
Tests for MemoryStore and KnowledgeBase retrieval.
"""

import pytest

from study_buddy.memory.knowledge import KnowledgeBase
from study_buddy.memory.models import Interaction, KnowledgeFilters, KnowledgeSource, Memory, RetentionClass
from study_buddy.memory.store import MemoryStore, retention_for
from study_buddy.shared.config import MemoryConfig


@pytest.fixture
def memory_store(store, embedder):
    return MemoryStore(store, embedder)


@pytest.fixture
def knowledge_base(store, embedder):
    return KnowledgeBase(store, embedder)


@pytest.mark.asyncio
async def test_store_and_get_memory(memory_store, user_id):
    memory_id = await memory_store.store(Memory(user_id=user_id, content="Osmosis moves water across membranes"))

    memory = await memory_store.get(memory_id)
    assert memory is not None
    assert memory.user_id == user_id
    assert memory.content.startswith("Osmosis")


@pytest.mark.asyncio
async def test_search_ranks_relevant_memory_first(memory_store, user_id):
    await memory_store.store(Memory(user_id=user_id, content="The French Revolution began in 1789"))
    relevant = await memory_store.store(Memory(user_id=user_id, content="Osmosis moves water across cell membranes"))

    results = await memory_store.search_memories(user_id, "osmosis water membranes")

    assert results[0].id == relevant
    assert all(0.0 <= m.relevance_score <= 1.0 for m in results)


@pytest.mark.asyncio
async def test_search_records_access(memory_store, user_id):
    memory_id = await memory_store.store(Memory(user_id=user_id, content="Newton's second law: F = ma"))

    await memory_store.search_memories(user_id, "force mass acceleration")

    memory = await memory_store.get(memory_id)
    assert memory.access_count == 1
    assert memory.last_accessed is not None


@pytest.mark.asyncio
async def test_search_is_scoped_to_user(memory_store, user_id):
    await memory_store.store(Memory(user_id="other-user", content="Osmosis moves water"))

    assert await memory_store.search_memories(user_id, "osmosis") == []


@pytest.mark.asyncio
async def test_store_interaction_derives_memory(memory_store, user_id):
    interaction = Interaction(
        user_id=user_id,
        query="What is osmosis?",
        response="Osmosis is the diffusion of water across a membrane.",
        subject="biology",
    )

    memory_id = await memory_store.store_interaction(interaction, quality_score=0.85, tags=["definition"])

    memory = await memory_store.get(memory_id)
    assert memory.content.startswith("Q: What is osmosis?")
    assert memory.retention == RetentionClass.LONG_TERM
    assert memory.tags == ["biology", "definition"]


@pytest.mark.asyncio
async def test_erase_user(memory_store, user_id):
    await memory_store.store(Memory(user_id=user_id, content="one"))
    await memory_store.store(Memory(user_id=user_id, content="two"))

    assert await memory_store.erase_user(user_id) == 2
    assert await memory_store.recent_memories(user_id) == []


@pytest.mark.asyncio
async def test_memory_config_bounds_snapshots_and_links(store, embedder, user_id):
    memory_store = MemoryStore(store, embedder, MemoryConfig(snapshot_tokens=8, max_links=0))
    first = Interaction(user_id=user_id, query="What is osmosis?", response="Water crossing a membrane.")
    await memory_store.store_interaction(first, quality_score=0.9)
    long_answer = "Osmosis moves water across a membrane " * 20
    second = Interaction(user_id=user_id, query="What is osmosis?", response=long_answer)

    memory = await memory_store.get(await memory_store.store_interaction(second, quality_score=0.9))

    assert memory.linked_memory_ids == []
    assert len(memory.content) < len(long_answer)


def test_memory_config_rejects_out_of_range_relevance():
    with pytest.raises(ValueError):
        MemoryConfig(link_min_relevance=1.5)


def test_retention_classes():
    assert retention_for(0.9) == RetentionClass.LONG_TERM
    assert retention_for(0.6) == RetentionClass.MEDIUM_TERM
    assert retention_for(0.4) == RetentionClass.SHORT_TERM
    assert retention_for(0.1) == RetentionClass.SESSION


@pytest.mark.asyncio
async def test_knowledge_filters_by_reliability_and_subject(knowledge_base):
    await knowledge_base.add_source(KnowledgeSource(
        id="k1", title="Gravity", subjects=["physics"], reliability_score=0.9, content="g is about 9.8 m/s^2"
    ))
    await knowledge_base.add_source(KnowledgeSource(
        id="k2", title="Rumour", subjects=["physics"], reliability_score=0.2, content="g is 12 m/s^2"
    ))
    await knowledge_base.add_source(KnowledgeSource(
        id="k3", title="Cells", subjects=["biology"], reliability_score=0.9, content="Cells are the unit of life"
    ))

    results = await knowledge_base.search_knowledge(
        "gravity acceleration", KnowledgeFilters(min_reliability=0.5, subjects=["Physics"])
    )

    assert [s.id for s in results] == ["k1"]


@pytest.mark.asyncio
async def test_knowledge_seed_loading(knowledge_base, tmp_path):
    seed = tmp_path / "seed.yaml"
    seed.write_text(
        "sources:\n"
        "  - id: s1\n"
        "    title: Water\n"
        "    subjects: [chemistry]\n"
        "    content: Water boils at 100 degrees Celsius at sea level.\n"
    )

    assert await knowledge_base.load_seed(seed) == 1
    assert (await knowledge_base.get("s1")).title == "Water"
    assert await knowledge_base.load_seed(tmp_path / "missing.yaml") == 0
