"""
Tests for ConversationService persistence and ownership checks.
"""

import pytest

from study_buddy.core.conversations import ConversationService
from study_buddy.shared.exceptions import InvalidInputError, UnauthorizedError
from study_buddy.shared.models import TokenUsage


@pytest.fixture
def conversations(store):
    return ConversationService(store)


@pytest.mark.asyncio
async def test_create_sets_title_from_first_message(conversations, user_id):
    row = await conversations.create(user_id, "study_assistant", "  Explain   the water cycle " + "x" * 80)

    assert row["title"].startswith("Explain the water cycle")
    assert len(row["title"]) == 50
    assert row["chat_type"] == "study_assistant"


@pytest.mark.asyncio
async def test_unknown_chat_type_rejected(conversations, user_id):
    with pytest.raises(InvalidInputError):
        await conversations.create(user_id, "gossip")


@pytest.mark.asyncio
async def test_ownership_enforced(conversations, user_id):
    row = await conversations.create(user_id)

    with pytest.raises(UnauthorizedError):
        await conversations.get_owned_conversation("someone-else", row["id"])
    with pytest.raises(InvalidInputError):
        await conversations.get_owned_conversation(user_id, "missing")

    same = await conversations.get_or_create(user_id, row["id"])
    assert same["id"] == row["id"]


@pytest.mark.asyncio
async def test_messages_update_counters_and_history(conversations, store, user_id):
    row = await conversations.create(user_id)
    await conversations.add_message(row["id"], "user", "What is a noun?")
    await conversations.add_message(
        row["id"], "assistant", "A noun names a person, place or thing.",
        model_used="fake-model", provider_used="openai", tokens_used=TokenUsage(input=5, output=10),
    )

    stored = await store.select_by_id("conversations", row["id"])
    assert stored["message_count"] == 2
    assert stored["total_tokens"] == 15

    history = await conversations.recent_history(row["id"])
    assert [t.role for t in history] == ["user", "assistant"]
    assert [t.role for t in await conversations.recent_history(row["id"], limit=1)] == ["assistant"]


@pytest.mark.asyncio
async def test_list_puts_pinned_first_and_hides_archived(conversations, user_id):
    first = await conversations.create(user_id, first_message="first")
    second = await conversations.create(user_id, first_message="second")
    archived = await conversations.create(user_id, first_message="archived")

    await conversations.set_flags(user_id, first["id"], is_pinned=True)
    await conversations.set_flags(user_id, archived["id"], is_archived=True)

    listed = await conversations.list_conversations(user_id)
    assert [r["id"] for r in listed] == [first["id"], second["id"]]
    assert len(await conversations.list_conversations(user_id, include_archived=True)) == 3
