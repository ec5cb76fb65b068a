"""
Tests for RelationalStore: WAL mode, JSON columns, filtered reads and deletes.
"""

import pytest

from study_buddy.shared.exceptions import StorageError
from study_buddy.storage.store import RelationalStore


def test_wal_mode_enabled(tmp_path):
    """Test that WAL mode is enabled."""
    store = RelationalStore(tmp_path / "test.db")

    with store._get_connection() as conn:
        result = conn.execute("PRAGMA journal_mode").fetchone()
        assert result[0].upper() == "WAL"


@pytest.mark.asyncio
async def test_json_columns_round_trip(store):
    await store.insert("personalization_profiles", {
        "id": "user-1",
        "profile": {"learning_style": {"type": "visual"}},
        "updated_at": "2026-01-01T00:00:00.000000+00:00",
    })

    row = await store.select_by_id("personalization_profiles", "user-1")
    assert row["profile"]["learning_style"]["type"] == "visual"


@pytest.mark.asyncio
async def test_update_and_increment(store):
    await store.insert("conversations", {
        "id": "c1", "user_id": "u1", "title": "t", "chat_type": "general",
        "created_at": "2026-01-01T00:00:00.000000+00:00",
        "updated_at": "2026-01-01T00:00:00.000000+00:00",
    })

    assert await store.update("conversations", "c1", {"is_pinned": True}) is True
    assert await store.update("conversations", "missing", {"is_pinned": True}) is False
    await store.increment("conversations", "c1", "message_count", 2)

    row = await store.select_by_id("conversations", "c1")
    assert row["is_pinned"] == 1
    assert row["message_count"] == 2


@pytest.mark.asyncio
async def test_select_where_orders_limits_and_filters_since(store):
    for i in range(5):
        await store.insert("consents", {
            "id": f"u{i}",
            "consent_granted": i % 2 == 0,
            "created_at": f"2026-01-0{i + 1}T00:00:00.000000+00:00",
        })

    granted = await store.select_where("consents", {"consent_granted": True}, order_by="created_at", descending=True)
    assert [r["id"] for r in granted] == ["u4", "u2", "u0"]

    recent = await store.select_where("consents", since=("created_at", "2026-01-04T00:00:00.000000+00:00"))
    assert {r["id"] for r in recent} == {"u3", "u4"}

    assert len(await store.select_where("consents", limit=2)) == 2
    assert await store.count("consents", {"consent_granted": False}) == 2


@pytest.mark.asyncio
async def test_delete_where_and_older_than(store):
    for i in range(3):
        await store.insert("consents", {"id": f"u{i}", "created_at": f"2026-01-0{i + 1}T00:00:00.000000+00:00"})

    assert await store.delete_older_than("consents", "created_at", "2026-01-02T00:00:00.000000+00:00") == 1
    assert await store.delete_where("consents", {"id": "u1"}) == 1
    assert await store.delete("consents", "u2") is True
    assert await store.count("consents") == 0


@pytest.mark.asyncio
async def test_unknown_table_and_column_rejected(store):
    with pytest.raises(StorageError):
        await store.insert("students; DROP TABLE memories", {"id": "x"})
    with pytest.raises(StorageError):
        await store.select_where("consents", {"nope": 1})


@pytest.mark.asyncio
async def test_delete_without_filter_refused(store):
    with pytest.raises(StorageError):
        await store.delete_where("consents", {})


@pytest.mark.asyncio
async def test_ping(store):
    assert await store.ping() is True
