"""
Tests for the HTTP surface: caller identity, chat, streaming, feedback,
sessions, privacy and health.
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from study_buddy.api.app import create_app
from study_buddy.core.pipeline import StudyBuddyPipeline
from study_buddy.shared.exceptions import LLMError
from study_buddy.shared.llm import AiServiceManager
from study_buddy.storage.store import RelationalStore

from conftest import DEFAULT_ANSWER, make_llm_client


@pytest.fixture
def client(pipeline):
    """Test client with lifespan, wired to the test pipeline."""
    with TestClient(create_app(pipeline)) as tc:
        yield tc


@pytest.fixture
def headers(user_id):
    return {"X-User-Id": user_id}


def chat(client, headers, message="What is photosynthesis?", **fields):
    return client.post("/chat", json={"message": message, **fields}, headers=headers)


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["service"] == "study-buddy"


def test_health_returns_correct_structure(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] in ("healthy", "degraded", "critical")
    assert data["store_connected"] is True
    assert data["providers"] == {"openai": True}
    assert set(data["stages"]) == {"input", "context", "response", "personalization", "monitoring"}
    assert isinstance(data["active_sessions"], int)
    assert isinstance(data["uptime_seconds"], (int, float))


def test_missing_user_header_is_unauthorized(client):
    response = client.post("/chat", json={"message": "hello"})

    assert response.status_code == 401


def test_malformed_user_header_is_unauthorized(client):
    response = chat(client, {"X-User-Id": "not-a-uuid"})

    assert response.status_code == 401


def test_chat_answers(client, headers):
    response = chat(client, headers)

    assert response.status_code == 200
    data = response.json()
    assert data["content"] == DEFAULT_ANSWER
    assert data["fallback"] is False
    assert data["conversation_id"]
    assert data["session_id"]
    assert "Retry-After" not in response.headers


def test_empty_message_rejected(client, headers):
    response = chat(client, headers, message="   ")

    assert response.status_code == 400


def test_unknown_context_level_rejected(client, headers):
    response = chat(client, headers, context_level="everything")

    assert response.status_code == 400


def test_other_users_conversation_forbidden(client, headers):
    conversation_id = chat(client, headers).json()["conversation_id"]

    response = chat(client, {"X-User-Id": str(uuid.uuid4())}, conversation_id=conversation_id)

    assert response.status_code == 403


def test_chat_fallback_sets_retry_after(test_settings, embedder, headers):
    failing = StudyBuddyPipeline(
        store=RelationalStore(test_settings.storage.db_path),
        ai_service=AiServiceManager(clients=[make_llm_client(error=LLMError("down"))], config=test_settings.llm),
        embedder=embedder,
        config=test_settings,
    )
    with TestClient(create_app(failing)) as tc:
        response = chat(tc, headers)

    assert response.status_code == 200
    assert response.json()["fallback"] is True
    assert response.headers["Retry-After"] == "30"


def test_chat_stream_ends_with_end_event(client, headers):
    response = client.post("/chat/stream", json={"message": "What is photosynthesis?"}, headers=headers)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [line.split(": ", 1)[1] for line in response.text.splitlines() if line.startswith("event: ")]
    assert events[0] == "start"
    assert events[-1] == "end"
    assert "content" in events


def test_feedback_round_trip(client, headers):
    turn = chat(client, headers).json()

    response = client.post("/feedback", json={
        "interaction_id": turn["interaction_id"],
        "session_id": turn["session_id"],
        "source": "explicit",
        "explicit": {"rating": 5},
    }, headers=headers)

    assert response.status_code == 200
    assert response.json()["quality_score"] >= 0.85


def test_feedback_without_payload_rejected(client, headers):
    turn = chat(client, headers).json()

    response = client.post("/feedback", json={
        "interaction_id": turn["interaction_id"],
        "source": "explicit",
    }, headers=headers)

    assert response.status_code == 400


def test_session_health_and_end(client, headers):
    session_id = chat(client, headers).json()["session_id"]

    health = client.get(f"/sessions/{session_id}/health", headers=headers)
    assert health.status_code == 200
    assert health.json()["overall"] in ("healthy", "warning", "critical")

    ended = client.post(f"/sessions/{session_id}/end", headers=headers)
    assert ended.status_code == 200
    assert ended.json()["session_id"] == session_id

    again = client.post(f"/sessions/{session_id}/end", headers=headers)
    assert again.status_code == 404


def test_session_of_other_user_forbidden(client, headers):
    session_id = chat(client, headers).json()["session_id"]

    response = client.get(f"/sessions/{session_id}/health", headers={"X-User-Id": str(uuid.uuid4())})

    assert response.status_code == 403


def test_unknown_session_not_found(client, headers):
    response = client.get(f"/sessions/{uuid.uuid4()}/health", headers=headers)

    assert response.status_code == 404


def test_privacy_consent_and_erasure(client, headers):
    assert client.get("/privacy/consent", headers=headers).json()["has_consent"] is True

    bad = client.post("/privacy/consent", json={"consent_text": "sure, whatever"}, headers=headers)
    assert bad.status_code == 400

    granted = client.post("/privacy/consent", json={"consent_text": "I consent"}, headers=headers)
    assert granted.status_code == 200
    assert granted.json()["success"] is True

    chat(client, headers)
    erased = client.delete("/privacy/data", headers=headers).json()["erased"]
    assert erased["interactions"] == 1
    assert erased["conversations"] == 1
    assert erased["consents"] == 1
