"""
Pytest fixtures for Study Buddy tests.
"""

import uuid
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from study_buddy.core.pipeline import StudyBuddyPipeline
from study_buddy.shared.config import SafetyConfig, StorageConfig, StudyBuddySettings
from study_buddy.shared.embeddings import EmbeddingClient
from study_buddy.shared.llm import AiServiceManager, GenerationResult
from study_buddy.shared.models import TokenUsage
from study_buddy.storage.store import RelationalStore

DEFAULT_ANSWER = (
    "Photosynthesis converts light energy into chemical energy. "
    "Plants use carbon dioxide and water to make glucose and oxygen."
)


def make_llm_client(
    content: str = DEFAULT_ANSWER,
    provider: str = "openai",
    error: Optional[Exception] = None,
    chunks: Optional[List[str]] = None,
):
    """Mock single-provider client with the LLMClient surface."""
    client = MagicMock()
    client.provider = provider
    if error is not None:
        client.complete = AsyncMock(side_effect=error)
    else:
        client.complete = AsyncMock(return_value=GenerationResult(
            content=content,
            model_used="fake-model",
            provider_used=provider,
            tokens_used=TokenUsage(input=10, output=20),
            latency_ms=12.0,
        ))

    async def stream(*args, **kwargs):
        if error is not None:
            raise error
        for chunk in chunks or [content]:
            yield chunk

    client.stream = stream
    client.ping = AsyncMock(return_value=error is None)
    return client


@pytest.fixture
def user_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def test_settings(tmp_path) -> StudyBuddySettings:
    """Settings isolated to tmp_path, consent not required."""
    return StudyBuddySettings(
        storage=StorageConfig(db_path=tmp_path / "study_buddy.sqlite", knowledge_seed_path=None),
        safety=SafetyConfig(consent_required=False),
    )


@pytest.fixture
def store(tmp_path) -> RelationalStore:
    return RelationalStore(tmp_path / "store.sqlite")


@pytest.fixture
def embedder() -> EmbeddingClient:
    return EmbeddingClient(provider="hashing")


@pytest.fixture
def llm_client():
    return make_llm_client()


@pytest.fixture
def ai_service(llm_client, test_settings) -> AiServiceManager:
    return AiServiceManager(clients=[llm_client], config=test_settings.llm)


@pytest.fixture
def pipeline(test_settings, ai_service, embedder) -> StudyBuddyPipeline:
    return StudyBuddyPipeline(
        store=RelationalStore(test_settings.storage.db_path),
        ai_service=ai_service,
        embedder=embedder,
        config=test_settings,
    )
