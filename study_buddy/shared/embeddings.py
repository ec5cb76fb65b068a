"""
Embedding client for relevance ranking.
Supports a local hashed term-frequency vectorizer and OpenAI embeddings.
"""

import hashlib
import re
from typing import List, Optional, Union

import numpy as np
from openai import AsyncOpenAI

from study_buddy.shared.config import settings
from study_buddy.shared.exceptions import StudyBuddyError

_WORD_RE = re.compile(r"[a-z0-9]+(?:'[a-z]+)?")

STOPWORDS = frozenset("""
a an and are as at be been but by can could did do does for from had has have how
i if in into is it its me my of on or our so than that the their them then there
these they this to too was we were what when where which who why will with would
you your about also just more most some such very
""".split())


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens."""
    return _WORD_RE.findall(text.lower())


def content_terms(text: str) -> List[str]:
    """Tokens with stopwords and bare numbers removed."""
    return [t for t in tokenize(text) if t not in STOPWORDS and not t.isdigit()]


class EmbeddingError(StudyBuddyError):
    """Error in embedding operations."""
    pass


class EmbeddingClient:
    """Unified embedding client."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        dimension: Optional[int] = None,
        batch_size: Optional[int] = None
    ):
        self.provider = provider or settings.embedding.provider
        self.model = model or settings.embedding.model
        self.dimension = dimension or settings.embedding.dimension
        self.batch_size = batch_size or settings.embedding.batch_size

        if self.provider == "openai":
            api_key = api_key or settings.llm.openai_api_key
            if not api_key:
                raise EmbeddingError("OpenAI API key not configured")
            self.client = AsyncOpenAI(api_key=api_key)
        elif self.provider == "hashing":
            self.client = None
        else:
            raise EmbeddingError(f"Unsupported embedding provider: {self.provider}")

    async def embed(
        self,
        texts: Union[str, List[str]],
        batch_size: Optional[int] = None
    ) -> Union[List[float], List[List[float]]]:
        """
        Generate embeddings for text(s).

        Args:
            texts: Single text string or list of texts
            batch_size: Override default batch size

        Returns:
            Single embedding vector or list of vectors
        """
        is_single = isinstance(texts, str)
        if is_single:
            texts = [texts]

        if self.provider == "openai":
            embeddings = await self._embed_openai(texts, batch_size or self.batch_size)
        else:
            embeddings = [self.hash_vector(t).tolist() for t in texts]

        return embeddings[0] if is_single else embeddings

    def hash_vector(self, text: str) -> np.ndarray:
        """Term-frequency vector with terms hashed into a fixed number of buckets."""
        vec = np.zeros(self.dimension, dtype=float)
        for term in content_terms(text):
            digest = hashlib.md5(term.encode()).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            vec[bucket] += 1.0
        return vec

    async def _embed_openai(self, texts: List[str], batch_size: int) -> List[List[float]]:
        """Generate embeddings using OpenAI API."""
        all_embeddings = []

        for i in range(0, len(texts), batch_size):
            batch = texts[i:i + batch_size]
            try:
                response = await self.client.embeddings.create(
                    model=self.model,
                    input=batch
                )
                all_embeddings.extend(item.embedding for item in response.data)
            except Exception as e:
                raise EmbeddingError(f"OpenAI embedding failed: {str(e)}") from e

        return all_embeddings

    def cosine_similarity(
        self,
        vec1: List[float],
        vec2: List[float]
    ) -> float:
        """Calculate cosine similarity between two vectors."""
        return cosine_similarity(vec1, vec2)


def cosine_similarity(vec1, vec2) -> float:
    """Cosine similarity; 0.0 when either vector is empty, zero, or the sizes differ."""
    v1 = np.asarray(vec1, dtype=float)
    v2 = np.asarray(vec2, dtype=float)

    if v1.shape != v2.shape or v1.size == 0:
        return 0.0

    norm1 = np.linalg.norm(v1)
    norm2 = np.linalg.norm(v2)

    if norm1 == 0 or norm2 == 0:
        return 0.0

    return float(np.dot(v1, v2) / (norm1 * norm2))
