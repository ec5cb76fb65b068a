"""
KnowledgeBase: reference sources with reliability-filtered, relevance-ranked search.
"""

from pathlib import Path
from typing import Optional, List, Dict

import yaml

from study_buddy.memory.models import KnowledgeFilters, KnowledgeSource
from study_buddy.shared.embeddings import EmbeddingClient, cosine_similarity
from study_buddy.shared.logging import get_logger
from study_buddy.shared.utils import clamp01, to_iso, utcnow
from study_buddy.storage.store import RelationalStore

logger = get_logger(__name__)


class KnowledgeBase:
    """Read-mostly index over knowledge sources. Searches fail soft and return []."""

    def __init__(self, store: RelationalStore, embedder: Optional[EmbeddingClient] = None):
        self.store = store
        self.embedder = embedder or EmbeddingClient(provider="hashing")
        self._sources: Optional[List[KnowledgeSource]] = None
        self._vectors: Dict[str, List[float]] = {}

    async def _ensure_loaded(self) -> List[KnowledgeSource]:
        if self._sources is None:
            rows = await self.store.select_where("knowledge_sources")
            sources = [KnowledgeSource.from_row(row) for row in rows]
            vectors = await self.embedder.embed([f"{s.title} {s.content}" for s in sources]) if sources else []
            self._vectors = {s.id: v for s, v in zip(sources, vectors)}
            self._sources = sources
        return self._sources

    def invalidate(self):
        self._sources = None
        self._vectors = {}

    async def add_source(self, source: KnowledgeSource) -> str:
        """Insert or replace a source."""
        row = source.model_dump(mode="json")
        row["created_at"] = to_iso(utcnow())
        await self.store.upsert("knowledge_sources", row)
        self.invalidate()
        return source.id

    async def load_seed(self, path: Path) -> int:
        """Load sources from a YAML seed file with a top-level `sources` list."""
        path = Path(path)
        if not path.exists():
            logger.info(f"No knowledge seed at {path}")
            return 0
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        count = 0
        for entry in data.get("sources", []):
            await self.add_source(KnowledgeSource(**entry))
            count += 1
        logger.info(f"Loaded {count} knowledge sources", extra={"action": "knowledge_seeded"})
        return count

    async def get(self, source_id: str) -> Optional[KnowledgeSource]:
        for source in await self._ensure_loaded():
            if source.id == source_id:
                return source
        return None

    async def search_knowledge(
        self,
        query: str,
        filters: Optional[KnowledgeFilters] = None
    ) -> List[KnowledgeSource]:
        """
        Filter by reliability, educational value and subject, then rank by
        relevance to the query (reliability breaks ties).
        """
        filters = filters or KnowledgeFilters()
        try:
            sources = await self._ensure_loaded()
            subjects = {s.lower() for s in filters.subjects}
            candidates = [
                s for s in sources
                if s.reliability_score >= filters.min_reliability
                and s.educational_value >= filters.min_educational_value
                and (not subjects or subjects & {x.lower() for x in s.subjects})
            ]
            if not candidates:
                return []

            if query:
                query_vec = await self.embedder.embed(query)
                candidates = [
                    s.model_copy(update={
                        "relevance_score": clamp01(cosine_similarity(query_vec, self._vectors.get(s.id, [])))
                    })
                    for s in candidates
                ]

            candidates.sort(key=lambda s: (round(s.relevance_score, 6), s.reliability_score), reverse=True)
            return candidates[:filters.limit]
        except Exception as e:
            logger.warning(f"Knowledge search failed, returning no sources: {str(e)}")
            return []

    async def ping(self) -> bool:
        return await self.store.ping()
