"""
MemoryStore: per-user memory records with relevance-ranked retrieval.
"""

from typing import Optional, List, Dict, Any

from study_buddy.memory.models import Interaction, Memory, RetentionClass
from study_buddy.shared.config import MemoryConfig, settings
from study_buddy.shared.embeddings import EmbeddingClient, cosine_similarity
from study_buddy.shared.logging import get_logger
from study_buddy.shared.tokens import truncate_to_tokens
from study_buddy.shared.utils import clamp01, to_iso, utcnow
from study_buddy.storage.store import RelationalStore

logger = get_logger(__name__)

SORT_OPTIONS = ("relevance", "recency", "quality")


class MemoryStore:
    """Append-only memory records. Searches fail soft and return []."""

    def __init__(
        self,
        store: RelationalStore,
        embedder: Optional[EmbeddingClient] = None,
        config: Optional[MemoryConfig] = None
    ):
        self.db = store
        self.embedder = embedder or EmbeddingClient(provider="hashing")
        self.config = config or settings.memory

    async def store(self, memory: Memory) -> str:
        """
        Persist a memory and return its id.

        Raises:
            StorageError if the write fails
        """
        embedding = await self.embedder.embed(memory.content)
        row = memory.model_dump(mode="json")
        row["embedding"] = embedding
        row["retention"] = memory.retention.value
        row["created_at"] = to_iso(memory.created_at)
        if memory.last_accessed:
            row["last_accessed"] = to_iso(memory.last_accessed)
        await self.db.insert("memories", row)
        logger.debug(f"Stored memory {memory.id}", extra={"action": "memory_stored"})
        return memory.id

    async def store_interaction(
        self,
        interaction: Interaction,
        quality_score: float,
        tags: Optional[List[str]] = None,
    ) -> str:
        """Write-through: derive a memory from an interaction and link it to similar ones."""
        content = truncate_to_tokens(
            f"Q: {interaction.query}\nA: {interaction.response}",
            self.config.snapshot_tokens,
        )
        related = await self.search_memories(
            interaction.user_id,
            content,
            max_results=self.config.max_links,
            min_relevance=self.config.link_min_relevance,
            record_access=False,
        )
        quality = clamp01(quality_score)
        memory = Memory(
            user_id=interaction.user_id,
            conversation_id=interaction.conversation_id,
            content=content,
            quality_score=quality,
            relevance_score=quality,
            retention=retention_for(quality),
            tags=sorted(set(tags or []) | ({interaction.subject} if interaction.subject else set())),
            linked_memory_ids=[m.id for m in related],
            created_at=interaction.timestamp,
        )
        return await self.store(memory)

    async def _load(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.db.select_where(
            "memories",
            {"user_id": user_id},
            order_by="created_at",
            descending=True,
            limit=self.config.scan_limit,
        )

    async def _score(self, query: str, rows: List[Dict[str, Any]]) -> List[Memory]:
        query_vec = await self.embedder.embed(query) if query else None
        scored = []
        for row in rows:
            memory = Memory.from_row(row)
            if query_vec is not None:
                vec = row.get("embedding")
                if not vec or len(vec) != len(query_vec):
                    vec = await self.embedder.embed(memory.content)
                relevance = clamp01(cosine_similarity(query_vec, vec))
                memory = memory.model_copy(update={"relevance_score": relevance})
            scored.append(memory)
        return scored

    async def search_memories(
        self,
        user_id: str,
        query: str,
        max_results: int = 5,
        min_relevance: float = 0.0,
        sort_by: str = "relevance",
        record_access: bool = True,
    ) -> List[Memory]:
        """
        Rank a user's memories against a query.

        Returned memories carry the query relevance in `relevance_score`; the
        stored score is untouched. Ties are broken by recency.
        """
        if sort_by not in SORT_OPTIONS:
            sort_by = "relevance"
        try:
            memories = await self._score(query, await self._load(user_id))
            memories = [m for m in memories if m.relevance_score >= min_relevance]

            if sort_by == "recency":
                memories.sort(key=lambda m: m.created_at, reverse=True)
            elif sort_by == "quality":
                memories.sort(key=lambda m: (m.quality_score, m.created_at), reverse=True)
            else:
                memories.sort(key=lambda m: (round(m.relevance_score, 6), m.created_at), reverse=True)

            results = memories[:max_results]
            if record_access and results:
                await self.record_access([m.id for m in results])
            return results
        except Exception as e:
            logger.warning(f"Memory search failed, returning no memories: {str(e)}")
            return []

    async def recent_memories(self, user_id: str, limit: int = 5, query: str = "") -> List[Memory]:
        """Newest memories first, scored against `query` when one is given."""
        try:
            rows = await self.db.select_where(
                "memories",
                {"user_id": user_id},
                order_by="created_at",
                descending=True,
                limit=limit,
            )
            return await self._score(query, rows)
        except Exception as e:
            logger.warning(f"Recent memory lookup failed: {str(e)}")
            return []

    async def record_access(self, memory_ids: List[str]):
        """Bump access metadata; failures are logged only."""
        now = to_iso(utcnow())
        for memory_id in memory_ids:
            try:
                await self.db.increment("memories", memory_id, "access_count")
                await self.db.update("memories", memory_id, {"last_accessed": now})
            except Exception as e:
                logger.warning(f"Failed to record access for memory {memory_id}: {str(e)}")

    async def rescore(self, memory_id: str, relevance: float) -> bool:
        return await self.db.update(
            "memories", memory_id, {"relevance_score": clamp01(relevance)}
        )

    async def get(self, memory_id: str) -> Optional[Memory]:
        row = await self.db.select_by_id("memories", memory_id)
        return Memory.from_row(row) if row else None

    async def erase_user(self, user_id: str) -> int:
        """Delete every memory owned by a user. Returns the number removed."""
        removed = await self.db.delete_where("memories", {"user_id": user_id})
        logger.info("Erased user memories", extra={"action": "memory_erased", "count": removed})
        return removed

    async def ping(self) -> bool:
        return await self.db.ping()


def retention_for(quality: float) -> RetentionClass:
    """Higher quality interactions are kept relevant longer."""
    if quality >= 0.8:
        return RetentionClass.LONG_TERM
    if quality >= 0.6:
        return RetentionClass.MEDIUM_TERM
    if quality >= 0.4:
        return RetentionClass.SHORT_TERM
    return RetentionClass.SESSION
