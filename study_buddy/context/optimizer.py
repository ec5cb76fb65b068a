"""
Context optimizer: assemble a token-bounded context bundle at one of four fidelity tiers.
"""

from dataclasses import dataclass
from typing import Optional, List, Sequence

from study_buddy.memory.knowledge import KnowledgeBase
from study_buddy.memory.models import CompressionLevel, ContextBundle, KnowledgeFilters
from study_buddy.memory.store import MemoryStore
from study_buddy.shared.config import ContextConfig, settings
from study_buddy.shared.embeddings import EmbeddingClient, cosine_similarity
from study_buddy.shared.exceptions import InvalidInputError
from study_buddy.shared.logging import get_logger
from study_buddy.shared.models import ConversationTurn, TokenUsage
from study_buddy.shared.tokens import count_tokens
from study_buddy.shared.utils import clamp01, mean

logger = get_logger(__name__)

DEEP_UNDERSTANDING = "deep_understanding"


@dataclass
class ContextItem:
    """A candidate piece of context."""
    kind: str  # history, memory, knowledge
    item_id: Optional[str]
    text: str
    relevance: float
    tokens: int


class ContextOptimizer:
    """Select and compress context into a bundle that never exceeds its token limit."""

    def __init__(
        self,
        memory_store: MemoryStore,
        knowledge_base: KnowledgeBase,
        embedder: Optional[EmbeddingClient] = None,
        config: Optional[ContextConfig] = None
    ):
        self.memory_store = memory_store
        self.knowledge_base = knowledge_base
        self.embedder = embedder or EmbeddingClient(provider="hashing")
        self.config = config or settings.context

    def select_level(
        self,
        requested: CompressionLevel,
        history_length: int,
        goals: Optional[Sequence[str]] = None
    ) -> CompressionLevel:
        """Apply escalation rules: long history forces selective, deep-understanding goals force full."""
        level = CompressionLevel(requested)
        if history_length > self.config.history_escalation_threshold:
            level = level.at_least(CompressionLevel.SELECTIVE)
        if goals and DEEP_UNDERSTANDING in goals:
            level = CompressionLevel.FULL
        return level

    async def build(
        self,
        user_id: str,
        level: CompressionLevel = CompressionLevel.SELECTIVE,
        token_limit: Optional[int] = None,
        subject_filter: Optional[List[str]] = None,
        history: Optional[List[ConversationTurn]] = None,
        goals: Optional[Sequence[str]] = None,
        query: str = "",
    ) -> ContextBundle:
        """
        Build a context bundle.

        Args:
            user_id: Owner of the memories to consult
            level: Requested tier (may be escalated)
            token_limit: Hard cap on context tokens; defaults to the tier budget
            subject_filter: Restrict knowledge sources to these subjects
            history: Conversation so far, oldest first
            goals: Learning goals; "deep_understanding" forces the full tier
            query: Current user message, used for relevance ranking

        Returns:
            ContextBundle whose token usage is at most token_limit
        """
        if token_limit is not None and token_limit < 0:
            raise InvalidInputError("token_limit must be non-negative")

        history = history or []
        requested = CompressionLevel(level)
        effective = self.select_level(requested, len(history), goals)

        tier_budget = self.config.tier_budgets.get(effective.value)
        budget = token_limit if token_limit is not None else tier_budget
        if tier_budget is not None and budget is not None:
            budget = min(budget, tier_budget)
        budget = budget or 0

        candidates = self._history_items(history, effective, query)
        if effective != CompressionLevel.LIGHT:
            candidates.extend(await self._lookup_items(user_id, effective, subject_filter, query))

        included: List[ContextItem] = []
        used = 0
        for item in candidates:
            if used + item.tokens > budget:
                continue
            included.append(item)
            used += item.tokens

        bundle = ContextBundle(
            compression_level=effective,
            requested_level=requested,
            token_limit=budget,
            memory_ids=[i.item_id for i in included if i.kind == "memory"],
            knowledge_source_ids=[i.item_id for i in included if i.kind == "knowledge"],
            history_turns=sum(1 for i in included if i.kind == "history"),
            token_usage=TokenUsage(input=used),
            relevance_score=clamp01(mean([i.relevance for i in included])),
            text=self._render(included),
        )
        logger.debug(
            f"Built {effective.value} context: {len(included)}/{len(candidates)} items, {used}/{budget} tokens",
            extra={"action": "context_built"},
        )
        return bundle

    def _history_items(
        self,
        history: List[ConversationTurn],
        level: CompressionLevel,
        query: str
    ) -> List[ContextItem]:
        """Most recent turns first so the newest survive a tight budget."""
        window = self.config.history_turns.get(level.value, 1)
        recent = list(reversed(history[-window:])) if window > 0 else []
        query_vec = self.embedder.hash_vector(query) if query else None
        items = []
        for turn in recent:
            text = f"{turn.role}: {turn.content}"
            relevance = 0.5
            if query_vec is not None:
                relevance = clamp01(cosine_similarity(query_vec, self.embedder.hash_vector(turn.content)))
            items.append(ContextItem("history", None, text, relevance, count_tokens(text + "\n")))
        return items

    async def _lookup_items(
        self,
        user_id: str,
        level: CompressionLevel,
        subject_filter: Optional[List[str]],
        query: str
    ) -> List[ContextItem]:
        items: List[ContextItem] = []

        if level == CompressionLevel.RECENT:
            memories = await self.memory_store.recent_memories(
                user_id, limit=self.config.recent_window, query=query
            )
            knowledge = []
        else:
            full = level == CompressionLevel.FULL
            memories = await self.memory_store.search_memories(
                user_id,
                query,
                max_results=self.config.max_memories * (2 if full else 1),
                min_relevance=0.0 if full else self.config.selective_min_relevance,
                record_access=False,
            )
            knowledge = await self.knowledge_base.search_knowledge(
                query,
                KnowledgeFilters(
                    min_reliability=0.0 if full else self.config.knowledge_min_reliability,
                    subjects=subject_filter or [],
                    limit=self.config.max_knowledge * (2 if full else 1),
                ),
            )

        for memory in memories:
            text = f"[memory] {memory.content}"
            items.append(ContextItem("memory", memory.id, text, memory.relevance_score, count_tokens(text + "\n")))
        for source in knowledge:
            text = f"[source: {source.title}] {source.content}"
            items.append(ContextItem("knowledge", source.id, text, source.relevance_score, count_tokens(text + "\n")))

        if level != CompressionLevel.RECENT:
            items.sort(key=lambda i: i.relevance, reverse=True)
        return items

    @staticmethod
    def _render(items: List[ContextItem]) -> str:
        """Reference material, then memories, then the conversation in chronological order."""
        knowledge = [i.text for i in items if i.kind == "knowledge"]
        memories = [i.text for i in items if i.kind == "memory"]
        history = [i.text for i in items if i.kind == "history"][::-1]
        return "\n".join(knowledge + memories + history)
