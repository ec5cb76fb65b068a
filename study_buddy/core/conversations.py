"""
Conversation persistence with ownership checks.
"""

from typing import Optional, List, Dict, Any

from study_buddy.shared.exceptions import InvalidInputError, UnauthorizedError
from study_buddy.shared.logging import get_logger
from study_buddy.shared.models import ConversationTurn, TokenUsage
from study_buddy.shared.utils import new_id, to_iso, utcnow
from study_buddy.storage.store import RelationalStore

logger = get_logger(__name__)

CHAT_TYPES = {"general", "study_assistant", "homework_help", "exam_prep"}
TITLE_LENGTH = 50


class ConversationService:
    """Owns the conversations and messages tables."""

    def __init__(self, store: RelationalStore):
        self.store = store

    async def create(self, user_id: str, chat_type: str = "general", first_message: str = "") -> Dict[str, Any]:
        if chat_type not in CHAT_TYPES:
            raise InvalidInputError(f"Unknown chat type: {chat_type}")
        title = " ".join(first_message.split())[:TITLE_LENGTH] or "New conversation"
        now = to_iso(utcnow())
        row = {
            "id": new_id(),
            "user_id": user_id,
            "title": title,
            "chat_type": chat_type,
            "is_archived": False,
            "is_pinned": False,
            "message_count": 0,
            "total_tokens": 0,
            "created_at": now,
            "updated_at": now,
        }
        await self.store.insert("conversations", row)
        logger.info("Conversation created", extra={"action": "conversation_created"})
        return row

    async def get_owned_conversation(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        """
        Fetch a conversation the user owns.

        Raises:
            InvalidInputError if it does not exist
            UnauthorizedError if it belongs to someone else
            StorageError if the store is unavailable (never degraded: ownership must be checked)
        """
        row = await self.store.select_by_id("conversations", conversation_id)
        if row is None:
            raise InvalidInputError(f"Conversation {conversation_id} not found")
        if row["user_id"] != user_id:
            logger.warning("Conversation ownership mismatch", extra={"action": "ownership_denied"})
            raise UnauthorizedError("Conversation belongs to a different user")
        return row

    async def get_or_create(
        self,
        user_id: str,
        conversation_id: Optional[str],
        chat_type: str = "general",
        first_message: str = ""
    ) -> Dict[str, Any]:
        if conversation_id:
            return await self.get_owned_conversation(user_id, conversation_id)
        return await self.create(user_id, chat_type, first_message)

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        model_used: Optional[str] = None,
        provider_used: Optional[str] = None,
        tokens_used: Optional[TokenUsage] = None,
        latency_ms: Optional[float] = None,
        context_included: bool = False
    ) -> str:
        message_id = await self.store.insert("messages", {
            "id": new_id(),
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "model_used": model_used,
            "provider_used": provider_used,
            "tokens_used": tokens_used.model_dump() if tokens_used else None,
            "latency_ms": latency_ms,
            "context_included": context_included,
            "created_at": to_iso(utcnow()),
        })
        await self.store.increment("conversations", conversation_id, "message_count")
        if tokens_used is not None and tokens_used.total:
            await self.store.increment("conversations", conversation_id, "total_tokens", tokens_used.total)
        await self.store.update("conversations", conversation_id, {"updated_at": to_iso(utcnow())})
        return message_id

    async def recent_history(self, conversation_id: str, limit: int = 20) -> List[ConversationTurn]:
        """Last `limit` messages, oldest first."""
        rows = await self.store.select_where(
            "messages", {"conversation_id": conversation_id},
            order_by="created_at", descending=True, limit=limit,
        )
        return [ConversationTurn(role=r["role"], content=r["content"]) for r in reversed(rows)]

    async def list_conversations(
        self,
        user_id: str,
        include_archived: bool = False,
        limit: int = 50
    ) -> List[Dict[str, Any]]:
        where: Dict[str, Any] = {"user_id": user_id}
        if not include_archived:
            where["is_archived"] = False
        rows = await self.store.select_where(
            "conversations", where, order_by="updated_at", descending=True, limit=limit
        )
        # Pinned first, otherwise most recently updated
        return sorted(rows, key=lambda r: not r["is_pinned"])

    async def set_flags(
        self,
        user_id: str,
        conversation_id: str,
        is_archived: Optional[bool] = None,
        is_pinned: Optional[bool] = None
    ) -> Dict[str, Any]:
        row = await self.get_owned_conversation(user_id, conversation_id)
        fields: Dict[str, Any] = {}
        if is_archived is not None:
            fields["is_archived"] = is_archived
        if is_pinned is not None:
            fields["is_pinned"] = is_pinned
        if fields:
            fields["updated_at"] = to_iso(utcnow())
            await self.store.update("conversations", conversation_id, fields)
            row.update(fields)
        return row
