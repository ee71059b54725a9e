"""In-memory repository implementation."""

import asyncio
from typing import Dict, List
from uuid import UUID

import structlog

from ..domain.errors import ConflictError, ConversationNotFoundError
from ..domain.models import Conversation, ConversationUpdate
from .base import ConversationStore, apply_update, check_owner

logger = structlog.get_logger()


class InMemoryRepository(ConversationStore):
    """Ephemeral conversation store, one per guest session."""

    def __init__(self) -> None:
        self._conversations: Dict[UUID, Conversation] = {}
        self._lock = asyncio.Lock()
        logger.info("repository_initialized", backend="memory")

    def _get(self, conversation_id: UUID, user_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            logger.warning("conversation_not_found", conversation_id=str(conversation_id))
            raise ConversationNotFoundError(conversation_id)
        check_owner(conversation, user_id)
        return conversation

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        async with self._lock:
            conversations = sorted(
                (c for c in self._conversations.values() if c.user_id == user_id),
                key=lambda c: c.created_at,
                reverse=True,
            )
            return [c.model_copy(deep=True) for c in conversations]

    async def get_conversation(self, conversation_id: UUID, user_id: str) -> Conversation:
        async with self._lock:
            return self._get(conversation_id, user_id).model_copy(deep=True)

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            if conversation.id in self._conversations:
                raise ConflictError(conversation.id)
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
            logger.info("conversation_stored", conversation_id=str(conversation.id))
        return conversation.model_copy(deep=True)

    async def update_conversation(
        self, conversation_id: UUID, user_id: str, update: ConversationUpdate
    ) -> Conversation:
        async with self._lock:
            updated = apply_update(self._get(conversation_id, user_id), update)
            self._conversations[conversation_id] = updated
            logger.info(
                "conversation_updated",
                conversation_id=str(conversation_id),
                fields=sorted(update.model_fields_set),
            )
            return updated.model_copy(deep=True)

    async def delete_conversation(self, conversation_id: UUID, user_id: str) -> None:
        async with self._lock:
            self._get(conversation_id, user_id)
            del self._conversations[conversation_id]
            logger.info("conversation_deleted", conversation_id=str(conversation_id))
