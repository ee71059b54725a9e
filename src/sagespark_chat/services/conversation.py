"""Conversation state machine.

Owns the in-memory conversation list of one session and evolves it under
create, select, send, edit-and-regenerate and delete. Every mutation the
user should see is applied to memory first; persistence of completed
results happens in detached tasks whose failures are reported as notices
instead of being raised back through the caller.
"""

import asyncio
import re
from typing import Awaitable, Callable, List, Optional, Set
from uuid import UUID

import structlog

from ..domain.errors import (
    PendingCompletionError,
    ProviderError,
    StoreError,
    UnknownConversationError,
    ValidationError,
)
from ..domain.models import (
    DEFAULT_TITLE,
    GUEST_USER_ID,
    Conversation,
    ConversationUpdate,
    Message,
    Notice,
    NoticeLevel,
    Role,
    utcnow,
)
from ..repositories.base import ConversationStore
from .llm import CompletionProvider

logger = structlog.get_logger()

TITLE_MAX_WORDS = 5

_QUOTES = re.compile(r"[\"`“”„«»]")
_EDGE_QUOTES = "'‘’"


def fallback_title(text: str) -> str:
    """First five words of the text, or the default title."""
    words = text.split()
    if not words:
        return DEFAULT_TITLE
    return " ".join(words[:TITLE_MAX_WORDS])


def clean_title(raw: str) -> str:
    """Strip quote characters and clamp a generated title to five words."""
    title = _QUOTES.sub("", raw).strip().strip(_EDGE_QUOTES)
    return " ".join(title.split()[:TITLE_MAX_WORDS])


class ConversationStateMachine:
    """In-memory conversation state for a single session."""

    def __init__(
        self,
        store: ConversationStore,
        provider: CompletionProvider,
        user_id: str = GUEST_USER_ID,
        on_notice: Optional[Callable[[Notice], None]] = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.user_id = user_id
        self.on_notice = on_notice
        self.conversations: List[Conversation] = []
        self.active_conversation_id: Optional[UUID] = None
        self.notices: List[Notice] = []
        self._background: Set[asyncio.Task] = set()
        self._titling: Set[UUID] = set()

    @property
    def active_conversation(self) -> Optional[Conversation]:
        if self.active_conversation_id is None:
            return None
        return self.get_conversation(self.active_conversation_id)

    def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    async def load(self) -> List[Conversation]:
        """Populate the conversation list from the store."""
        self.conversations = await self.store.list_conversations(self.user_id)
        if self.active_conversation is None:
            self.active_conversation_id = self.conversations[0].id if self.conversations else None
        logger.info("conversations_loaded", user_id=self.user_id, count=len(self.conversations))
        return self.conversations

    async def create_conversation(self) -> Conversation:
        """Create an empty conversation, persist it, then make it active.

        Raises StoreError without touching local state if the store
        refuses the conversation.
        """
        try:
            conversation = await self.store.create_conversation(Conversation(user_id=self.user_id))
        except StoreError as e:
            logger.error("create_conversation_error", user_id=self.user_id, error=e.message)
            raise
        self.conversations.insert(0, conversation)
        self.active_conversation_id = conversation.id
        logger.info("conversation_created", conversation_id=str(conversation.id))
        return conversation

    def select_conversation(self, conversation_id: UUID) -> bool:
        if self.get_conversation(conversation_id) is None:
            logger.warning("select_conversation_not_found", conversation_id=str(conversation_id))
            return False
        self.active_conversation_id = conversation_id
        return True

    async def send_message(
        self,
        text: str,
        image_url: Optional[str] = None,
        conversation_id: Optional[UUID] = None,
    ) -> Optional[Message]:
        """Append a user message and request the assistant reply.

        Text may be empty when an image is attached. Returns the completed
        assistant message, or None when the provider failed (the placeholder
        is rolled back and an error notice raised).
        """
        text = text or ""
        if not text.strip() and not image_url:
            raise ValidationError("Message needs text or an image")
        conversation = await self._resolve_target(conversation_id)
        if conversation.pending:
            logger.error("completion_already_pending", conversation_id=str(conversation.id))
            raise PendingCompletionError(conversation.id)

        first_message = not conversation.messages
        conversation.messages.append(Message(role=Role.USER, content=text, image_url=image_url))
        # An image-only first message leaves the default title in place.
        if first_message and text.strip() and conversation.title == DEFAULT_TITLE:
            self._start_title(conversation, text)
        return await self._complete(conversation)

    async def edit_message(
        self, conversation_id: UUID, message_id: UUID, new_content: str
    ) -> Optional[Message]:
        """Replace a user message, drop everything after it and regenerate.

        Unknown conversation or message ids are a no-op returning None.
        The truncation is persisted before local state changes; a
        StoreError propagates and leaves the conversation untouched.
        """
        if not new_content or not new_content.strip():
            raise ValidationError("Message content must not be empty")
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            logger.warning("edit_conversation_not_found", conversation_id=str(conversation_id))
            return None
        index = conversation.find_message(message_id)
        if index is None:
            logger.warning(
                "edit_message_not_found",
                conversation_id=str(conversation_id),
                message_id=str(message_id),
            )
            return None
        if conversation.pending:
            raise PendingCompletionError(conversation.id)
        if conversation.messages[index].role != Role.USER:
            raise ValidationError("Only user messages can be edited")
        edited = conversation.messages[index].model_copy(update={"content": new_content, "timestamp": utcnow()})
        truncated = conversation.messages[:index] + [edited]
        try:
            await self.store.update_conversation(
                conversation.id, self.user_id, ConversationUpdate(messages=truncated)
            )
        except StoreError as e:
            logger.error("edit_message_error", conversation_id=str(conversation.id), error=e.message)
            raise
        if self.get_conversation(conversation.id) is None:
            return None
        if conversation.pending:
            raise PendingCompletionError(conversation.id)

        conversation.messages = truncated
        logger.info(
            "message_edited",
            conversation_id=str(conversation.id),
            message_id=str(message_id),
            kept=len(truncated),
        )
        if conversation.title == DEFAULT_TITLE and conversation.id not in self._titling:
            self._start_title(conversation, new_content)
        return await self._complete(conversation)

    async def delete_conversation(self, conversation_id: UUID) -> bool:
        """Delete a conversation in the store first, then locally."""
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            logger.warning("delete_conversation_not_found", conversation_id=str(conversation_id))
            return False
        try:
            await self.store.delete_conversation(conversation_id, self.user_id)
        except StoreError as e:
            logger.error("delete_conversation_error", conversation_id=str(conversation_id), error=e.message)
            raise
        self.conversations.remove(conversation)
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = self.conversations[0].id if self.conversations else None
        logger.info("conversation_removed", conversation_id=str(conversation_id))
        return True

    async def wait_idle(self) -> None:
        """Wait for title derivation and background syncs to finish."""
        while self._background:
            await asyncio.gather(*list(self._background))

    def drain_notices(self) -> List[Notice]:
        notices, self.notices = self.notices, []
        return notices

    async def _resolve_target(self, conversation_id: Optional[UUID]) -> Conversation:
        if conversation_id is not None:
            conversation = self.get_conversation(conversation_id)
            if conversation is None:
                raise UnknownConversationError(conversation_id)
            return conversation
        active = self.active_conversation
        if active is not None:
            return active
        return await self.create_conversation()

    async def _complete(self, conversation: Conversation) -> Optional[Message]:
        history = [m.model_copy() for m in conversation.messages]
        placeholder = Message(role=Role.ASSISTANT, is_loading=True)
        conversation.messages.append(placeholder)

        try:
            reply = await self.provider.generate(history)
            if not reply or not reply.strip():
                raise ProviderError("The model returned an empty response.")
        except Exception as e:
            reason = e.message if isinstance(e, ProviderError) else str(e)
            logger.error("completion_failed", conversation_id=str(conversation.id), error=reason)
            index = conversation.find_message(placeholder.id)
            if index is not None:
                del conversation.messages[index]
            self._notify(NoticeLevel.ERROR, f"Failed to get response from AI: {reason}", conversation.id)
            self._sync_messages(conversation)
            return None

        placeholder.content = reply
        placeholder.is_loading = False
        logger.info(
            "message_processed",
            conversation_id=str(conversation.id),
            history_length=len(history),
            response_length=len(reply),
        )
        self._sync_messages(conversation)
        return placeholder

    def _start_title(self, conversation: Conversation, text: str) -> None:
        self._titling.add(conversation.id)
        self._spawn(self._derive_title(conversation, text))

    async def _derive_title(self, conversation: Conversation, text: str) -> None:
        try:
            title = clean_title(await self.provider.summarize_title(text)) or fallback_title(text)
        except Exception as e:
            logger.warning("title_generation_failed", conversation_id=str(conversation.id), error=str(e))
            title = fallback_title(text)
        finally:
            self._titling.discard(conversation.id)

        if conversation.title != DEFAULT_TITLE or self.get_conversation(conversation.id) is None:
            return
        conversation.title = title
        logger.info("conversation_titled", conversation_id=str(conversation.id), title=title)
        await self._persist(conversation.id, ConversationUpdate(title=title))

    def _sync_messages(self, conversation: Conversation) -> None:
        if self.get_conversation(conversation.id) is None:
            return
        snapshot = [m.model_copy(deep=True) for m in conversation.messages if not m.is_loading]
        self._spawn(self._persist(conversation.id, ConversationUpdate(messages=snapshot)))

    async def _persist(self, conversation_id: UUID, update: ConversationUpdate) -> None:
        try:
            await self.store.update_conversation(conversation_id, self.user_id, update)
        except StoreError as e:
            if self.get_conversation(conversation_id) is None:
                return
            logger.warning("sync_failed", conversation_id=str(conversation_id), error=e.message)
            self._notify(NoticeLevel.SYNC, f"Could not save conversation: {e.message}", conversation_id)

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _notify(self, level: NoticeLevel, message: str, conversation_id: Optional[UUID] = None) -> None:
        notice = Notice(level=level, message=message, conversation_id=conversation_id)
        self.notices.append(notice)
        if self.on_notice is not None:
            self.on_notice(notice)
