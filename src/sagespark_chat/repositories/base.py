"""Base repository interfaces."""

from abc import ABC, abstractmethod
from typing import List, Optional
from uuid import UUID

from ..domain.errors import ForbiddenError
from ..domain.models import Conversation, ConversationUpdate, User


class ConversationStore(ABC):
    """Abstract base class for conversation stores."""

    @abstractmethod
    async def list_conversations(self, user_id: str) -> List[Conversation]:
        """List a user's conversations, newest first."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID, user_id: str) -> Conversation:
        """Retrieve a conversation owned by user_id."""
        pass

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Persist a new conversation."""
        pass

    @abstractmethod
    async def update_conversation(
        self, conversation_id: UUID, user_id: str, update: ConversationUpdate
    ) -> Conversation:
        """Replace the supplied fields of a conversation."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: UUID, user_id: str) -> None:
        """Delete a conversation."""
        pass


class UserStore(ABC):
    """Abstract base class for user stores."""

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[User]:
        """Look up a user, ignoring case."""
        pass

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """Persist a new user."""
        pass


def check_owner(conversation: Conversation, user_id: str) -> None:
    if conversation.user_id != user_id:
        raise ForbiddenError(conversation.id)


def apply_update(conversation: Conversation, update: ConversationUpdate) -> Conversation:
    """Return a copy of conversation with the explicitly set fields replaced."""
    fields = {}
    if "title" in update.model_fields_set and update.title is not None:
        fields["title"] = update.title
    if "messages" in update.model_fields_set and update.messages is not None:
        fields["messages"] = [m.model_copy(deep=True) for m in update.messages]
    return conversation.model_copy(update=fields, deep=True)
