"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

DEFAULT_TITLE = "New Chat"
GUEST_USER_ID = "guest"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """Message model."""

    id: UUID = Field(default_factory=uuid4)
    role: Role = Role.USER
    content: str = ""
    image_url: Optional[str] = None
    is_loading: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    """Conversation model."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str = GUEST_USER_ID
    title: str = DEFAULT_TITLE
    messages: List[Message] = []
    created_at: datetime = Field(default_factory=utcnow)

    def find_message(self, message_id: UUID) -> Optional[int]:
        """Return the position of a message, or None."""
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return None

    @property
    def pending(self) -> bool:
        return any(m.is_loading for m in self.messages)


class ConversationUpdate(BaseModel):
    """Partial conversation update; only fields that were set are applied."""

    title: Optional[str] = None
    messages: Optional[List[Message]] = None


class User(BaseModel):
    """Registered user."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    username: str
    password_hash: str


class Identity(BaseModel):
    """Who is behind a session; no user_id means a guest."""

    session_id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: Optional[str] = None
    username: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def owner_id(self) -> str:
        return self.user_id or GUEST_USER_ID


class NoticeLevel(str, Enum):
    ERROR = "error"
    SYNC = "sync"


class Notice(BaseModel):
    """User-facing notification raised outside the calling operation."""

    level: NoticeLevel
    message: str
    conversation_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)
