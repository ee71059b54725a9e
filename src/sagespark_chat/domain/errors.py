"""Error taxonomy for the chat application."""

from typing import Optional


class ChatError(Exception):
    """Base class for all application errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ProviderError(ChatError):
    """Completion or title generation failed."""

    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    CONTENT_FILTER = "content_filter"

    def __init__(self, message: str, kind: str = NETWORK) -> None:
        super().__init__(message)
        self.kind = kind


class StoreError(ChatError):
    """A conversation or user store operation failed."""


class ConversationNotFoundError(StoreError):
    def __init__(self, conversation_id: Optional[object] = None) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class ForbiddenError(StoreError):
    def __init__(self, conversation_id: Optional[object] = None) -> None:
        super().__init__(f"Conversation {conversation_id} belongs to another user")
        self.conversation_id = conversation_id


class ConflictError(StoreError):
    def __init__(self, conversation_id: Optional[object] = None) -> None:
        super().__init__(f"Conversation {conversation_id} already exists")
        self.conversation_id = conversation_id


class AccessDeniedError(StoreError):
    def __init__(self) -> None:
        super().__init__("Authentication required")


class ValidationError(ChatError):
    """Malformed operation input."""


class UnknownConversationError(ValidationError):
    def __init__(self, conversation_id: object) -> None:
        super().__init__(f"Conversation {conversation_id} is not loaded")
        self.conversation_id = conversation_id


class PendingCompletionError(ValidationError):
    def __init__(self, conversation_id: object) -> None:
        super().__init__(f"Conversation {conversation_id} already has a pending response")
        self.conversation_id = conversation_id


class AuthenticationError(ChatError):
    """Signup or login failed."""


class UserExistsError(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("Username already taken")


class InvalidCredentialsError(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("Invalid username or password")
