"""Shared fixtures and fakes."""

import asyncio
from typing import List, Optional, Sequence

import pytest

from sagespark_chat.domain.errors import StoreError
from sagespark_chat.domain.models import Conversation, ConversationUpdate, Message
from sagespark_chat.repositories.memory import InMemoryRepository
from sagespark_chat.services.conversation import ConversationStateMachine
from sagespark_chat.services.llm import CompletionProvider


class FakeProvider(CompletionProvider):
    """Completion provider with scripted replies."""

    def __init__(self) -> None:
        self.reply = "Hi there! How can I help?"
        self.title = "Friendly Greeting"
        self.error: Optional[Exception] = None
        self.title_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[List[Message]] = []
        self.title_calls: List[str] = []

    async def generate(self, history: Sequence[Message]) -> str:
        self.calls.append(list(history))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply

    async def summarize_title(self, text: str) -> str:
        self.title_calls.append(text)
        if self.title_error is not None:
            raise self.title_error
        return self.title


class FlakyStore(InMemoryRepository):
    """In-memory store whose operations can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_create = False
        self.fail_update = False
        self.fail_delete = False

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        if self.fail_create:
            raise StoreError("store unavailable")
        return await super().create_conversation(conversation)

    async def update_conversation(self, conversation_id, user_id: str, update: ConversationUpdate) -> Conversation:
        if self.fail_update:
            raise StoreError("store unavailable")
        return await super().update_conversation(conversation_id, user_id, update)

    async def delete_conversation(self, conversation_id, user_id: str) -> None:
        if self.fail_delete:
            raise StoreError("store unavailable")
        await super().delete_conversation(conversation_id, user_id)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def machine(store: FlakyStore, provider: FakeProvider) -> ConversationStateMachine:
    return ConversationStateMachine(store, provider)
