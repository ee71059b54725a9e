"""File-backed repository: a single JSON document read and written whole."""

import asyncio
from pathlib import Path
from typing import List, Optional, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, ValidationError

from ..domain.errors import (
    AccessDeniedError,
    ConflictError,
    ConversationNotFoundError,
    StoreError,
    UserExistsError,
)
from ..domain.models import GUEST_USER_ID, Conversation, ConversationUpdate, User
from .base import ConversationStore, UserStore, apply_update, check_owner

logger = structlog.get_logger()


class Database(BaseModel):
    users: List[User] = []
    conversations: List[Conversation] = []


class JsonFileRepository(ConversationStore, UserStore):
    """Persistent store for registered users and their conversations.

    There is no indexing: every call loads the whole file, and every
    mutation writes the whole file back. A process-local lock serializes
    read-modify-write cycles.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()
        logger.info("repository_initialized", backend="json_file", path=str(self.path))

    def _read_sync(self) -> Database:
        if not self.path.exists():
            return Database()
        return Database.model_validate_json(self.path.read_text(encoding="utf-8"))

    def _write_sync(self, database: Database) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(database.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self.path)

    async def _read(self) -> Database:
        try:
            return await asyncio.to_thread(self._read_sync)
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.error("database_read_error", path=str(self.path), error=str(e))
            raise StoreError(f"Could not read database: {e}") from e

    async def _write(self, database: Database) -> None:
        try:
            await asyncio.to_thread(self._write_sync, database)
        except OSError as e:
            logger.error("database_write_error", path=str(self.path), error=str(e))
            raise StoreError(f"Could not write database: {e}") from e

    @staticmethod
    def _require_user(user_id: str) -> None:
        if not user_id or user_id == GUEST_USER_ID:
            raise AccessDeniedError()

    @staticmethod
    def _index(database: Database, conversation_id: UUID) -> int:
        for index, conversation in enumerate(database.conversations):
            if conversation.id == conversation_id:
                return index
        logger.warning("conversation_not_found", conversation_id=str(conversation_id))
        raise ConversationNotFoundError(conversation_id)

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        self._require_user(user_id)
        async with self._lock:
            database = await self._read()
        return sorted(
            (c for c in database.conversations if c.user_id == user_id),
            key=lambda c: c.created_at,
            reverse=True,
        )

    async def get_conversation(self, conversation_id: UUID, user_id: str) -> Conversation:
        self._require_user(user_id)
        async with self._lock:
            database = await self._read()
        conversation = database.conversations[self._index(database, conversation_id)]
        check_owner(conversation, user_id)
        return conversation

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        self._require_user(conversation.user_id)
        async with self._lock:
            database = await self._read()
            if any(c.id == conversation.id for c in database.conversations):
                raise ConflictError(conversation.id)
            database.conversations.append(conversation.model_copy(deep=True))
            await self._write(database)
        logger.info("conversation_stored", conversation_id=str(conversation.id))
        return conversation.model_copy(deep=True)

    async def update_conversation(
        self, conversation_id: UUID, user_id: str, update: ConversationUpdate
    ) -> Conversation:
        self._require_user(user_id)
        async with self._lock:
            database = await self._read()
            index = self._index(database, conversation_id)
            check_owner(database.conversations[index], user_id)
            updated = apply_update(database.conversations[index], update)
            database.conversations[index] = updated
            await self._write(database)
        logger.info(
            "conversation_updated",
            conversation_id=str(conversation_id),
            fields=sorted(update.model_fields_set),
        )
        return updated

    async def delete_conversation(self, conversation_id: UUID, user_id: str) -> None:
        self._require_user(user_id)
        async with self._lock:
            database = await self._read()
            index = self._index(database, conversation_id)
            check_owner(database.conversations[index], user_id)
            del database.conversations[index]
            await self._write(database)
        logger.info("conversation_deleted", conversation_id=str(conversation_id))

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self._lock:
            database = await self._read()
        wanted = username.lower()
        for user in database.users:
            if user.username.lower() == wanted:
                return user
        return None

    async def create_user(self, user: User) -> User:
        async with self._lock:
            database = await self._read()
            wanted = user.username.lower()
            if any(u.username.lower() == wanted for u in database.users):
                raise UserExistsError()
            database.users.append(user)
            await self._write(database)
        logger.info("user_created", user_id=user.id)
        return user
