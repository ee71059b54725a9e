"""Per-session conversation state.

Guests get a private in-memory store that disappears with the process;
signed-in users share the persistent store and keep one state machine per
user id, so several browser sessions see the same conversation list.
"""

import asyncio
from collections import OrderedDict
from typing import Dict

import structlog

from ..domain.models import Identity
from ..repositories.base import ConversationStore
from ..repositories.memory import InMemoryRepository
from .conversation import ConversationStateMachine
from .llm import CompletionProvider

logger = structlog.get_logger()


class SessionRegistry:
    """Hands out the ConversationStateMachine for an identity.

    Guest sessions are kept in least-recently-used order and the oldest
    is evicted once more than max_guest_sessions are live.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        store: ConversationStore,
        max_guest_sessions: int = 1000,
    ) -> None:
        self.provider = provider
        self.store = store
        self.max_guest_sessions = max_guest_sessions
        self._guests: "OrderedDict[str, ConversationStateMachine]" = OrderedDict()
        self._users: Dict[str, ConversationStateMachine] = {}
        self._lock = asyncio.Lock()

    @property
    def guest_count(self) -> int:
        return len(self._guests)

    async def get(self, identity: Identity) -> ConversationStateMachine:
        async with self._lock:
            if identity.is_guest:
                return self._get_guest(identity.session_id)

            machine = self._users.get(identity.user_id)
            if machine is None:
                machine = ConversationStateMachine(self.store, self.provider, user_id=identity.user_id)
                await machine.load()
                self._users[identity.user_id] = machine
                logger.info("user_session_started", user_id=identity.user_id)
            return machine

    def _get_guest(self, session_id: str) -> ConversationStateMachine:
        machine = self._guests.get(session_id)
        if machine is not None:
            self._guests.move_to_end(session_id)
            return machine

        machine = ConversationStateMachine(InMemoryRepository(), self.provider)
        self._guests[session_id] = machine
        logger.info("guest_session_started", session_id=session_id)
        while len(self._guests) > self.max_guest_sessions:
            evicted, _ = self._guests.popitem(last=False)
            logger.info("guest_session_evicted", session_id=evicted)
        return machine

    def forget(self, identity: Identity) -> None:
        """Drop a guest session's state."""
        if identity.is_guest:
            self._guests.pop(identity.session_id, None)

    async def wait_idle(self) -> None:
        machines = list(self._guests.values()) + list(self._users.values())
        await asyncio.gather(*(m.wait_idle() for m in machines))
