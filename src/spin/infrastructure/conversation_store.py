from __future__ import annotations

from datetime import UTC, datetime
from itertools import count
from threading import RLock
from typing import Callable, Dict, List, Optional, Protocol, Sequence
import os
import uuid

from ..domain.errors import NotFoundError
from ..domain.models import Conversation, ConversationTurn, UploadedFile


def now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class ConversationStore(Protocol):
    async def create_conversation(
        self,
        user_id: str,
        initial_prompt: str,
        uploaded_files: Sequence[UploadedFile],
        first_turn: ConversationTurn,
    ) -> str: ...

    async def append_turn(self, conversation_id: str, user_id: str, turn: ConversationTurn) -> None: ...

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation: ...

    async def list_conversations(self, user_id: str) -> List[Conversation]: ...


class InMemoryConversationStore:
    """Dict-backed store; models are copied on the way in and out."""

    def __init__(self, clock: Callable[[], str] = now_iso) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._touched: Dict[str, int] = {}
        self._seq = count()
        self._clock = clock
        self._lock = RLock()

    def _owned(self, conversation_id: str, user_id: str) -> Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None or conv.user_id != user_id:
            raise NotFoundError("Conversation not found")
        return conv

    async def create_conversation(
        self,
        user_id: str,
        initial_prompt: str,
        uploaded_files: Sequence[UploadedFile],
        first_turn: ConversationTurn,
    ) -> str:
        with self._lock:
            cid = uuid.uuid4().hex
            now = self._clock()
            turn = first_turn.model_copy(deep=True)
            self._conversations[cid] = Conversation(
                id=cid,
                user_id=user_id,
                initial_prompt=initial_prompt,
                uploaded_files=[f.model_copy(deep=True) for f in uploaded_files],
                conversation_turns=[turn],
                current_files=dict(turn.full_state),
                created_at=now,
                updated_at=now,
            )
            self._touched[cid] = next(self._seq)
            return cid

    async def append_turn(self, conversation_id: str, user_id: str, turn: ConversationTurn) -> None:
        with self._lock:
            conv = self._owned(conversation_id, user_id)
            stored = turn.model_copy(deep=True)
            conv.conversation_turns.append(stored)
            conv.current_files = dict(stored.full_state)
            conv.updated_at = self._clock()
            self._touched[conversation_id] = next(self._seq)

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        with self._lock:
            return self._owned(conversation_id, user_id).model_copy(deep=True)

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        with self._lock:
            owned = [c for c in self._conversations.values() if c.user_id == user_id]
            # Newest first; the sequence breaks ties between equal timestamps.
            owned.sort(key=lambda c: (c.updated_at, self._touched.get(c.id, 0)), reverse=True)
            return [c.model_copy(deep=True) for c in owned]

    def count(self) -> int:
        with self._lock:
            return len(self._conversations)


_store: Optional[ConversationStore] = None


def get_conversation_store() -> ConversationStore:
    global _store
    if _store is not None:
        return _store
    impl = (os.getenv("SPIN_STORE_IMPL") or "memory").lower()
    if impl == "mongo":
        from .conversation_store_mongo import MongoConversationStore

        _store = MongoConversationStore()
    else:
        _store = InMemoryConversationStore()
    return _store


def reset_conversation_store(store: Optional[ConversationStore] = None) -> None:
    global _store
    _store = store
