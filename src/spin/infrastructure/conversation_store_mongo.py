from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
import uuid

from pymongo import ASCENDING, DESCENDING

from ..domain.errors import NotFoundError
from ..domain.models import Conversation, ConversationTurn, UploadedFile
from .conversation_store import now_iso
from .mongo import MongoConnection, get_mongo_connection


COLLECTION = "conversations"


def encode_files(files: Mapping[str, str]) -> List[Dict[str, str]]:
    # File paths contain dots, which are awkward as MongoDB field names.
    return [{"path": path, "content": content} for path, content in files.items()]


def decode_files(entries: Any) -> Dict[str, str]:
    if isinstance(entries, dict):
        return {str(k): str(v) for k, v in entries.items()}
    return {str(e.get("path")): str(e.get("content", "")) for e in entries or [] if isinstance(e, dict)}


def _turn_doc(turn: ConversationTurn) -> Dict[str, Any]:
    doc = turn.model_dump(by_alias=True, exclude_none=True)
    doc["fullState"] = encode_files(turn.full_state)
    return doc


def _to_conversation(doc: Dict[str, Any]) -> Conversation:
    turns = []
    for raw in doc.get("conversationTurns") or []:
        data = dict(raw)
        data["fullState"] = decode_files(raw.get("fullState"))
        turns.append(ConversationTurn.model_validate(data))
    return Conversation(
        id=doc["conversation_id"],
        user_id=doc["userId"],
        initial_prompt=doc.get("initialPrompt", ""),
        uploaded_files=[UploadedFile.model_validate(u) for u in doc.get("uploadedFiles") or []],
        conversation_turns=turns,
        current_files=decode_files(doc.get("currentFiles")),
        created_at=doc.get("createdAt", ""),
        updated_at=doc.get("updatedAt", ""),
    )


class MongoConversationStore:
    """One document per conversation in the ``conversations`` collection."""

    def __init__(
        self,
        connection: Optional[MongoConnection] = None,
        clock: Callable[[], str] = now_iso,
    ) -> None:
        self._connection = connection or get_mongo_connection()
        self._clock = clock
        self._indexed = False

    async def _collection(self) -> Any:
        db = await self._connection.acquire()
        coll = db[COLLECTION]
        if not self._indexed:
            await coll.create_index("conversation_id", unique=True)
            await coll.create_index([("userId", ASCENDING), ("updatedAt", DESCENDING)])
            self._indexed = True
        return coll

    async def create_conversation(
        self,
        user_id: str,
        initial_prompt: str,
        uploaded_files: Sequence[UploadedFile],
        first_turn: ConversationTurn,
    ) -> str:
        coll = await self._collection()
        cid = uuid.uuid4().hex
        now = self._clock()
        doc = {
            "conversation_id": cid,
            "userId": user_id,
            "initialPrompt": initial_prompt,
            "uploadedFiles": [f.model_dump(by_alias=True, exclude_none=True) for f in uploaded_files],
            "conversationTurns": [_turn_doc(first_turn)],
            "currentFiles": encode_files(first_turn.full_state),
            "createdAt": now,
            "updatedAt": now,
        }
        await coll.insert_one(doc)
        return cid

    async def append_turn(self, conversation_id: str, user_id: str, turn: ConversationTurn) -> None:
        coll = await self._collection()
        # Single update so the turn list and currentFiles change together.
        result = await coll.update_one(
            {"conversation_id": conversation_id, "userId": user_id},
            {
                "$push": {"conversationTurns": _turn_doc(turn)},
                "$set": {"currentFiles": encode_files(turn.full_state), "updatedAt": self._clock()},
            },
        )
        if result.matched_count == 0:
            raise NotFoundError("Conversation not found")

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        coll = await self._collection()
        doc = await coll.find_one({"conversation_id": conversation_id}, {"_id": 0})
        if not doc or doc.get("userId") != user_id:
            raise NotFoundError("Conversation not found")
        return _to_conversation(doc)

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        coll = await self._collection()
        cursor = coll.find({"userId": user_id}, {"_id": 0}).sort("updatedAt", DESCENDING)
        docs = await cursor.to_list(length=None)
        return [_to_conversation(doc) for doc in docs]
