import asyncio
import copy
from types import SimpleNamespace

import pytest

from src.spin.domain.errors import NotFoundError
from src.spin.domain.models import ConversationTurn, FileChange, UploadedFile
from src.spin.infrastructure.conversation_store_mongo import (
    MongoConversationStore,
    decode_files,
    encode_files,
)


class _Cursor:
    def __init__(self, docs):
        self._docs = list(docs)

    def sort(self, field, direction):
        self._docs.sort(key=lambda d: d.get(field, ""), reverse=direction == -1)
        return self

    async def to_list(self, length=None):
        return [copy.deepcopy(d) for d in self._docs]


class _FakeCollection:
    def __init__(self):
        self.docs = []
        self.indexes = []

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return "ok"

    def _match(self, doc, query):
        return all(doc.get(k) == v for k, v in query.items())

    async def insert_one(self, doc):
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=len(self.docs))

    async def find_one(self, query, projection=None):
        for doc in self.docs:
            if self._match(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query, projection=None):
        return _Cursor([d for d in self.docs if self._match(d, query)])

    async def update_one(self, query, update):
        for doc in self.docs:
            if self._match(doc, query):
                for key, value in update.get("$push", {}).items():
                    doc.setdefault(key, []).append(copy.deepcopy(value))
                for key, value in update.get("$set", {}).items():
                    doc[key] = copy.deepcopy(value)
                return SimpleNamespace(matched_count=1)
        return SimpleNamespace(matched_count=0)


class _FakeConnection:
    def __init__(self):
        self.collection = _FakeCollection()
        self.acquired = 0

    async def acquire(self):
        self.acquired += 1
        return {"conversations": self.collection}


def _turn(prompt, state, changes=None):
    return ConversationTurn(prompt=prompt, timestamp="ts", file_changes=changes or [], full_state=state)


def _store(times=("t1", "t2", "t3", "t4")):
    values = list(times)
    conn = _FakeConnection()
    store = MongoConversationStore(connection=conn, clock=lambda: values.pop(0))
    return store, conn


def test_file_maps_are_stored_as_path_lists():
    files = {"/src/App.js": "a", "/package.json": "{}"}
    encoded = encode_files(files)
    assert encoded == [{"path": "/src/App.js", "content": "a"}, {"path": "/package.json", "content": "{}"}]
    assert decode_files(encoded) == files
    assert decode_files({"/legacy.js": "x"}) == {"/legacy.js": "x"}
    assert decode_files(None) == {}


def test_create_append_and_get():
    store, conn = _store()
    upload = UploadedFile(id="f1", name="brief.md", type="text/markdown", size=3, content="abc")
    first = _turn("start", {"/a.js": "1"}, [FileChange(path="/a.js", status="new")])

    cid = asyncio.run(store.create_conversation("u1", "start", [upload], first))
    stored = conn.collection.docs[0]
    assert stored["conversation_id"] == cid
    assert stored["currentFiles"] == [{"path": "/a.js", "content": "1"}]
    assert stored["conversationTurns"][0]["fullState"] == [{"path": "/a.js", "content": "1"}]

    second = _turn(
        "change",
        {"/a.js": "2", "/b.js": "x"},
        [FileChange(path="/a.js", status="updated", previous_content="1"), FileChange(path="/b.js", status="new")],
    )
    asyncio.run(store.append_turn(cid, "u1", second))

    conv = asyncio.run(store.get_conversation(cid, "u1"))
    assert conv.user_id == "u1"
    assert conv.uploaded_files[0].name == "brief.md"
    assert conv.current_files == {"/a.js": "2", "/b.js": "x"}
    assert conv.conversation_turns[-1].full_state == conv.current_files
    assert conv.conversation_turns[-1].file_changes[0].previous_content == "1"
    assert conv.created_at == "t1"
    assert conv.updated_at == "t2"


def test_indexes_created_once():
    store, conn = _store()
    cid = asyncio.run(store.create_conversation("u1", "p", [], _turn("p", {"/a": "1"})))
    asyncio.run(store.get_conversation(cid, "u1"))
    assert len(conn.collection.indexes) == 2
    assert conn.collection.indexes[0] == ("conversation_id", {"unique": True})


def test_ownership_is_enforced():
    store, _ = _store()
    cid = asyncio.run(store.create_conversation("owner", "p", [], _turn("p", {"/a": "1"})))
    with pytest.raises(NotFoundError):
        asyncio.run(store.get_conversation(cid, "intruder"))
    with pytest.raises(NotFoundError):
        asyncio.run(store.append_turn(cid, "intruder", _turn("x", {})))
    with pytest.raises(NotFoundError):
        asyncio.run(store.get_conversation("missing", "owner"))


def test_list_conversations_newest_first():
    store, _ = _store(times=("2024-01-01", "2024-01-02", "2024-01-03"))
    older = asyncio.run(store.create_conversation("u1", "older", [], _turn("older", {"/a": "1"})))
    newer = asyncio.run(store.create_conversation("u1", "newer", [], _turn("newer", {"/a": "1"})))
    asyncio.run(store.create_conversation("u2", "other", [], _turn("other", {"/a": "1"})))

    listed = asyncio.run(store.list_conversations("u1"))
    assert [c.id for c in listed] == [newer, older]
