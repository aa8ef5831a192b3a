from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from firebase_admin import firestore as firebase_firestore
from google.api_core import exceptions as google_exceptions

from qwen_backend.chats.models import ChatSession, FileMessage, FileReference, TextMessage
from qwen_backend.chats.store import (
    FirestoreSessionStore,
    InMemorySessionStore,
    document_to_session,
    session_to_document,
    to_datetime,
)
from qwen_backend.errors import NotFoundError, SessionStoreError, UnauthorizedError


class FakeSnapshot:
    def __init__(self, doc_id: str, data: dict[str, Any] | None):
        self.id = doc_id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> dict[str, Any] | None:
        return dict(self._data) if self._data is not None else None


class FakeDocRef:
    def __init__(self, collection: "FakeCollection", doc_id: str):
        self._collection = collection
        self.id = doc_id

    def get(self) -> FakeSnapshot:
        return FakeSnapshot(self.id, self._collection.docs.get(self.id))

    def set(self, data: dict[str, Any]) -> None:
        self._collection.docs[self.id] = dict(data)

    def update(self, data: dict[str, Any]) -> None:
        self._collection.updates.append((self.id, dict(data)))
        self._collection.docs[self.id].update(data)

    def delete(self) -> None:
        del self._collection.docs[self.id]


class FakeQuery:
    def __init__(self, collection: "FakeCollection", owner_id: str):
        self._collection = collection
        self._owner_id = owner_id
        self._limit: int | None = None
        self.snapshot_callback = None

    def limit(self, value: int) -> "FakeQuery":
        self._limit = value
        return self

    def stream(self) -> list[FakeSnapshot]:
        docs = [
            FakeSnapshot(doc_id, data)
            for doc_id, data in self._collection.docs.items()
            if data.get("userId") == self._owner_id
        ]
        return docs[: self._limit] if self._limit else docs

    def on_snapshot(self, callback):
        self.snapshot_callback = callback
        self._collection.watches.append(self)
        return FakeWatch(self)


class FakeWatch:
    def __init__(self, query: FakeQuery):
        self.query = query
        self.unsubscribed = False

    def unsubscribe(self) -> None:
        self.unsubscribed = True


class FakeCollection:
    def __init__(self):
        self.docs: dict[str, dict[str, Any]] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.watches: list[FakeQuery] = []
        self._counter = 0

    def document(self, doc_id: str | None = None) -> FakeDocRef:
        if doc_id is None:
            self._counter += 1
            doc_id = f"doc-{self._counter}"
        return FakeDocRef(self, doc_id)

    def where(self, *, filter) -> FakeQuery:
        return FakeQuery(self, filter.value)


class FakeFirestore:
    def __init__(self):
        self.chats = FakeCollection()

    def collection(self, name: str) -> FakeCollection:
        assert name == "chats"
        return self.chats


class BrokenFirestore:
    def collection(self, name: str):
        raise google_exceptions.ServiceUnavailable("firestore down")


def _session(session_id: str = "s1") -> ChatSession:
    session = ChatSession(id=session_id, title="Greeting")
    session.append(TextMessage(id="m1", role="user", content="hello"))
    session.append(TextMessage(id="m2", role="assistant", content="Hi there"))
    return session


def test_to_datetime_handles_placeholders_and_naive_values():
    now = datetime.now(timezone.utc)
    assert to_datetime(None) >= now
    assert to_datetime(firebase_firestore.SERVER_TIMESTAMP) >= now

    naive = datetime(2024, 1, 2, 3, 4, 5)
    assert to_datetime(naive) == naive.replace(tzinfo=timezone.utc)

    class Stamp:
        def to_datetime(self):
            return datetime(2024, 5, 6, tzinfo=timezone.utc)

    assert to_datetime(Stamp()) == datetime(2024, 5, 6, tzinfo=timezone.utc)


def test_document_round_trip_preserves_message_variants():
    session = _session()
    ref = FileReference(id="f1", name="a.txt", mime_type="text/plain", size=10)
    session.append(FileMessage(id="m3", role="user", content="see file", files=(ref,)))

    document = session_to_document(session, "uid-1")
    restored = document_to_session("s1", document)

    assert document["userId"] == "uid-1"
    assert "isLoading" not in document["messages"][0]
    assert [message.content for message in restored.messages] == ["hello", "Hi there", "see file"]
    assert isinstance(restored.messages[2], FileMessage)
    assert restored.messages[2].files == (ref,)


def test_document_without_title_loads_as_untitled():
    restored = document_to_session("s9", {"messages": [], "userId": "u"})
    assert restored.title == "Untitled Chat"


class InMemorySessionStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = InMemorySessionStore()

    async def test_create_save_get(self):
        session_id = await self.store.create_session("Greeting", "uid-1")
        await self.store.save_session(session_id, _session(session_id), "uid-1")

        loaded = await self.store.get_session(session_id, "uid-1")
        self.assertIsNotNone(loaded)
        self.assertEqual([m.content for m in loaded.messages], ["hello", "Hi there"])

    async def test_missing_and_foreign_sessions(self):
        session_id = await self.store.create_session("Mine", "uid-1")

        self.assertIsNone(await self.store.get_session("missing", "uid-1"))
        with self.assertRaises(UnauthorizedError):
            await self.store.get_session(session_id, "uid-2")
        with self.assertRaises(NotFoundError):
            await self.store.save_session("missing", _session("missing"), "uid-1")
        with self.assertRaises(UnauthorizedError):
            await self.store.delete_session(session_id, "uid-2")

    async def test_subscribe_pushes_initial_and_subsequent_snapshots(self):
        snapshots: list[list[ChatSession]] = []
        unsubscribe = self.store.subscribe("uid-1", snapshots.append, lambda exc: None)
        await asyncio.sleep(0)
        self.assertEqual(snapshots, [[]])

        older = await self.store.create_session("Older", "uid-1")
        await self.store.create_session("Other user", "uid-2")
        newer = await self.store.create_session("Newer", "uid-1")
        await asyncio.sleep(0)

        latest = snapshots[-1]
        self.assertEqual({s.id for s in latest}, {newer, older})
        self.assertGreaterEqual(latest[0].updated_at, latest[1].updated_at)

        unsubscribe()
        self.assertEqual(self.store.listener_count("uid-1"), 0)
        await self.store.delete_session(older, "uid-1")
        await asyncio.sleep(0)
        self.assertEqual(len(snapshots[-1]), 2)

    async def test_update_title_and_list(self):
        session_id = await self.store.create_session("Old", "uid-1")
        await self.store.update_title(session_id, "Renamed", "uid-1")

        sessions = await self.store.list_sessions("uid-1")
        self.assertEqual([s.title for s in sessions], ["Renamed"])


@pytest.mark.asyncio
async def test_firestore_store_create_save_and_owner_checks():
    firestore = FakeFirestore()
    store = FirestoreSessionStore(firestore)

    session_id = await store.create_session("Greeting", "uid-1")
    stored = firestore.chats.docs[session_id]
    assert stored["userId"] == "uid-1"
    assert stored["createdAt"] is firebase_firestore.SERVER_TIMESTAMP

    await store.save_session(session_id, _session(session_id), "uid-1")
    doc_id, update = firestore.chats.updates[-1]
    assert doc_id == session_id
    assert [m["content"] for m in update["messages"]] == ["hello", "Hi there"]
    assert update["updatedAt"] is firebase_firestore.SERVER_TIMESTAMP

    with pytest.raises(UnauthorizedError):
        await store.save_session(session_id, _session(session_id), "uid-2")
    with pytest.raises(NotFoundError):
        await store.delete_session("missing", "uid-1")
    assert await store.get_session("missing", "uid-1") is None

    await store.delete_session(session_id, "uid-1")
    assert session_id not in firestore.chats.docs


@pytest.mark.asyncio
async def test_firestore_store_lists_sorted_and_skips_invalid_documents():
    firestore = FakeFirestore()
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    firestore.chats.docs.update(
        {
            "a": {"title": "A", "messages": [], "userId": "u", "createdAt": base, "updatedAt": base},
            "b": {"title": "B", "messages": [], "userId": "u", "createdAt": base, "updatedAt": base + timedelta(hours=1)},
            "bad": {"title": "Bad", "messages": "oops", "userId": "u"},
            "other": {"title": "X", "messages": [], "userId": "someone-else"},
        }
    )

    sessions = await FirestoreSessionStore(firestore).list_sessions("u")

    assert [s.id for s in sessions] == ["b", "a"]


@pytest.mark.asyncio
async def test_firestore_snapshot_is_delivered_on_the_event_loop():
    firestore = FakeFirestore()
    firestore.chats.docs["a"] = {"title": "A", "messages": [], "userId": "u"}
    store = FirestoreSessionStore(firestore)
    received: asyncio.Queue = asyncio.Queue()

    unsubscribe = store.subscribe("u", received.put_nowait, received.put_nowait)
    query = firestore.chats.watches[0]
    await asyncio.to_thread(query.snapshot_callback, query.stream(), [], None)

    sessions = await asyncio.wait_for(received.get(), timeout=1)
    assert [s.id for s in sessions] == ["a"]

    unsubscribe()


@pytest.mark.asyncio
async def test_firestore_errors_are_wrapped():
    store = FirestoreSessionStore(BrokenFirestore())
    with pytest.raises(SessionStoreError):
        await store.create_session("x", "u")


class CredentialsExpired(Exception):
    pass


class ExpiredCredentialsFirestore:
    def collection(self, name: str):
        raise CredentialsExpired("token refresh failed")


@pytest.mark.asyncio
async def test_firestore_non_api_errors_are_wrapped_too():
    store = FirestoreSessionStore(ExpiredCredentialsFirestore())
    with pytest.raises(SessionStoreError) as excinfo:
        await store.save_session("s1", _session(), "u")
    assert isinstance(excinfo.value.__cause__, CredentialsExpired)

