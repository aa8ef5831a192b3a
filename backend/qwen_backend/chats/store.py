from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from firebase_admin import firestore as firebase_firestore
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import FieldFilter

from ..errors import NotFoundError, SessionStoreError, UnauthorizedError
from ..firebase import get_firestore_client
from .models import (
    DEFAULT_TITLE,
    MESSAGE_TYPES,
    UNTITLED_TITLE,
    ChatSession,
    FileMessage,
    FileReference,
    Message,
    TextMessage,
    new_id,
    sort_sessions,
)

log = logging.getLogger(__name__)

__all__ = [
    "CHATS_COLLECTION",
    "FirestoreSessionStore",
    "InMemorySessionStore",
    "SessionStore",
    "document_to_session",
    "from_datetime",
    "session_to_document",
    "to_datetime",
]

CHATS_COLLECTION = "chats"

SnapshotCallback = Callable[[list[ChatSession]], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value: Any) -> datetime:
    """Convert a stored timestamp to an aware UTC datetime.

    Missing values and the pending ``SERVER_TIMESTAMP`` placeholder map to the
    current time so that optimistic local sessions can render immediately.
    """
    if value is None or value is firebase_firestore.SERVER_TIMESTAMP:
        return _now()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    converter = getattr(value, "to_datetime", None)
    if callable(converter):
        return to_datetime(converter())
    return _now()


def from_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def message_to_document(message: Message) -> dict[str, Any]:
    document = {
        "id": message.id,
        "content": message.content,
        "role": message.role,
        "timestamp": from_datetime(message.timestamp),
        "kind": message.kind,
    }
    if isinstance(message, FileMessage) and message.files:
        document["files"] = [ref.to_dict() for ref in message.files]
    return document


def document_to_message(data: dict[str, Any]) -> Message:
    message_type = MESSAGE_TYPES.get(data.get("kind") or "text", TextMessage)
    kwargs: dict[str, Any] = {
        "id": data.get("id") or new_id("msg"),
        "content": data.get("content") or "",
        "timestamp": to_datetime(data.get("timestamp")),
    }
    if message_type is not MESSAGE_TYPES["system"]:
        kwargs["role"] = data.get("role") or "user"
    if message_type is FileMessage:
        kwargs["files"] = tuple(
            FileReference.from_dict(item) for item in data.get("files") or [] if isinstance(item, dict)
        )
    return message_type(**kwargs)


def session_to_document(session: ChatSession, owner_id: str) -> dict[str, Any]:
    return {
        "title": session.title,
        "messages": [message_to_document(message) for message in session.messages],
        "createdAt": from_datetime(session.created_at),
        "updatedAt": from_datetime(session.updated_at),
        "userId": owner_id,
    }


def document_to_session(doc_id: str | None, data: dict[str, Any]) -> ChatSession:
    raw_messages = data.get("messages") or []
    if not isinstance(raw_messages, list):
        raise ValueError("messages must be a list")
    return ChatSession(
        id=doc_id or new_id("session"),
        title=data.get("title") or UNTITLED_TITLE,
        messages=[document_to_message(item) for item in raw_messages if isinstance(item, dict)],
        created_at=to_datetime(data.get("createdAt")),
        updated_at=to_datetime(data.get("updatedAt")),
        owner_id=data.get("userId"),
    )


def _ensure_owner(data: dict[str, Any], owner_id: str, session_id: str) -> None:
    if data.get("userId") != owner_id:
        raise UnauthorizedError(f"Chat session '{session_id}' does not belong to uid '{owner_id}'.")


class SessionStore(ABC):
    """Remote, authoritative storage of a user's chat sessions."""

    @abstractmethod
    async def create_session(self, title: str, owner_id: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def save_session(self, session_id: str, session: ChatSession, owner_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_session(self, session_id: str, owner_id: str) -> ChatSession | None:
        raise NotImplementedError

    @abstractmethod
    async def delete_session(self, session_id: str, owner_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def update_title(self, session_id: str, title: str, owner_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_sessions(self, owner_id: str, limit: int | None = None) -> list[ChatSession]:
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, owner_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> Unsubscribe:
        raise NotImplementedError


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _sessions_from_documents(documents: Iterable[Any]) -> list[ChatSession]:
    sessions: list[ChatSession] = []
    for doc in documents:
        try:
            sessions.append(document_to_session(doc.id, doc.to_dict() or {}))
        except (TypeError, ValueError) as exc:
            log.warning("Skipping invalid chat session document %s: %s", getattr(doc, "id", "?"), exc)
    return sort_sessions(sessions)


class FirestoreSessionStore(SessionStore):
    """Firestore-backed session store.

    The admin SDK is blocking, so every round trip runs in a worker thread.
    Snapshot listeners fire on Firestore's own thread and are handed back to
    the event loop that subscribed.
    """

    collection_name = CHATS_COLLECTION

    def __init__(self, firestore_client: Any | None = None) -> None:
        self._firestore = firestore_client

    @property
    def firestore(self):
        if self._firestore is None:
            self._firestore = get_firestore_client()
        return self._firestore

    def _collection(self):
        return self.firestore.collection(self.collection_name)

    def _load_owned(self, session_id: str, owner_id: str):
        doc_ref = self._collection().document(session_id)
        snapshot = doc_ref.get()
        if not snapshot.exists:
            raise NotFoundError(f"Chat session '{session_id}' not found.")
        data = snapshot.to_dict() or {}
        _ensure_owner(data, owner_id, session_id)
        return doc_ref, data

    async def _run(self, action: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except SessionStoreError:
            raise
        except google_exceptions.GoogleAPIError as exc:
            log.error("Firestore error while trying to %s: %s", action, exc)
            raise SessionStoreError(f"Failed to {action}") from exc
        except Exception as exc:
            log.exception("Unexpected error while trying to %s", action)
            raise SessionStoreError(f"Failed to {action}") from exc

    async def create_session(self, title: str, owner_id: str) -> str:
        def create() -> str:
            doc_ref = self._collection().document()
            doc_ref.set(
                {
                    "title": title or DEFAULT_TITLE,
                    "messages": [],
                    "createdAt": firebase_firestore.SERVER_TIMESTAMP,
                    "updatedAt": firebase_firestore.SERVER_TIMESTAMP,
                    "userId": owner_id,
                }
            )
            return doc_ref.id

        return await self._run("create chat session", create)

    async def save_session(self, session_id: str, session: ChatSession, owner_id: str) -> None:
        def save() -> None:
            doc_ref, _ = self._load_owned(session_id, owner_id)
            document = session_to_document(session, owner_id)
            doc_ref.update(
                {
                    "title": document["title"],
                    "messages": document["messages"],
                    "updatedAt": firebase_firestore.SERVER_TIMESTAMP,
                }
            )

        await self._run("save chat session", save)

    async def get_session(self, session_id: str, owner_id: str) -> ChatSession | None:
        def get() -> ChatSession | None:
            try:
                _, data = self._load_owned(session_id, owner_id)
            except NotFoundError:
                return None
            return document_to_session(session_id, data)

        return await self._run("get chat session", get)

    async def delete_session(self, session_id: str, owner_id: str) -> None:
        def delete() -> None:
            doc_ref, _ = self._load_owned(session_id, owner_id)
            doc_ref.delete()

        await self._run("delete chat session", delete)

    async def update_title(self, session_id: str, title: str, owner_id: str) -> None:
        def update() -> None:
            doc_ref, _ = self._load_owned(session_id, owner_id)
            doc_ref.update({"title": title, "updatedAt": firebase_firestore.SERVER_TIMESTAMP})

        await self._run("update chat title", update)

    async def list_sessions(self, owner_id: str, limit: int | None = None) -> list[ChatSession]:
        def list_docs() -> list[ChatSession]:
            # Sorted in memory so the query needs no composite index.
            query = self._collection().where(filter=FieldFilter("userId", "==", owner_id))
            if limit:
                query = query.limit(limit)
            return _sessions_from_documents(query.stream())

        return await self._run("get chat sessions", list_docs)

    def subscribe(self, owner_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> Unsubscribe:
        loop = _running_loop()

        def dispatch(callback: Callable[[Any], None], value: Any) -> None:
            if loop is None:
                callback(value)
            elif not loop.is_closed():
                loop.call_soon_threadsafe(callback, value)

        def handle_snapshot(documents, changes, read_time) -> None:
            try:
                sessions = _sessions_from_documents(documents)
            except Exception:
                log.exception("Error processing chat sessions snapshot")
                dispatch(on_error, SessionStoreError("Failed to sync chat sessions"))
                return
            dispatch(on_snapshot, sessions)

        query = self._collection().where(filter=FieldFilter("userId", "==", owner_id))
        try:
            watch = query.on_snapshot(handle_snapshot)
        except google_exceptions.GoogleAPIError as exc:
            raise SessionStoreError("Failed to set up real-time sync") from exc

        return watch.unsubscribe


class InMemorySessionStore(SessionStore):
    """Process-local store used by tests and offline runs.

    Snapshots are delivered on the next loop iteration, like a remote push.
    """

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}
        self._listeners: dict[str, list[tuple[SnapshotCallback, ErrorCallback]]] = defaultdict(list)

    def _snapshot(self, owner_id: str) -> list[ChatSession]:
        return sort_sessions(
            [
                document_to_session(doc_id, data)
                for doc_id, data in self._documents.items()
                if data.get("userId") == owner_id
            ]
        )

    def _schedule(self, callback: Callable[[Any], None], value: Any) -> None:
        loop = _running_loop()
        if loop is None:
            callback(value)
        else:
            loop.call_soon(callback, value)

    def _notify(self, owner_id: str) -> None:
        for on_snapshot, _ in list(self._listeners.get(owner_id, ())):
            self._schedule(on_snapshot, self._snapshot(owner_id))

    def push_error(self, owner_id: str, error: Exception) -> None:
        for _, on_error in list(self._listeners.get(owner_id, ())):
            self._schedule(on_error, error)

    def _load_owned(self, session_id: str, owner_id: str) -> dict[str, Any]:
        data = self._documents.get(session_id)
        if data is None:
            raise NotFoundError(f"Chat session '{session_id}' not found.")
        _ensure_owner(data, owner_id, session_id)
        return data

    async def create_session(self, title: str, owner_id: str) -> str:
        session_id = new_id("chat")
        now = _now()
        self._documents[session_id] = {
            "title": title or DEFAULT_TITLE,
            "messages": [],
            "createdAt": now,
            "updatedAt": now,
            "userId": owner_id,
        }
        self._notify(owner_id)
        return session_id

    async def save_session(self, session_id: str, session: ChatSession, owner_id: str) -> None:
        data = self._load_owned(session_id, owner_id)
        document = session_to_document(session, owner_id)
        data.update(title=document["title"], messages=document["messages"], updatedAt=_now())
        self._notify(owner_id)

    async def get_session(self, session_id: str, owner_id: str) -> ChatSession | None:
        try:
            data = self._load_owned(session_id, owner_id)
        except NotFoundError:
            return None
        return document_to_session(session_id, data)

    async def delete_session(self, session_id: str, owner_id: str) -> None:
        self._load_owned(session_id, owner_id)
        del self._documents[session_id]
        self._notify(owner_id)

    async def update_title(self, session_id: str, title: str, owner_id: str) -> None:
        data = self._load_owned(session_id, owner_id)
        data.update(title=title, updatedAt=_now())
        self._notify(owner_id)

    async def list_sessions(self, owner_id: str, limit: int | None = None) -> list[ChatSession]:
        sessions = self._snapshot(owner_id)
        return sessions[:limit] if limit else sessions

    def subscribe(self, owner_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> Unsubscribe:
        entry = (on_snapshot, on_error)
        self._listeners[owner_id].append(entry)
        self._schedule(on_snapshot, self._snapshot(owner_id))

        def unsubscribe() -> None:
            listeners = self._listeners.get(owner_id, [])
            if entry in listeners:
                listeners.remove(entry)

        return unsubscribe

    def listener_count(self, owner_id: str) -> int:
        return len(self._listeners.get(owner_id, ()))
