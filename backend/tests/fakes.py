from __future__ import annotations

import asyncio
from typing import Any

from qwen_backend.ai.stream import StreamDelta
from qwen_backend.chats.models import ChatSession
from qwen_backend.chats.store import InMemorySessionStore
from qwen_backend.errors import SessionStoreError

DONE = object()


class FakeStream:
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def events(self):
        while True:
            item = await self.queue.get()
            if item is DONE:
                return
            if isinstance(item, Exception):
                raise item
            yield StreamDelta(item)

    def push(self, *items: Any) -> None:
        for item in items:
            self.queue.put_nowait(item)

    async def aclose(self) -> None:
        self.closed = True


class FakeCompletionClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.streams: list[FakeStream] = []

    async def send(self, history, attached_files=(), *, bearer_token=None):
        self.calls.append(
            {"history": [dict(item) for item in history], "files": list(attached_files), "token": bearer_token}
        )
        if self.error is not None:
            raise self.error
        stream = FakeStream()
        self.streams.append(stream)
        return stream

    async def aclose(self) -> None:
        pass


class RecordingStore(InMemorySessionStore):
    def __init__(self, fail_saves: bool = False) -> None:
        super().__init__()
        self.fail_saves = fail_saves
        self.saves: list[tuple[str, ChatSession]] = []
        self.save_owners: list[str] = []

    async def save_session(self, session_id, session, owner_id):
        self.saves.append((session_id, session))
        self.save_owners.append(owner_id)
        if self.fail_saves:
            raise SessionStoreError("Failed to save chat session")
        await super().save_session(session_id, session, owner_id)


async def until(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not reached")


def message_rows(session: ChatSession) -> list[tuple[str, str, bool]]:
    return [(m.role, m.content, m.is_loading) for m in session.messages]

