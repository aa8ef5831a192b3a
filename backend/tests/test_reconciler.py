from __future__ import annotations

import asyncio

import pytest

from qwen_backend.auth.identity import Identity
from qwen_backend.chats import events
from qwen_backend.chats.controller import StreamingSessionController
from qwen_backend.chats.models import ChatSession, FileReference, TextMessage
from qwen_backend.chats.reconciler import SYNC_ERROR_KEY, SyncReconciler, merge_session
from qwen_backend.chats.store import InMemorySessionStore
from qwen_backend.errors import SessionStoreError

from fakes import DONE, FakeCompletionClient, until


def _session(session_id: str, *contents: str) -> ChatSession:
    session = ChatSession(id=session_id)
    for index, content in enumerate(contents):
        role = "user" if index % 2 == 0 else "assistant"
        session.messages.append(TextMessage(id=f"{session_id}-{index}", role=role, content=content))
    return session


def test_merge_keeps_local_while_streaming():
    local = _session("s1", "a", "b", "c")
    remote = _session("s1", "a", "b", "c", "d")
    assert merge_session(local, remote, is_streaming=True) is local


def test_merge_keeps_local_when_remote_is_behind():
    local = _session("s1", "a", "b", "c")
    remote = _session("s1", "a")
    assert merge_session(local, remote, is_streaming=False) is local


def test_merge_adopts_remote_when_idle_and_not_behind():
    local = _session("s1", "a", "b")
    ref = FileReference(id="f", name="a.txt", mime_type="text/plain", size=1)
    local.attach_file(ref)
    remote = _session("s1", "a", "b edited")
    remote.title = "Renamed elsewhere"

    merged = merge_session(local, remote, is_streaming=False)

    assert merged is not local
    assert merged.title == "Renamed elsewhere"
    assert [m.content for m in merged.messages] == ["a", "b edited"]
    assert merged.attached_files == {"f": ref}


def test_merge_without_counterpart_or_local():
    local = _session("s1", "a")
    assert merge_session(local, None, is_streaming=False) is local
    assert merge_session(local, _session("s2", "a", "b"), is_streaming=False) is local
    assert merge_session(None, _session("s2"), is_streaming=False) is None


class ErrorStore(InMemorySessionStore):
    def subscribe(self, owner_id, on_snapshot, on_error):
        raise SessionStoreError("Failed to set up real-time sync")


def _controller(store, client=None):
    return StreamingSessionController(
        client or FakeCompletionClient(),
        store,
        identity=Identity(uid="uid-1"),
    )


@pytest.mark.asyncio
async def test_snapshots_update_list_and_current_session():
    store = InMemorySessionStore()
    controller = _controller(store)
    reconciler = SyncReconciler(controller)
    lists: list[list[ChatSession]] = []
    controller.emitter.on(events.SESSIONS_CHANGED, lambda sessions: lists.append(sessions))

    session_id = await store.create_session("Chat", "uid-1")
    await controller.load_session(session_id)
    reconciler.start("uid-1")
    reconciler.start("uid-1")
    await asyncio.sleep(0)

    assert store.listener_count("uid-1") == 1
    assert [s.id for s in lists[-1]] == [session_id]

    remote_copy = _session(session_id, "from another device")
    await store.save_session(session_id, remote_copy, "uid-1")
    await asyncio.sleep(0)

    assert [m.content for m in controller.current.messages] == ["from another device"]

    reconciler.stop()
    assert store.listener_count("uid-1") == 0
    assert reconciler.sessions == []


@pytest.mark.asyncio
async def test_stale_snapshot_during_stream_does_not_clobber_local_state():
    store = InMemorySessionStore()
    client = FakeCompletionClient()
    controller = _controller(store, client)
    reconciler = SyncReconciler(controller)
    session_id = await store.create_session("Chat", "uid-1")
    await controller.load_session(session_id)
    reconciler.start("uid-1")
    await asyncio.sleep(0)

    task = asyncio.create_task(controller.send_message("hello"))
    await until(lambda: client.streams)
    client.streams[0].push("Hi")
    await until(lambda: controller.current.messages[-1].content == "Hi")
    local = controller.current

    await store.update_title(session_id, "Renamed", "uid-1")
    await asyncio.sleep(0)

    assert controller.current is local
    assert [m.content for m in local.messages] == ["hello", "Hi"]
    assert local.messages[-1].is_loading

    client.streams[0].push(DONE)
    await task
    await asyncio.sleep(0)

    assert [m.content for m in controller.current.messages] == ["hello", "Hi"]
    assert not controller.current.messages[-1].is_loading
    reconciler.stop()


@pytest.mark.asyncio
async def test_start_with_another_owner_resubscribes():
    store = InMemorySessionStore()
    reconciler = SyncReconciler(_controller(store))

    reconciler.start("uid-1")
    reconciler.start("uid-2")

    assert store.listener_count("uid-1") == 0
    assert store.listener_count("uid-2") == 1
    assert reconciler.owner_id == "uid-2"


@pytest.mark.asyncio
async def test_subscription_errors_are_persistent_and_cleared_by_next_snapshot():
    store = InMemorySessionStore()
    controller = _controller(store)
    reconciler = SyncReconciler(controller)
    sync_errors: list[Exception] = []
    controller.emitter.on(events.SYNC_ERROR, lambda error: sync_errors.append(error))

    reconciler.start("uid-1")
    await asyncio.sleep(0)
    store.push_error("uid-1", SessionStoreError("listener dropped"))
    await asyncio.sleep(0)

    assert controller.errors.get(SYNC_ERROR_KEY) == "Failed to sync chat sessions."
    assert len(sync_errors) == 1

    await store.create_session("Chat", "uid-1")
    await asyncio.sleep(0)
    assert controller.errors.get(SYNC_ERROR_KEY) is None


@pytest.mark.asyncio
async def test_failed_subscription_is_reported():
    controller = _controller(ErrorStore())
    reconciler = SyncReconciler(controller)

    reconciler.start("uid-1")

    assert not reconciler.active
    assert controller.errors.get(SYNC_ERROR_KEY) == SessionStoreError.user_message


@pytest.mark.asyncio
async def test_queued_callbacks_from_previous_owner_are_dropped():
    store = InMemorySessionStore()
    controller = _controller(store)
    reconciler = SyncReconciler(controller)
    lists: list[list[str]] = []
    sync_errors: list[Exception] = []
    controller.emitter.on(events.SESSIONS_CHANGED, lambda sessions: lists.append([s.owner_id for s in sessions]))
    controller.emitter.on(events.SYNC_ERROR, lambda error: sync_errors.append(error))
    await store.create_session("A's chat", "uid-a")

    reconciler.start("uid-a")
    store.push_error("uid-a", SessionStoreError("listener dropped"))
    reconciler.stop()
    reconciler.start("uid-b")
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert ["uid-a"] not in lists
    assert reconciler.sessions == []
    assert sync_errors == []
    assert controller.errors.get(SYNC_ERROR_KEY) is None
    assert reconciler.owner_id == "uid-b"
