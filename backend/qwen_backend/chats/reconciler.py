from __future__ import annotations

import logging
from dataclasses import replace
from functools import partial
from typing import Callable

from ..errors import ChatError, SessionStoreError
from . import events
from .controller import StreamingSessionController
from .models import ChatSession

log = logging.getLogger(__name__)

SYNC_ERROR_KEY = "sync"


def merge_session(local: ChatSession | None, remote: ChatSession | None, is_streaming: bool) -> ChatSession | None:
    """Decide which copy of the current session wins after a snapshot.

    Local state is kept while a reply is streaming, and whenever the remote
    copy has fewer messages (a snapshot taken before our own latest write).
    Otherwise the remote copy wins, keeping the locally attached files.
    """
    if local is None or remote is None:
        return local
    if local.id != remote.id:
        return local
    if is_streaming:
        return local
    if len(remote.messages) < len(local.messages):
        return local
    return replace(remote, attached_files=dict(local.attached_files), provisional=False)


class SyncReconciler:
    """Keeps the session list and the current session in step with the store."""

    def __init__(self, controller: StreamingSessionController) -> None:
        self.controller = controller
        self.sessions: list[ChatSession] = []
        self._owner_id: str | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def owner_id(self) -> str | None:
        return self._owner_id

    @property
    def active(self) -> bool:
        return self._unsubscribe is not None

    def start(self, owner_id: str) -> None:
        if self._unsubscribe is not None and self._owner_id == owner_id:
            return
        self.stop()
        self._owner_id = owner_id
        try:
            self._unsubscribe = self.controller.store.subscribe(
                owner_id, partial(self._on_snapshot, owner_id), partial(self._on_error, owner_id)
            )
        except ChatError as exc:
            log.error("Failed to subscribe to chat sessions for %s: %s", owner_id, exc)
            self._on_error(owner_id, exc)
            return
        log.debug("Subscribed to chat sessions for %s", owner_id)

    def stop(self, clear: bool = True) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            log.debug("Unsubscribed from chat sessions for %s", self._owner_id)
        self._owner_id = None
        if clear and self.sessions:
            self.sessions = []
            self.controller.emitter.emit(events.SESSIONS_CHANGED, sessions=[])

    def _on_snapshot(self, owner_id: str, sessions: list[ChatSession]) -> None:
        if self._unsubscribe is None or owner_id != self._owner_id:
            log.debug("Dropping stale chat session snapshot for %s", owner_id)
            return
        self.sessions = list(sessions)
        self.controller.emitter.emit(events.SESSIONS_CHANGED, sessions=list(self.sessions))
        self.controller.errors.clear(SYNC_ERROR_KEY)

        local = self.controller.current
        if local is None:
            return
        remote = next((session for session in sessions if session.id == local.id), None)
        resolved = merge_session(local, remote, self.controller.is_streaming(local.id))
        if resolved is not None and resolved is not local:
            self.controller.replace_current(resolved)

    def _on_error(self, owner_id: str, exc: Exception) -> None:
        if owner_id != self._owner_id:
            log.debug("Dropping stale sync error for %s: %s", owner_id, exc)
            return
        log.error("Chat session sync failed: %s", exc)
        message = exc.user_message if isinstance(exc, ChatError) else SessionStoreError.user_message
        self.controller.errors.set(SYNC_ERROR_KEY, message, persist=True)
        self.controller.emitter.emit(events.SYNC_ERROR, error=exc)
