from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

log = logging.getLogger(__name__)

MESSAGE_APPENDED = "messageAppended"
MESSAGE_UPDATED = "messageUpdated"
MESSAGE_REMOVED = "messageRemoved"
STREAM_STARTED = "streamStarted"
STREAM_ENDED = "streamEnded"
STREAM_FAILED = "streamFailed"
STREAM_CANCELLED = "streamCancelled"
SESSION_CHANGED = "sessionChanged"
SESSIONS_CHANGED = "sessionsChanged"
ERROR_CHANGED = "errorChanged"
SYNC_ERROR = "syncError"

Listener = Callable[..., None]


class EventEmitter:
    """Synchronous publish/subscribe hub for chat state changes.

    Listeners run in registration order on the caller's stack. A listener that
    raises is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            self.off(event, listener)

        return unsubscribe

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, **payload: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(**payload)
            except Exception:
                log.exception("Listener for %s failed", event)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def clear(self) -> None:
        self._listeners.clear()
