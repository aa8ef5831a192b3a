from __future__ import annotations

import asyncio
import logging
from typing import Hashable, Optional

from .events import ERROR_CHANGED, EventEmitter

log = logging.getLogger(__name__)

DEFAULT_CLEAR_AFTER = 5.0
SEND_ERROR_CLEAR_AFTER = 8.0


class ErrorBoard:
    """User-facing error notices, one per key (usually a session id).

    Notices for one-shot actions clear themselves after a delay; a new notice
    for the same key replaces the old one and restarts its timer.
    """

    def __init__(self, emitter: EventEmitter, *, default_clear_after: float = DEFAULT_CLEAR_AFTER) -> None:
        self._emitter = emitter
        self._default_clear_after = default_clear_after
        self._messages: dict[Optional[Hashable], str] = {}
        self._timers: dict[Optional[Hashable], asyncio.TimerHandle] = {}

    def get(self, key: Optional[Hashable] = None) -> str | None:
        return self._messages.get(key)

    def items(self) -> dict[Optional[Hashable], str]:
        return dict(self._messages)

    def set(
        self,
        key: Optional[Hashable],
        message: str,
        *,
        clear_after: float | None = None,
        persist: bool = False,
    ) -> None:
        self._cancel_timer(key)
        self._messages[key] = message
        self._emitter.emit(ERROR_CHANGED, key=key, message=message)

        if persist:
            return
        delay = self._default_clear_after if clear_after is None else clear_after
        if delay <= 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop; error notice for %s will not auto-clear", key)
            return
        self._timers[key] = loop.call_later(delay, self._expire, key, message)

    def clear(self, key: Optional[Hashable] = None) -> None:
        self._cancel_timer(key)
        if self._messages.pop(key, None) is not None:
            self._emitter.emit(ERROR_CHANGED, key=key, message=None)

    def rekey(self, old: Hashable, new: Hashable) -> None:
        """Move a notice when a provisional session receives its server id."""
        if old not in self._messages:
            return
        message = self._messages.pop(old)
        timer = self._timers.pop(old, None)
        self._messages[new] = message
        if timer is not None:
            timer.cancel()
            loop = asyncio.get_running_loop()
            remaining = max(timer.when() - loop.time(), 0.0)
            self._timers[new] = loop.call_later(remaining, self._expire, new, message)
        self._emitter.emit(ERROR_CHANGED, key=old, message=None)
        self._emitter.emit(ERROR_CHANGED, key=new, message=message)

    def reset(self) -> None:
        for key in list(self._messages):
            self.clear(key)

    def _cancel_timer(self, key: Optional[Hashable]) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _expire(self, key: Optional[Hashable], message: str) -> None:
        self._timers.pop(key, None)
        if self._messages.get(key) == message:
            self.clear(key)
