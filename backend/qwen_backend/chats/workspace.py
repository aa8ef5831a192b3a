from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from ..ai.completion import CompletionClient
from ..auth.identity import Identity, IdentityProvider
from ..config import AppConfig
from ..firebase import init_firebase
from .controller import StreamingSessionController
from .events import EventEmitter
from .notices import ErrorBoard
from .reconciler import SyncReconciler
from .store import FirestoreSessionStore, SessionStore

log = logging.getLogger(__name__)


class ChatWorkspace:
    """Wires identity, store, completion client, controller and reconciler together.

    Signing in starts the real-time subscription for that user; signing out
    stops it and drops all local chat state.
    """

    def __init__(
        self,
        client: CompletionClient,
        store: SessionStore,
        identity: IdentityProvider,
        *,
        error_clear_seconds: float = 5.0,
        send_error_clear_seconds: float = 8.0,
    ) -> None:
        self.emitter = EventEmitter()
        self.errors = ErrorBoard(self.emitter, default_clear_after=error_clear_seconds)
        self.client = client
        self.identity = identity
        self.controller = StreamingSessionController(
            client,
            store,
            emitter=self.emitter,
            errors=self.errors,
            send_error_clear_after=send_error_clear_seconds,
        )
        self.reconciler = SyncReconciler(self.controller)
        self._pending_reset: Optional[asyncio.Task] = None
        self._unsubscribe_identity: Optional[Callable[[], None]] = identity.subscribe(self._on_identity)

    @classmethod
    def from_config(cls, config: AppConfig, identity: IdentityProvider) -> "ChatWorkspace":
        init_firebase(config.firebase_credentials_path, database_id=config.firestore_database_id)
        return cls(
            CompletionClient.from_config(config),
            FirestoreSessionStore(),
            identity,
            error_clear_seconds=config.error_clear_seconds,
            send_error_clear_seconds=config.send_error_clear_seconds,
        )

    def _on_identity(self, identity: Optional[Identity]) -> None:
        previous = self.controller.identity
        if identity is None and previous is None:
            return
        settled = self._pending_reset is None or self._pending_reset.done()
        if identity is not None and settled and (previous is None or previous.uid == identity.uid):
            self.controller.set_identity(identity)
            self.reconciler.start(identity.uid)
            return

        # Sign-out or a different user: nothing of the previous user may survive.
        self.reconciler.stop()
        self.controller.set_identity(identity)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.controller.clear_current_session()
            self.errors.reset()
            if identity is not None:
                self.reconciler.start(identity.uid)
            return
        self._pending_reset = loop.create_task(self._reset_for(identity, self._pending_reset))

    async def _reset_for(self, identity: Optional[Identity], previous: Optional[asyncio.Task]) -> None:
        if previous is not None:
            await previous
        await self.controller.reset()
        if identity is not None and self.identity.current == identity:
            self.reconciler.start(identity.uid)

    async def aclose(self) -> None:
        if self._unsubscribe_identity is not None:
            self._unsubscribe_identity()
            self._unsubscribe_identity = None
        self.reconciler.stop()
        if self._pending_reset is not None:
            await self._pending_reset
            self._pending_reset = None
        await self.controller.reset()
        self.emitter.clear()
        await self.client.aclose()
        log.debug("Chat workspace closed")

    async def __aenter__(self) -> "ChatWorkspace":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
