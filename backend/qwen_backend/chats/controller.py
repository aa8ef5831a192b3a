from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from ..errors import (
    AuthRequiredError,
    ChatError,
    ConcurrentSendError,
    NotFoundError,
    StreamCancelledError,
    UnauthorizedError,
    user_message_for,
)
from . import events
from .events import EventEmitter
from .models import (
    DEFAULT_TITLE,
    ChatSession,
    FileMessage,
    FileReference,
    Message,
    TextMessage,
    generate_title,
    new_id,
)
from .notices import SEND_ERROR_CLEAR_AFTER, ErrorBoard
from .store import SessionStore

if TYPE_CHECKING:
    from ..ai.completion import CompletionClient, CompletionStream
    from ..auth.identity import Identity

log = logging.getLogger(__name__)


class StreamState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_STREAM = "awaiting_stream"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    ROLLING_BACK = "rolling_back"


@dataclass(slots=True)
class _ActiveSend:
    session: ChatSession
    placeholder: Message
    state: StreamState = StreamState.AWAITING_STREAM
    task: asyncio.Task | None = None
    stream: CompletionStream | None = None
    cancelled: bool = False


class StreamingSessionController:
    """Owns the current chat session and drives assistant replies into it.

    One completion may be in flight per session. While a session is not idle
    its messages are written only by this controller; remote snapshots are
    applied through :meth:`replace_current` and refused mid-stream.
    """

    def __init__(
        self,
        client: CompletionClient,
        store: SessionStore,
        *,
        emitter: EventEmitter | None = None,
        errors: ErrorBoard | None = None,
        identity: Identity | None = None,
        send_error_clear_after: float = SEND_ERROR_CLEAR_AFTER,
    ) -> None:
        self.client = client
        self.store = store
        self.emitter = emitter or EventEmitter()
        self.errors = errors or ErrorBoard(self.emitter)
        self.identity = identity
        self.send_error_clear_after = send_error_clear_after
        self.current: ChatSession | None = None
        self._sends: dict[str, _ActiveSend] = {}
        self._creations: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # State

    def set_identity(self, identity: Identity | None) -> None:
        self.identity = identity

    def state(self, session_id: str | None = None) -> StreamState:
        key = session_id if session_id is not None else (self.current.id if self.current else None)
        send = self._sends.get(key) if key is not None else None
        return send.state if send is not None else StreamState.IDLE

    def is_streaming(self, session_id: str | None = None) -> bool:
        return self.state(session_id) is not StreamState.IDLE

    def _require_identity(self) -> Identity:
        if self.identity is None:
            raise AuthRequiredError("Sign in to continue")
        return self.identity

    def _set_current(self, session: ChatSession | None, previous_id: str | None = None) -> None:
        self.current = session
        self.emitter.emit(events.SESSION_CHANGED, session=session, previous_id=previous_id)

    def _live(self, session_id: str) -> ChatSession | None:
        send = self._sends.get(session_id)
        if send is not None:
            return send.session
        if self.current is not None and self.current.id == session_id:
            return self.current
        return None

    # ------------------------------------------------------------------
    # Provisional sessions

    def _start_provisional(self, title: str) -> ChatSession:
        identity = self._require_identity()
        session = ChatSession(id=new_id("session"), title=title, owner_id=identity.uid, provisional=True)
        self._set_current(session)

        provisional_id = session.id
        task = asyncio.get_running_loop().create_task(self._create_remote(session))
        self._creations[provisional_id] = task

        def forget(done: asyncio.Task) -> None:
            self._creations.pop(provisional_id, None)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                log.error("Background creation of chat session %s failed: %s", provisional_id, exc)

        task.add_done_callback(forget)
        return session

    async def _create_remote(self, session: ChatSession) -> str:
        owner_id = self._require_identity().uid
        server_id = await self.store.create_session(session.title, owner_id)
        if session.provisional:
            self._adopt_server_id(session, server_id)
        return session.id

    def _adopt_server_id(self, session: ChatSession, server_id: str) -> None:
        previous_id = session.id
        session.id = server_id
        session.provisional = False
        send = self._sends.pop(previous_id, None)
        if send is not None:
            self._sends[server_id] = send
        self.errors.rekey(previous_id, server_id)
        log.debug("Chat session %s is now %s", previous_id, server_id)
        if self.current is session:
            self.emitter.emit(events.SESSION_CHANGED, session=session, previous_id=previous_id)

    async def _ensure_created(self, session: ChatSession) -> bool:
        """Wait for a provisional session's creation, retrying once if it failed."""
        if not session.provisional:
            return True
        pending = self._creations.get(session.id)
        if pending is not None:
            try:
                await asyncio.shield(pending)
            except ChatError:
                # Already logged by the creation task's done callback.
                pass
        if not session.provisional:
            return True
        try:
            await self._create_remote(session)
        except ChatError:
            log.exception("Failed to create chat session %s", session.id)
            return False
        return True

    # ------------------------------------------------------------------
    # Sending

    async def send_message(self, content: str, *, files: Sequence[FileReference] = ()) -> Message:
        """Send a user message and stream the assistant reply into the current session.

        Returns the finalized assistant message. Failures before the reply is
        complete remove the placeholder and are re-raised; the user message
        stays in the session.
        """
        identity = self._require_identity()
        text = (content or "").strip()
        files = tuple(files)
        if not text and not files:
            raise ValueError("Message content is required")

        session = self.current
        if session is not None and self.is_streaming(session.id):
            raise ConcurrentSendError(f"Chat session {session.id} already has a reply in progress")
        if session is None:
            session = self._start_provisional(generate_title(text or files[0].name))
        if session.owner_id is None:
            session.owner_id = identity.uid
        elif session.owner_id != identity.uid:
            raise UnauthorizedError(f"Chat session {session.id} does not belong to uid '{identity.uid}'")

        if files:
            user_message: Message = FileMessage(id=new_id("msg"), role="user", content=text, files=files)
        else:
            user_message = TextMessage(id=new_id("msg"), role="user", content=text)
        session.append(user_message)
        self.emitter.emit(events.MESSAGE_APPENDED, session_id=session.id, message=user_message)

        history = session.history()
        attached = list(session.attached_files.values())

        placeholder = TextMessage(id=new_id("msg"), role="assistant", is_loading=True)
        session.append(placeholder)
        self.emitter.emit(events.MESSAGE_APPENDED, session_id=session.id, message=placeholder)

        send = _ActiveSend(session=session, placeholder=placeholder)
        self._sends[session.id] = send
        self.errors.clear(session.id)
        self.emitter.emit(events.STREAM_STARTED, session_id=session.id)

        send.task = asyncio.get_running_loop().create_task(self._run_send(send, history, attached, identity))
        try:
            return await send.task
        except asyncio.CancelledError:
            if send.cancelled:
                raise StreamCancelledError(f"Reply in chat session {session.id} was cancelled") from None
            raise

    async def _run_send(
        self,
        send: _ActiveSend,
        history: list[dict[str, str]],
        attached: list[FileReference],
        identity: Identity,
    ) -> Message:
        session = send.session
        placeholder = send.placeholder
        try:
            try:
                send.stream = await self.client.send(history, attached, bearer_token=identity.id_token)
                send.state = StreamState.STREAMING
                async for delta in send.stream.events():
                    placeholder.append_delta(delta.content)
                    session.touch()
                    self.emitter.emit(events.MESSAGE_UPDATED, session_id=session.id, message=placeholder)
            except asyncio.CancelledError:
                self._discard(send)
                raise
            except Exception as exc:
                self._roll_back(send, exc)
                raise
            finally:
                if send.stream is not None:
                    await send.stream.aclose()

            send.state = StreamState.FINALIZING
            placeholder.finish()
            session.touch()
            self.emitter.emit(events.MESSAGE_UPDATED, session_id=session.id, message=placeholder)
            await self._persist(session, identity)
            self.emitter.emit(events.STREAM_ENDED, session_id=session.id, message=placeholder)
            return placeholder
        finally:
            self._release(send)

    def _release(self, send: _ActiveSend) -> None:
        for key, value in list(self._sends.items()):
            if value is send:
                del self._sends[key]
        send.state = StreamState.IDLE

    def _discard(self, send: _ActiveSend) -> None:
        session = send.session
        if session.remove_message(send.placeholder.id):
            self.emitter.emit(events.MESSAGE_REMOVED, session_id=session.id, message_id=send.placeholder.id)
        self.emitter.emit(events.STREAM_CANCELLED, session_id=session.id)
        log.info("Reply in chat session %s cancelled", session.id)

    def _roll_back(self, send: _ActiveSend, exc: Exception) -> None:
        send.state = StreamState.ROLLING_BACK
        session = send.session
        if session.remove_message(send.placeholder.id):
            self.emitter.emit(events.MESSAGE_REMOVED, session_id=session.id, message_id=send.placeholder.id)
        self.errors.set(session.id, user_message_for(exc), clear_after=self.send_error_clear_after)
        self.emitter.emit(events.STREAM_FAILED, session_id=session.id, error=exc)
        log.warning("Reply in chat session %s failed: %s", session.id, exc)

    async def _persist(self, session: ChatSession, identity: Identity) -> bool:
        if not await self._ensure_created(session):
            return False
        try:
            await self.store.save_session(session.id, session.copy(), identity.uid)
        except ChatError:
            log.exception("Failed to save chat session %s", session.id)
            return False
        return True

    async def cancel(self, session_id: str | None = None) -> bool:
        """Abort the reply in progress, dropping the placeholder.

        A reply that is already being saved is left to finish.
        """
        key = session_id if session_id is not None else (self.current.id if self.current else None)
        send = self._sends.get(key) if key is not None else None
        if send is None or send.task is None or send.state is StreamState.FINALIZING:
            return False
        send.cancelled = True
        send.task.cancel()
        await asyncio.wait({send.task})
        return True

    # ------------------------------------------------------------------
    # Session management

    def new_session(self, title: str | None = None) -> ChatSession:
        return self._start_provisional((title or "").strip() or DEFAULT_TITLE)

    async def load_session(self, session_id: str) -> ChatSession:
        identity = self._require_identity()
        live = self._live(session_id)
        if live is not None:
            self._set_current(live)
            return live
        try:
            session = await self.store.get_session(session_id, identity.uid)
        except ChatError as exc:
            self.errors.set(None, exc.user_message)
            raise
        if session is None:
            exc = NotFoundError(f"Chat session '{session_id}' not found.")
            self.errors.set(None, exc.user_message)
            raise exc
        self._set_current(session)
        return session

    def switch_to(self, session: ChatSession) -> ChatSession:
        target = self._live(session.id) or session
        self._set_current(target)
        return target

    async def delete_session(self, session_id: str) -> None:
        identity = self._require_identity()
        await self.cancel(session_id)
        session = self._live(session_id)
        if session is not None and session.provisional:
            if not await self._ensure_created(session):
                self._forget(session)
                return
            session_id = session.id
        try:
            await self.store.delete_session(session_id, identity.uid)
        except ChatError as exc:
            self.errors.set(None, exc.user_message)
            raise
        if session is not None:
            self._forget(session)
        elif self.current is not None and self.current.id == session_id:
            self._set_current(None)

    def _forget(self, session: ChatSession) -> None:
        self.errors.clear(session.id)
        if self.current is session:
            self._set_current(None)

    async def rename_session(self, session_id: str, title: str) -> None:
        identity = self._require_identity()
        cleaned = (title or "").strip()
        if not cleaned:
            raise ValueError("Title is required")
        session = self._live(session_id)
        if session is not None:
            session.title = cleaned
            session.touch()
            if self.current is session:
                self.emitter.emit(events.SESSION_CHANGED, session=session, previous_id=None)
            if not await self._ensure_created(session):
                return
            session_id = session.id
        try:
            await self.store.update_title(session_id, cleaned, identity.uid)
        except ChatError as exc:
            self.errors.set(None, exc.user_message)
            raise

    async def save_current_session(self) -> bool:
        identity = self._require_identity()
        session = self.current
        if session is None:
            self.errors.set(None, "No current session to save")
            return False
        if self.is_streaming(session.id):
            return False
        return await self._persist(session, identity)

    def clear_current_session(self) -> None:
        self._set_current(None)

    def add_message(self, message: Message) -> None:
        session = self.current
        if session is None:
            raise ValueError("No active session to add message to")
        if self.is_streaming(session.id):
            raise ConcurrentSendError(f"Chat session {session.id} already has a reply in progress")
        session.append(message)
        self.emitter.emit(events.MESSAGE_APPENDED, session_id=session.id, message=message)

    def attach_file(self, ref: FileReference) -> None:
        if self.current is None:
            raise ValueError("No active session to attach files to")
        self.current.attach_file(ref)
        self.emitter.emit(events.SESSION_CHANGED, session=self.current, previous_id=None)

    def detach_file(self, file_id: str) -> bool:
        if self.current is None or not self.current.detach_file(file_id):
            return False
        self.emitter.emit(events.SESSION_CHANGED, session=self.current, previous_id=None)
        return True

    def replace_current(self, session: ChatSession) -> bool:
        """Adopt a merged remote copy of the current session when it is idle."""
        current = self.current
        if current is None or current.id != session.id or self.is_streaming(session.id):
            return False
        if session is current:
            return False
        self._set_current(session)
        return True

    async def reset(self) -> None:
        """Drop all local state, e.g. after sign-out."""
        for session_id in list(self._sends):
            await self.cancel(session_id)
        for task in list(self._creations.values()):
            task.cancel()
        self._creations.clear()
        self.errors.reset()
        if self.current is not None:
            self._set_current(None)
