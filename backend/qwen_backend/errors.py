from __future__ import annotations

from http import HTTPStatus


class ChatError(Exception):
    """Base exception for chat, streaming and session store failures."""

    status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    code: str = "chat_error"
    user_message: str = "Something went wrong. Please try again."
    retryable: bool = False

    def __init__(self, message: str, *, code: str | None = None, status: HTTPStatus | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status


class AuthRequiredError(ChatError):
    status = HTTPStatus.UNAUTHORIZED
    code = "auth_required"
    user_message = "You must be signed in to send messages."


class ConfigurationError(ChatError):
    """Raised when the completion endpoint URL or credential is missing or invalid."""

    status = HTTPStatus.INTERNAL_SERVER_ERROR
    code = "configuration_error"
    user_message = "The chat service is currently unavailable."


class TransportError(ChatError):
    status = HTTPStatus.BAD_GATEWAY
    code = "transport_error"
    user_message = "Could not reach the assistant. Check your connection and try again."
    retryable = True


class StreamInterruptedError(TransportError):
    """Raised when the response body fails or ends before the completion sentinel."""

    code = "stream_interrupted"
    user_message = "The response was interrupted. Please try again."


class RemoteError(ChatError):
    """Non-success response from the completion endpoint."""

    status = HTTPStatus.BAD_GATEWAY
    code = "remote_error"
    user_message = "The assistant failed to respond. Please try again."

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"Completion endpoint responded with HTTP {status_code}")
        self.status_code = status_code
        self.body = body


class DecodeError(ChatError):
    """A single stream frame could not be parsed. Never surfaced to callers."""

    code = "decode_error"


class ConcurrentSendError(ChatError):
    status = HTTPStatus.CONFLICT
    code = "stream_in_progress"
    user_message = "Please wait for the current response to finish."


class StreamCancelledError(ChatError):
    code = "stream_cancelled"
    user_message = "The response was cancelled."


class SessionStoreError(ChatError):
    code = "session_store_error"
    user_message = "Failed to sync chat sessions."


class NotFoundError(SessionStoreError):
    status = HTTPStatus.NOT_FOUND
    code = "not_found"
    user_message = "Chat session not found or access denied."


class UnauthorizedError(SessionStoreError):
    status = HTTPStatus.FORBIDDEN
    code = "forbidden"
    user_message = "Chat session not found or access denied."


def user_message_for(exc: BaseException) -> str:
    if isinstance(exc, ChatError):
        return exc.user_message
    return ChatError.user_message
