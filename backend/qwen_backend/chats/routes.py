from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from ..ai.qwen import open_completion_stream, relay_content_frames
from ..auth.utils import AuthError, require_firebase_user
from ..config import AppConfig, completion_settings
from ..errors import ConfigurationError, RemoteError, TransportError
from .models import FileReference, fold_attached_files

chat_bp = Blueprint("chat", __name__, url_prefix="/api")
log = logging.getLogger(__name__)

ALLOWED_ROLES = {"user", "assistant", "system"}


def _bad_request(message: str) -> tuple[Any, int]:
    return jsonify({"error": "validation_error", "message": message}), HTTPStatus.BAD_REQUEST


def _parse_messages(raw: Any) -> list[dict[str, str]] | None:
    if not isinstance(raw, list):
        return None
    messages: list[dict[str, str]] = []
    for item in raw:
        if not isinstance(item, dict):
            return None
        role = item.get("role")
        content = item.get("content")
        if role not in ALLOWED_ROLES or not isinstance(content, str):
            return None
        messages.append({"role": role, "content": content})
    return messages


def _parse_attached_files(raw: Any) -> list[FileReference] | None:
    if raw is None:
        return []
    if not isinstance(raw, list):
        return None
    refs: list[FileReference] = []
    for item in raw:
        if not isinstance(item, dict):
            return None
        refs.append(FileReference.from_dict(item))
    return refs


@chat_bp.post("/chat")
def chat_completion() -> Any:
    config: AppConfig = current_app.config["CHAT_CONFIG"]

    if config.require_auth:
        try:
            require_firebase_user()
        except AuthError as exc:
            return exc.to_response()

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _bad_request("Request body must be a JSON object.")

    if "messages" in payload:
        messages = _parse_messages(payload.get("messages"))
        if messages is None:
            return _bad_request("messages must be an array of {role, content} objects.")
        if not messages:
            return _bad_request("messages must not be empty.")
    elif isinstance(payload.get("message"), str) and payload["message"].strip():
        messages = [{"role": "user", "content": payload["message"]}]
    else:
        return _bad_request("Messages or message is required.")

    attached_files = _parse_attached_files(payload.get("attachedFiles"))
    if attached_files is None:
        return _bad_request("attachedFiles must be an array of file objects.")
    messages = fold_attached_files(messages, attached_files)

    try:
        settings = completion_settings(config)
    except ConfigurationError as exc:
        log.error("Chat proxy misconfigured: %s", exc)
        return (
            jsonify({"error": exc.code, "message": "API configuration missing."}),
            HTTPStatus.INTERNAL_SERVER_ERROR,
        )

    try:
        upstream = open_completion_stream(messages, settings)
    except RemoteError as exc:
        return (
            jsonify({"error": exc.code, "message": "Failed to get response from Qwen API."}),
            exc.status_code,
        )
    except TransportError as exc:
        return (
            jsonify({"error": exc.code, "message": "Failed to reach Qwen API."}),
            HTTPStatus.INTERNAL_SERVER_ERROR,
        )

    response = Response(stream_with_context(relay_content_frames(upstream)), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response
