import logging
from typing import Any, Iterator, Sequence

import requests

from ..config import CompletionSettings
from ..errors import RemoteError, StreamInterruptedError, TransportError
from .completion import MAX_LOGGED_BODY, build_request_body
from .stream import StreamDecoder, StreamEnd, sse_done, sse_message

log = logging.getLogger(__name__)


def open_completion_stream(
    messages: Sequence[dict[str, Any]],
    settings: CompletionSettings,
    http: Any = None,
) -> requests.Response:
    """POST the conversation upstream and return the open streaming response."""
    http = http or requests
    payload = build_request_body(
        messages,
        model=settings.model,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )
    try:
        response = http.post(
            settings.endpoint,
            json=payload,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {settings.api_key}",
            },
            stream=True,
            timeout=settings.timeout,
        )
    except requests.RequestException as exc:
        log.warning("Upstream completion request failed: %s", exc)
        raise TransportError(f"Failed to reach completion endpoint: {exc}") from exc

    if not response.ok:
        try:
            body = response.text[:MAX_LOGGED_BODY]
        except requests.RequestException:
            body = ""
        finally:
            response.close()
        log.error("Qwen API error %s: %s", response.status_code, body)
        raise RemoteError(response.status_code, body)

    return response


def iter_upstream_deltas(response: requests.Response) -> Iterator[str | None]:
    """Yield content strings from an upstream body, then ``None`` on ``[DONE]``.

    A body that ends without the sentinel simply stops; a read failure raises
    :class:`StreamInterruptedError`.
    """
    decoder = StreamDecoder()
    try:
        for chunk in response.iter_content(chunk_size=None):
            for event in decoder.feed(chunk):
                if isinstance(event, StreamEnd):
                    yield None
                    return
                yield event.content
        for event in decoder.flush():
            if isinstance(event, StreamEnd):
                yield None
                return
            yield event.content
    except requests.RequestException as exc:
        raise StreamInterruptedError(f"Upstream stream failed: {exc}") from exc


def relay_content_frames(response: requests.Response) -> Iterator[str]:
    """Re-emit the upstream stream as ``data: {"content": ...}`` frames."""
    try:
        for content in iter_upstream_deltas(response):
            if content is None:
                yield sse_done()
                return
            yield sse_message({"content": content})
        log.warning("Upstream stream ended without [DONE]")
    except StreamInterruptedError as exc:
        log.warning("Streaming error: %s", exc)
        yield sse_message({"error": exc.code, "message": exc.user_message}, event="error")
    finally:
        response.close()
