"""Server-sent-event framing for chat completion streams."""
from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Union

from ..errors import DecodeError

log = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True, slots=True)
class StreamDelta:
    content: str


@dataclass(frozen=True, slots=True)
class StreamEnd:
    pass


StreamEvent = Union[StreamDelta, StreamEnd]


def sse_message(payload: dict[str, Any], event: str | None = None) -> str:
    body = json.dumps(payload, ensure_ascii=False)
    lines: list[str] = []
    if event:
        lines.append(f"event: {event}")
    for line in body.splitlines() or [""]:
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


def sse_done() -> str:
    return f"data: {DONE_SENTINEL}\n\n"


def extract_delta_content(payload: Any) -> str:
    """Return the text carried by a decoded frame, or '' when there is none.

    Accepts both the proxy shape ``{"content": ...}`` and the upstream
    OpenAI-compatible shape ``{"choices": [{"delta": {"content": ...}}]}``.
    """
    if not isinstance(payload, dict):
        return ""

    content = payload.get("content")
    if isinstance(content, str):
        return content

    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0]
        delta = choice.get("delta") if isinstance(choice, dict) else None
        if isinstance(delta, dict):
            maybe = delta.get("content")
            if isinstance(maybe, str):
                return maybe
    return ""


def parse_frame_payload(data: str) -> Any:
    try:
        return json.loads(data)
    except ValueError as exc:
        raise DecodeError(f"Malformed stream frame: {data[:80]!r}") from exc


class StreamDecoder:
    """Incrementally turns raw response bytes into content deltas.

    Lines may be split across chunks and so may multi-byte UTF-8 sequences;
    both are buffered until complete. After the ``[DONE]`` sentinel the
    decoder ignores all further input.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        if self._done:
            return []
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._process(lines)

    def flush(self) -> list[StreamEvent]:
        """Decode whatever is left once the body has ended."""
        if self._done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        lines, self._buffer = [self._buffer], ""
        return self._process(lines)

    def _process(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for raw_line in lines:
            line = raw_line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX):].strip()
            if data == DONE_SENTINEL:
                self._done = True
                self._buffer = ""
                events.append(StreamEnd())
                break
            try:
                payload = parse_frame_payload(data)
            except DecodeError as exc:
                log.debug("Skipping stream frame: %s", exc)
                continue
            content = extract_delta_content(payload)
            if content:
                events.append(StreamDelta(content))
        return events


async def iter_events(chunks: AsyncIterator[bytes]) -> AsyncIterator[StreamEvent]:
    """Feed an async byte iterator through a fresh decoder, stopping at the sentinel."""
    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
            if isinstance(event, StreamEnd):
                return
    for event in decoder.flush():
        yield event
