"""Async client for streaming chat completions."""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Iterable, Sequence

import httpx

from ..chats.models import FileReference, fold_attached_files
from ..config import DEFAULT_MODEL, AppConfig, completion_settings
from ..errors import ConfigurationError, RemoteError, StreamInterruptedError, TransportError
from .stream import StreamDecoder, StreamDelta, StreamEnd

log = logging.getLogger(__name__)

PROXY_PATH = "/api/chat"
MAX_LOGGED_BODY = 2000


def build_request_body(
    history: Sequence[dict[str, Any]],
    *,
    model: str = DEFAULT_MODEL,
    max_tokens: int = 4000,
    temperature: float = 0.7,
) -> dict[str, Any]:
    messages = [{"role": item["role"], "content": item.get("content") or ""} for item in history]
    return {
        "model": model,
        "messages": messages,
        "stream": True,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }


class CompletionStream:
    """An open completion response.

    ``events()`` yields content deltas until the ``[DONE]`` sentinel. A body
    that ends without the sentinel raises :class:`StreamInterruptedError`.
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._decoder = StreamDecoder()
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def closed(self) -> bool:
        return self._closed

    async def events(self) -> AsyncIterator[StreamDelta]:
        try:
            async for chunk in self._response.aiter_bytes():
                for event in self._decoder.feed(chunk):
                    if isinstance(event, StreamEnd):
                        return
                    yield event
            for event in self._decoder.flush():
                if isinstance(event, StreamEnd):
                    return
                yield event
        except (httpx.HTTPError, httpx.StreamError) as exc:
            log.warning("Completion stream failed while reading: %s", exc)
            raise StreamInterruptedError(f"Completion stream failed: {exc}") from exc
        finally:
            await self.aclose()

        raise StreamInterruptedError("Completion stream ended before [DONE]")

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()

    async def __aenter__(self) -> "CompletionStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class CompletionClient:
    """Opens streaming completions against the upstream API or this app's proxy."""

    def __init__(
        self,
        endpoint: str,
        *,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 4000,
        temperature: float = 0.7,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not endpoint:
            raise ConfigurationError("Completion endpoint is not configured")
        self.endpoint = endpoint
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: AppConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> "CompletionClient":
        if config.chat_proxy_url:
            return cls(
                f"{config.chat_proxy_url.rstrip('/')}{PROXY_PATH}",
                model=config.completion_model,
                max_tokens=config.max_tokens,
                temperature=config.temperature,
                timeout=config.request_timeout,
                transport=transport,
            )
        settings = completion_settings(config)
        return cls(
            settings.endpoint,
            api_key=settings.api_key,
            model=settings.model,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            timeout=settings.timeout,
            transport=transport,
        )

    def _headers(self, bearer_token: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        token = self.api_key or bearer_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def send(
        self,
        history: Sequence[dict[str, Any]],
        attached_files: Iterable[FileReference] = (),
        *,
        bearer_token: str | None = None,
    ) -> CompletionStream:
        """Start a completion and return once response headers are in."""
        body = build_request_body(
            fold_attached_files(history, attached_files),
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        request = self._client.build_request("POST", self.endpoint, json=body, headers=self._headers(bearer_token))

        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            log.warning("Completion request to %s failed: %s", self.endpoint, exc)
            raise TransportError(f"Failed to reach completion endpoint: {exc}") from exc

        if response.status_code >= 400:
            try:
                raw = await response.aread()
            except httpx.HTTPError:
                raw = b""
            finally:
                await response.aclose()
            text = raw.decode("utf-8", errors="replace")[:MAX_LOGGED_BODY]
            log.error("Completion endpoint returned %s: %s", response.status_code, text)
            raise RemoteError(response.status_code, text)

        return CompletionStream(response)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CompletionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
