"""
Upstream source adapters.

Each adapter pairs a transport with its parser and exposes one completion as
an async sequence of ChunkRecord instances:
- ProviderStreamSource reads SDK updates straight from the provider
- HttpRelaySource POSTs to a relay endpoint and parses its SSE body
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing
from typing import TYPE_CHECKING, Protocol

import httpx

from src.logging_utils import ContextualLogger

from ..exceptions import TransportFailure
from ..models import LLMMessage, MessageRole
from .cancellation import CancellationToken
from .models import ChunkRecord
from .parser import ChunkNormalizer, StreamingParser

if TYPE_CHECKING:                                        # pragma: no cover
    from ..client import ProviderClient

HTTP_OK = 200
EVENT_STREAM_TYPE = "text/event-stream"


class ChunkSource(Protocol):
    """Anything that can stream one completion as ChunkRecords."""

    def stream(
        self, user_message: str, cancel: CancellationToken
    ) -> AsyncIterator[ChunkRecord]: ...


class ProviderStreamSource:
    """Direct-provider source: system and user prompt in, SDK updates out."""

    def __init__(self, client: ProviderClient, system_prompt: str):
        self._client = client
        self._system_prompt = system_prompt

    async def stream(
        self, user_message: str, cancel: CancellationToken
    ) -> AsyncGenerator[ChunkRecord]:
        normalizer = ChunkNormalizer()
        messages = [
            LLMMessage(MessageRole.SYSTEM, self._system_prompt),
            LLMMessage(MessageRole.USER, user_message),
        ]

        updates = self._client.stream_updates(messages, cancel)
        async with aclosing(updates):
            async for update in updates:
                record = normalizer.from_update(update)
                if record is not None:
                    yield record


class HttpRelaySource:
    """HTTP-relay source: POST the user message, read the SSE body line by line."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        endpoint: str,
        *,
        enable_recovery: bool = False,
        logger: ContextualLogger | None = None,
    ):
        self._http_client = http_client
        self._endpoint = endpoint
        self._enable_recovery = enable_recovery
        self._logger = logger or ContextualLogger({"component": "http_relay_source"})

    async def stream(
        self, user_message: str, cancel: CancellationToken
    ) -> AsyncGenerator[ChunkRecord]:
        parser = StreamingParser(
            enable_recovery=self._enable_recovery, logger=self._logger
        )
        request = self._http_client.build_request(
            "POST",
            self._endpoint,
            json=user_message,
            headers={"Accept": EVENT_STREAM_TYPE},
        )
        self._logger.info(
            "Request",
            method=request.method,
            uri=str(request.url),
            headers=dict(request.headers),
        )

        cancel.raise_if_cancelled()
        try:
            # Only the headers are awaited here; the body stays on the wire
            response = await self._http_client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportFailure(
                f"HTTP error opening relay stream: {e!s}", provider="relay"
            ) from e

        try:
            self._logger.info(
                "Response",
                status_code=response.status_code,
                http_version=response.http_version,
                headers=dict(response.headers),
            )
            await self._ensure_event_stream(response)
            self._logger.info("client - response started")

            chunks = parser.iter_chunks(self._lines(response, cancel))
            async with aclosing(chunks):
                async for record in chunks:
                    yield record

        except httpx.HTTPError as e:
            raise TransportFailure(
                f"HTTP error reading relay stream: {e!s}", provider="relay"
            ) from e
        finally:
            await response.aclose()
            self._logger.info("client - response ended", stats=parser.get_stats())

    async def _ensure_event_stream(self, response: httpx.Response) -> None:
        if response.status_code != HTTP_OK:
            error_text = (await response.aread()).decode(errors="replace")
            raise TransportFailure(
                f"Relay API error {response.status_code}: {error_text}",
                provider="relay",
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type", "")
        if EVENT_STREAM_TYPE not in content_type:
            raise TransportFailure(
                f"Expected streaming response, got content-type: {content_type}",
                provider="relay",
                status_code=response.status_code,
            )

    @staticmethod
    async def _lines(
        response: httpx.Response, cancel: CancellationToken
    ) -> AsyncGenerator[str]:
        async for line in response.aiter_lines():
            cancel.raise_if_cancelled()
            yield line
