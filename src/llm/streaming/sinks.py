"""
Downstream sink adapters.

- ConsoleSink paces token output to a terminal
- SSESink re-encodes chunks as Server-Sent Events and flushes each one
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TextIO

from src.logging_utils import RelayErrorHandler

from ..exceptions import StreamCancelled
from .models import DATA_PREFIX, DONE_MARKER, ERROR_EVENT, EVENT_PREFIX, ChunkRecord


def format_sse_event(data: str, event: str | None = None) -> str:
    """Frame one SSE event; exactly one blank line terminates it."""
    lines = []
    if event is not None:
        lines.append(f"{EVENT_PREFIX}{event}")
    lines.append(f"{DATA_PREFIX}{data}")
    return "\n".join(lines) + "\n\n"


DONE_EVENT = format_sse_event(DONE_MARKER)


class ChunkSink(Protocol):
    """Downstream consumer of one completion."""

    # Whether a terminal frame is written after the last chunk
    drains: bool

    async def send(self, chunk: ChunkRecord) -> None: ...

    async def complete(self) -> None: ...

    async def fail(self, error: Exception) -> None: ...

    async def close(self) -> None: ...


class ConsoleSink:
    """Writes chunks to a terminal with a typing-speed pause after each one."""

    drains = False

    def __init__(self, stream: TextIO | None = None, output_delay_ms: int = 33):
        if output_delay_ms < 0:
            raise ValueError("output_delay_ms must be non-negative")
        self._stream = stream or sys.stdout
        self._delay = output_delay_ms / 1000

    async def send(self, chunk: ChunkRecord) -> None:
        if chunk.role is not None:
            self._stream.write(f"\n{chunk.role.value}: \n")
        if chunk.content_delta:
            self._stream.write(chunk.content_delta)
        self._stream.flush()

        if self._delay:
            await asyncio.sleep(self._delay)

    async def complete(self) -> None:
        self._stream.write("\n")
        self._stream.flush()

    async def fail(self, error: Exception) -> None:
        self._stream.write("\n")
        self._stream.flush()

    async def close(self) -> None:
        self._stream.flush()


class SSESink:
    """
    Encodes chunks as `data: <json>` events through an async write callable.

    The callable must flush what it is given; the web layer binds it to the
    ASGI `send`, which hands each event to the server immediately.
    """

    drains = True

    def __init__(
        self,
        write: Callable[[bytes], Awaitable[Any]],
        *,
        emit_error_events: bool = True,
    ):
        self._write = write
        self.emit_error_events = emit_error_events
        self._done_sent = False
        self.events_sent = 0

    async def _emit(self, event: str) -> None:
        try:
            await self._write(event.encode("utf-8"))
        except OSError as e:
            raise StreamCancelled("client disconnected") from e

    async def send(self, chunk: ChunkRecord) -> None:
        await self._emit(format_sse_event(chunk.to_sse_json()))
        self.events_sent += 1

    async def complete(self) -> None:
        if self._done_sent:
            return
        await self._emit(DONE_EVENT)
        self._done_sent = True

    async def fail(self, error: Exception) -> None:
        # Headers are committed; an error frame is the only signal left
        if not self.emit_error_events or self._done_sent:
            return
        body = json.dumps(RelayErrorHandler.describe(error), ensure_ascii=False)
        # The peer may already be gone; the original error still propagates
        with contextlib.suppress(StreamCancelled):
            await self._emit(format_sse_event(body, event=ERROR_EVENT))

    async def close(self) -> None:
        pass
