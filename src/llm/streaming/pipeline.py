"""
Pipeline driver wiring one upstream source to one downstream sink.

State machine:
    IDLE -> REQUESTING -> STREAMING -> [DRAINING] -> CLOSED
    REQUESTING | STREAMING -> ERRORED     (transport or decode failure)
    REQUESTING | STREAMING -> CANCELLED   (consumer cancelled or went away)

DRAINING is only entered for sinks that write a terminal frame.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from src.logging_utils import ContextualLogger, operation_context

from ..exceptions import StreamCancelled
from .cancellation import CancellationToken, cancellable
from .models import ChunkRecord, PipelineState, StreamResult
from .sinks import ChunkSink
from .sources import ChunkSource

_EXHAUSTED: Any = object()

_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.REQUESTING}),
    PipelineState.REQUESTING: frozenset({
        PipelineState.STREAMING,
        PipelineState.DRAINING,
        PipelineState.CLOSED,
        PipelineState.ERRORED,
        PipelineState.CANCELLED,
    }),
    PipelineState.STREAMING: frozenset({
        PipelineState.DRAINING,
        PipelineState.CLOSED,
        PipelineState.ERRORED,
        PipelineState.CANCELLED,
    }),
    PipelineState.DRAINING: frozenset({
        PipelineState.CLOSED,
        PipelineState.ERRORED,
        PipelineState.CANCELLED,
    }),
}


async def _pull(chunks: AsyncIterator[ChunkRecord]) -> ChunkRecord:
    return await anext(chunks, _EXHAUSTED)


class StreamPipeline:
    """Relays one completion from a source to a sink. Single use."""

    def __init__(
        self,
        source: ChunkSource,
        sink: ChunkSink,
        logger: ContextualLogger | None = None,
    ):
        self._source = source
        self._sink = sink
        self._logger = logger or ContextualLogger({"component": "stream_pipeline"})
        self.state = PipelineState.IDLE
        self.chunk_count = 0
        self.response_id: str | None = None

    def _transition(self, new_state: PipelineState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise RuntimeError(
                f"Invalid pipeline transition {self.state.value} -> {new_state.value}"
            )
        self._logger.debug(
            "Pipeline state changed", old=self.state.value, new=new_state.value
        )
        self.state = new_state

    async def run(
        self, user_message: str, cancel: CancellationToken | None = None
    ) -> StreamResult:
        """
        Pull every chunk from the source and forward it to the sink in order.

        Returns:
            StreamResult with state CLOSED or CANCELLED.

        Raises:
            LLMError: transport or decode failure; the pipeline ends ERRORED.
                Any other exception also ends it ERRORED before propagating.
            asyncio.CancelledError: the task was cancelled; the pipeline ends
                CANCELLED before the error propagates.
        """
        if self.state is not PipelineState.IDLE:
            raise RuntimeError("StreamPipeline instances are single-use")

        cancel = cancel or CancellationToken()
        self._transition(PipelineState.REQUESTING)
        error: str | None = None

        async with operation_context("relay_stream", bound_logger=self._logger):
            try:
                await self._forward(user_message, cancel)

                if self._sink.drains:
                    self._transition(PipelineState.DRAINING)
                    cancel.raise_if_cancelled()
                await self._sink.complete()
                self._transition(PipelineState.CLOSED)

            except StreamCancelled as e:
                self._transition(PipelineState.CANCELLED)
                self._logger.info(
                    "Stream cancelled", reason=e.reason, chunks=self.chunk_count
                )

            except asyncio.CancelledError:
                self._transition(PipelineState.CANCELLED)
                self._logger.info("Stream task cancelled", chunks=self.chunk_count)
                raise

            except Exception as e:
                # LLMError and anything a source or sink lets through unwrapped
                self._transition(PipelineState.ERRORED)
                error = str(e)
                await self._sink.fail(e)
                raise

            finally:
                await self._sink.close()

        return StreamResult(
            state=self.state,
            chunk_count=self.chunk_count,
            response_id=self.response_id,
            error=error,
        )

    async def _forward(self, user_message: str, cancel: CancellationToken) -> None:
        chunks = self._source.stream(user_message, cancel)
        async with aclosing(chunks):
            while True:
                chunk = await cancellable(_pull(chunks), cancel)
                if chunk is _EXHAUSTED:
                    return

                if self.state is PipelineState.REQUESTING:
                    self._transition(PipelineState.STREAMING)
                    self.response_id = chunk.id

                cancel.raise_if_cancelled()
                await self._sink.send(chunk)
                self.chunk_count += 1
