"""
SSE line parser and chunk normalization for the streaming relay.

Two kinds of raw units reach the relay:
- `data:` lines read from an SSE response body
- structured update objects yielded by the provider SDK

Both are turned into ChunkRecord instances here, once, at the boundary.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, AsyncIterable
from typing import Any

import structlog
from pydantic import ValidationError

from ..exceptions import MalformedChunk, UpstreamStreamError
from .models import (
    COMMENT_PREFIX,
    DATA_PREFIX,
    DONE_LINE,
    DONE_MARKER,
    ERROR_EVENT,
    EVENT_PREFIX,
    ChunkRecord,
    RawSSEChunk,
    SSEEventType,
    new_response_id,
)

logger = structlog.get_logger(__name__)


class ChunkNormalizer:
    """
    Per-response normalization state.

    Tracks the response id and whether the role has already been emitted, so
    every record of one completion shares an id and carries the role at most
    once.
    """

    def __init__(self, response_id: str | None = None):
        self.response_id = response_id
        self._role_seen = False

    def from_update(self, update: Any) -> ChunkRecord | None:
        """Normalize one provider SDK update; None when it carries nothing new."""
        choices = getattr(update, "choices", None) or []
        if not choices:
            return None

        delta = getattr(choices[0], "delta", None)
        role = getattr(delta, "role", None)
        content = getattr(delta, "content", None)

        if role is not None and self._role_seen:
            role = None
        if role is None and not content:
            return None

        if self.response_id is None:
            self.response_id = new_response_id()

        try:
            record = ChunkRecord(
                id=self.response_id,
                role=role,
                content_delta=content or None,
            )
        except ValidationError as e:
            raise MalformedChunk(f"Unexpected provider update: {e}") from e

        if record.role is not None:
            self._role_seen = True
        return record

    def from_payload(self, payload: dict[str, Any]) -> ChunkRecord:
        """Schema-checked decode of one relay SSE payload."""
        payload_id = payload.get("id")
        if payload_id is not None and not isinstance(payload_id, str):
            raise MalformedChunk(
                f"Chunk id must be a string, got {type(payload_id).__name__}",
                raw_data=json.dumps(payload, ensure_ascii=False),
            )

        if self.response_id is None:
            self.response_id = payload_id or new_response_id()
        elif payload_id is not None and payload_id != self.response_id:
            raise MalformedChunk(
                f"Chunk id changed mid-stream: {self.response_id} -> {payload_id}",
                raw_data=json.dumps(payload, ensure_ascii=False),
            )

        try:
            record = ChunkRecord.model_validate({**payload, "id": self.response_id})
        except ValidationError as e:
            raise MalformedChunk(
                f"Chunk payload failed validation: {e}",
                raw_data=json.dumps(payload, ensure_ascii=False),
            ) from e

        if record.role is not None:
            if self._role_seen:
                record = record.model_copy(update={"role": None})
            else:
                self._role_seen = True
        return record


class StreamingParser:
    """Line-oriented SSE parser with a configurable malformed-chunk policy."""

    def __init__(
        self,
        enable_recovery: bool = False,
        normalizer: ChunkNormalizer | None = None,
        logger: Any = None,
    ):
        self.enable_recovery = enable_recovery
        self.normalizer = normalizer or ChunkNormalizer()
        self._logger = logger or structlog.get_logger(__name__)
        self._pending_event: str | None = None
        self.stats = {
            'total_chunks': 0,
            'skipped_lines': 0,
            'error_chunks': 0,
            'recovery_attempts': 0,
        }

    def parse_line(self, line: str) -> RawSSEChunk | None:
        """
        Parse one line of an SSE body.

        Returns a COMPLETION chunk for the terminal marker, a CHUNK or ERROR
        chunk for a decoded `data:` line, a HEARTBEAT chunk for a comment line,
        and None for anything else to skip.

        Raises:
            MalformedChunk: undecodable payload while recovery is disabled.
        """
        if not line.strip():
            # A blank line ends the current event
            self._pending_event = None
            return None

        if line == DONE_LINE:
            self._pending_event = None
            return RawSSEChunk(
                event_type=SSEEventType.COMPLETION, data=None, raw_data=DONE_MARKER
            )

        if line.startswith(COMMENT_PREFIX):
            # Keep-alive comment
            return RawSSEChunk(
                event_type=SSEEventType.HEARTBEAT, data=None, raw_data=line
            )

        if line.startswith(EVENT_PREFIX):
            self._pending_event = line[len(EVENT_PREFIX):].strip()
            return None

        if not line.startswith(DATA_PREFIX):
            self.stats['skipped_lines'] += 1
            return None

        body = line[len(DATA_PREFIX):]
        event, self._pending_event = self._pending_event, None

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            return self._malformed(body, f"JSON decode error: {e}")

        if not isinstance(data, dict):
            return self._malformed(
                body, f"Expected a JSON object, got {type(data).__name__}"
            )

        if event == ERROR_EVENT:
            self.stats['error_chunks'] += 1
            return RawSSEChunk(
                event_type=SSEEventType.ERROR,
                data=data,
                raw_data=body,
                error=str(data.get("error", "upstream stream error")),
            )

        self.stats['total_chunks'] += 1
        return RawSSEChunk(event_type=SSEEventType.CHUNK, data=data, raw_data=body)

    def decode(self, raw_chunk: RawSSEChunk) -> ChunkRecord | None:
        """Turn a CHUNK into a ChunkRecord under the same recovery policy."""
        if raw_chunk.data is None:
            return None
        try:
            return self.normalizer.from_payload(raw_chunk.data)
        except MalformedChunk as e:
            return self._malformed(raw_chunk.raw_data, str(e), cause=e)

    async def iter_chunks(
        self, lines: AsyncIterable[str]
    ) -> AsyncGenerator[ChunkRecord]:
        """
        Drive the parser over an async line source.

        Stops pulling lines as soon as the terminal marker is seen.

        Raises:
            MalformedChunk: undecodable payload while recovery is disabled.
            UpstreamStreamError: the relay sent an `event: error` frame.
        """
        async for line in lines:
            raw_chunk = self.parse_line(line)
            if raw_chunk is None or raw_chunk.event_type == SSEEventType.HEARTBEAT:
                continue

            if raw_chunk.event_type == SSEEventType.COMPLETION:
                return

            if raw_chunk.event_type == SSEEventType.ERROR:
                raise UpstreamStreamError(
                    f"Upstream reported a stream error: {raw_chunk.error}",
                    raw_data=raw_chunk.raw_data,
                )

            record = self.decode(raw_chunk)
            if record is not None:
                yield record

    def _malformed(
        self, body: str, reason: str, cause: Exception | None = None
    ) -> None:
        self.stats['error_chunks'] += 1
        if not self.enable_recovery:
            if isinstance(cause, MalformedChunk):
                raise cause
            raise MalformedChunk(reason, raw_data=body)

        self.stats['recovery_attempts'] += 1
        self._logger.warning(
            "Skipping malformed SSE data line", reason=reason, raw_data=body[:200]
        )
        return None

    def get_stats(self) -> dict[str, int]:
        """Get parsing statistics for monitoring."""
        return self.stats.copy()

    def reset_stats(self) -> None:
        """Reset statistics counters."""
        for key in self.stats:
            self.stats[key] = 0
