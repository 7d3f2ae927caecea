"""
Streaming-specific models for the relay pipeline.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..models import MessageRole

# SSE wire constants
DATA_PREFIX = "data: "
EVENT_PREFIX = "event: "
COMMENT_PREFIX = ":"
DONE_MARKER = "[DONE]"
DONE_LINE = f"{DATA_PREFIX}{DONE_MARKER}"
ERROR_EVENT = "error"


def new_response_id() -> str:
    """Generate the correlation id shared by all chunks of one completion."""
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now().astimezone()


class SSEEventType(Enum):
    """Server-Sent Event types."""
    CHUNK = "chunk"
    COMPLETION = "completion"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


class PipelineState(Enum):
    """Lifecycle of one relay pipeline."""
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PipelineState.CLOSED, PipelineState.ERRORED, PipelineState.CANCELLED
        )


@dataclass(frozen=True)
class RawSSEChunk:
    """Raw SSE chunk from HTTP response."""
    event_type: SSEEventType
    data: dict[str, Any] | None
    raw_data: str
    error: str | None = None
    timestamp: float = field(default_factory=time.time)


class ChunkRecord(BaseModel):
    """
    Normalized unit of streamed output.

    Wire names follow the relay's SSE payload: `content` for the delta text
    and `createdDateTime` for the emission timestamp.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    role: MessageRole | None = None
    content_delta: str | None = Field(default=None, alias="content")
    created_at: datetime = Field(default_factory=_now, alias="createdDateTime")

    def to_sse_json(self) -> str:
        """Serialize to the single-line JSON object carried by a `data:` line."""
        return self.model_dump_json(by_alias=True)


@dataclass(frozen=True)
class StreamResult:
    """Terminal outcome of a pipeline run."""
    state: PipelineState
    chunk_count: int
    response_id: str | None = None
    error: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.state is PipelineState.CANCELLED
