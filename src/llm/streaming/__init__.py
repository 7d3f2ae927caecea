"""
Streaming relay core.

This package contains:
- SSE parsing and chunk normalization
- Upstream source adapters (provider SDK, HTTP relay)
- Downstream sink adapters (console, SSE)
- The pipeline driver and its cancellation model
"""

from __future__ import annotations

from .cancellation import CancellationToken, cancellable
from .models import ChunkRecord, PipelineState, RawSSEChunk, SSEEventType, StreamResult
from .parser import ChunkNormalizer, StreamingParser
from .pipeline import StreamPipeline
from .sinks import ConsoleSink, SSESink, format_sse_event
from .sources import HttpRelaySource, ProviderStreamSource

__all__ = [
    "CancellationToken",
    "ChunkNormalizer",
    "ChunkRecord",
    "ConsoleSink",
    "HttpRelaySource",
    "PipelineState",
    "ProviderStreamSource",
    "RawSSEChunk",
    "SSEEventType",
    "SSESink",
    "StreamPipeline",
    "StreamResult",
    "StreamingParser",
    "cancellable",
    "format_sse_event",
]
