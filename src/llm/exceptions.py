"""
Error handling for streaming relay operations.

This module provides the error taxonomy shared by sources, parsers and sinks:
- Configuration problems detected before a stream begins
- Transport failures while opening or reading a stream
- Malformed chunks and upstream-reported stream faults
- Cancellation, which is an outcome rather than a failure
"""

from __future__ import annotations


class LLMError(Exception):
    """Base LLM error with rich context."""

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        model: str = "unknown",
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.response_data = response_data or {}


class ConfigurationMissing(LLMError, ValueError):
    """A required endpoint, key or model identifier is not configured."""

    def __init__(self, message: str, key: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.key = key


class TransportFailure(LLMError):
    """Network-level failure opening or reading a stream."""
    pass


class StreamingError(LLMError):
    """Streaming-specific errors."""

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        model: str = "unknown",
        raw_data: str | None = None,
        **kwargs,
    ):
        super().__init__(message, provider, model, **kwargs)
        self.raw_data = raw_data


class MalformedChunk(StreamingError):
    """A data line could not be decoded as the expected payload."""
    pass


class UpstreamStreamError(StreamingError):
    """The upstream relay reported a fault with an `event: error` frame."""
    pass


class StreamCancelled(Exception):
    """The consumer cancelled the stream. Not a failure."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(reason)
        self.reason = reason
