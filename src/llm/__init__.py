"""
LLM integration for the chat completions relay.

This package provides:
- Message and provider models
- The relay error taxonomy
- The direct-provider streaming client (src.llm.client)
- The streaming relay core (src.llm.streaming)
"""

from __future__ import annotations

from .exceptions import (
    ConfigurationMissing,
    LLMError,
    MalformedChunk,
    StreamCancelled,
    StreamingError,
    TransportFailure,
    UpstreamStreamError,
)
from .models import LLMMessage, MessageRole, ProviderType

__all__ = [
    "ConfigurationMissing",
    "LLMError",
    "LLMMessage",
    "MalformedChunk",
    "MessageRole",
    "ProviderType",
    "StreamCancelled",
    "StreamingError",
    "TransportFailure",
    "UpstreamStreamError",
]
