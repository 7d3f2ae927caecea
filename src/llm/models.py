"""
Core LLM dataclasses shared by the provider client and the streaming relay.

This module provides:
- Provider identification
- Message roles
- Request message structures
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ProviderType(Enum):
    """Supported LLM providers."""
    AZURE = "azure"
    OPENAI = "openai"


class MessageRole(Enum):
    """OpenAI-compatible message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    DEVELOPER = "developer"


@dataclass(frozen=True)
class LLMMessage:
    """OpenAI-compatible message structure."""
    role: MessageRole
    content: str

    def to_payload(self) -> dict[str, Any]:
        """Convert to the wire shape expected by chat completions."""
        return {"role": self.role.value, "content": self.content}
