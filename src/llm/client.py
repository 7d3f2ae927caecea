"""
Direct-provider streaming client built on the official OpenAI SDK.

Supports Azure OpenAI deployments and OpenAI-compatible endpoints. One
ProviderClient is created per process and shared by all requests; it keeps
no per-request state beyond its credentials.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import httpx
import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI

from src.logging_utils import log_operation

from .exceptions import ConfigurationMissing, TransportFailure
from .models import LLMMessage, ProviderType
from .streaming.cancellation import CancellationToken


class ProviderClient:
    """Streaming chat completions against the configured provider."""

    def __init__(
        self,
        config: dict[str, Any],
        api_key: str,
        client: AsyncOpenAI | None = None,
    ):
        """
        Initialize the provider client.

        Args:
            config: Active provider configuration (see Configuration.get_llm_config)
            api_key: Provider API key
            client: Pre-built SDK client, mainly for tests
        """
        if "model" not in config:
            raise ConfigurationMissing(
                "Required LLM configuration parameter 'model' not found",
                key="model",
            )

        self.config = config
        self.provider_type = ProviderType(config.get("provider", "openai"))
        self.model: str = config["model"]
        self._client = client or self._build_client(api_key)

    def _build_client(self, api_key: str) -> AsyncOpenAI:
        timeout = self.config.get("timeout", 60.0)
        if self.provider_type is ProviderType.AZURE:
            for key in ("endpoint", "api_version"):
                if not self.config.get(key):
                    raise ConfigurationMissing(
                        f"Azure OpenAI '{key}' must be configured",
                        key=key,
                        provider=self.provider_type.value,
                        model=self.model,
                    )
            return AsyncAzureOpenAI(
                azure_endpoint=self.config["endpoint"],
                api_key=api_key,
                api_version=self.config["api_version"],
                timeout=timeout,
            )

        return AsyncOpenAI(
            api_key=api_key,
            base_url=self.config.get("base_url"),
            timeout=timeout,
        )

    def _transport_failure(
        self, error: openai.APIError | httpx.HTTPError
    ) -> TransportFailure:
        return TransportFailure(
            f"{self.provider_type.value} streaming call failed: {error}",
            provider=self.provider_type.value,
            model=self.model,
            status_code=getattr(error, "status_code", None),
        )

    @log_operation("open_provider_stream")
    async def open_stream(self, messages: list[LLMMessage]) -> Any:
        """Start a streaming chat completion and return the SDK stream."""
        try:
            return await self._client.chat.completions.create(
                model=self.model,
                messages=[message.to_payload() for message in messages],
                stream=True,
            )
        except openai.APIError as e:
            raise self._transport_failure(e) from e

    async def stream_updates(
        self,
        messages: list[LLMMessage],
        cancel: CancellationToken | None = None,
    ) -> AsyncGenerator[Any]:
        """
        Yield raw SDK updates for one completion.

        The SDK stream is closed on every exit path, including cancellation,
        so the upstream socket is released promptly.
        """
        stream = await self.open_stream(messages)
        try:
            async for update in stream:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                yield update
        except (openai.APIError, httpx.HTTPError) as e:
            # The SDK leaves httpx errors raised while reading the body unwrapped
            raise self._transport_failure(e) from e
        finally:
            await stream.close()

    async def close(self) -> None:
        """Close the underlying SDK client."""
        await self._client.close()

    async def __aenter__(self) -> ProviderClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
