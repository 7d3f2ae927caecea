#!/usr/bin/env python3
"""
Tests for the direct-provider client and source, using a fake SDK client.
"""

import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from src.llm.client import ProviderClient
from src.llm.exceptions import ConfigurationMissing, TransportFailure
from src.llm.models import LLMMessage, MessageRole, ProviderType
from src.llm.streaming import (
    CancellationToken,
    PipelineState,
    ProviderStreamSource,
    SSESink,
    StreamPipeline,
)


def sdk_update(role=None, content=None):
    delta = SimpleNamespace(role=role, content=content)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


class FakeStream:
    """Stands in for the SDK's AsyncStream of chat completion chunks."""

    def __init__(self, updates, error=None, block=False):
        self.updates = updates
        self.error = error
        self.block = block
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for update in self.updates:
            yield update
        if self.error is not None:
            raise self.error
        if self.block:
            await asyncio.Event().wait()

    async def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self, stream=None, error=None):
        self.stream = stream
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.stream


class FakeSDKClient:
    def __init__(self, completions):
        self.chat = SimpleNamespace(completions=completions)
        self.closed = False

    async def close(self):
        self.closed = True


HELLO_UPDATES = [
    SimpleNamespace(choices=[]),
    sdk_update(role="assistant", content=""),
    sdk_update(content="こん"),
    sdk_update(content="にちは"),
    sdk_update(),
]

OPENAI_CONFIG = {"provider": "openai", "model": "gpt-4o-mini"}


def make_client(stream=None, error=None):
    completions = FakeCompletions(stream=stream, error=error)
    sdk = FakeSDKClient(completions)
    return ProviderClient(OPENAI_CONFIG, "test-key", client=sdk), completions, sdk


class TestProviderClientConfig:
    """Test provider client construction."""

    def test_missing_model(self):
        with pytest.raises(ConfigurationMissing) as exc_info:
            ProviderClient({"provider": "openai"}, "key")
        assert exc_info.value.key == "model"

    def test_azure_requires_endpoint(self):
        config = {"provider": "azure", "model": "gpt-4o", "api_version": "2024-06-01"}
        with pytest.raises(ConfigurationMissing, match="endpoint") as exc_info:
            ProviderClient(config, "key")
        assert exc_info.value.key == "endpoint"

    def test_azure_client(self):
        config = {
            "provider": "azure",
            "model": "gpt-4o",
            "endpoint": "https://example.openai.azure.com",
            "api_version": "2024-06-01",
        }
        client = ProviderClient(config, "key")
        assert client.provider_type is ProviderType.AZURE
        assert isinstance(client._client, openai.AsyncAzureOpenAI)

    def test_openai_client(self):
        client = ProviderClient(
            {**OPENAI_CONFIG, "base_url": "https://api.openai.com/v1"}, "key"
        )
        assert client.provider_type is ProviderType.OPENAI
        assert isinstance(client._client, openai.AsyncOpenAI)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            ProviderClient({"provider": "bedrock", "model": "m"}, "key")


class TestStreamUpdates:
    """Test the raw update stream."""

    @pytest.mark.asyncio
    async def test_request_shape(self):
        stream = FakeStream(HELLO_UPDATES)
        client, completions, _ = make_client(stream)
        messages = [
            LLMMessage(MessageRole.SYSTEM, "be brief"),
            LLMMessage(MessageRole.USER, "こんにちは"),
        ]

        updates = [u async for u in client.stream_updates(messages)]

        assert len(updates) == len(HELLO_UPDATES)
        assert completions.calls == [{
            "model": "gpt-4o-mini",
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "こんにちは"},
            ],
            "stream": True,
        }]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_open_failure_is_transport_failure(self):
        error = openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        )
        client, _, _ = make_client(error=error)

        with pytest.raises(TransportFailure) as exc_info:
            async for _ in client.stream_updates([LLMMessage(MessageRole.USER, "hi")]):
                pass

        assert exc_info.value.provider == "openai"
        assert exc_info.value.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_mid_stream_failure_closes_stream(self):
        error = openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        )
        stream = FakeStream(HELLO_UPDATES[:3], error=error)
        client, _, _ = make_client(stream)

        with pytest.raises(TransportFailure):
            async for _ in client.stream_updates([LLMMessage(MessageRole.USER, "hi")]):
                pass

        assert stream.closed

    @pytest.mark.asyncio
    async def test_body_read_error_is_transport_failure(self):
        stream = FakeStream(HELLO_UPDATES[:3], error=httpx.ReadError("connection reset"))
        client, _, _ = make_client(stream)

        with pytest.raises(TransportFailure, match="connection reset") as exc_info:
            async for _ in client.stream_updates([LLMMessage(MessageRole.USER, "hi")]):
                pass

        assert isinstance(exc_info.value.__cause__, httpx.ReadError)
        assert exc_info.value.provider == "openai"
        assert stream.closed

    @pytest.mark.asyncio
    async def test_close(self):
        client, _, sdk = make_client(FakeStream([]))
        async with client:
            pass
        assert sdk.closed


class TestProviderStreamSource:
    """Test the provider source inside a pipeline."""

    @pytest.mark.asyncio
    async def test_system_prompt_is_sent(self):
        client, completions, _ = make_client(FakeStream(HELLO_UPDATES))
        source = ProviderStreamSource(client, "あなたは和歌の名手です。")

        [r async for r in source.stream("こんにちは", CancellationToken())]

        sent = completions.calls[0]["messages"]
        assert sent[0] == {"role": "system", "content": "あなたは和歌の名手です。"}
        assert sent[1] == {"role": "user", "content": "こんにちは"}

    @pytest.mark.asyncio
    async def test_updates_become_records(self):
        client, _, _ = make_client(FakeStream(HELLO_UPDATES))
        source = ProviderStreamSource(client, "system")

        records = [r async for r in source.stream("こんにちは", CancellationToken())]

        assert [r.role for r in records] == [MessageRole.ASSISTANT, None, None]
        assert [r.content_delta for r in records] == [None, "こん", "にちは"]
        assert len({r.id for r in records}) == 1

    @pytest.mark.asyncio
    async def test_sse_pipeline(self):
        client, _, _ = make_client(FakeStream(HELLO_UPDATES))
        frames = []

        async def write(data):
            frames.append(data.decode("utf-8"))

        result = await StreamPipeline(
            ProviderStreamSource(client, "system"), SSESink(write)
        ).run("こんにちは")

        assert result.state is PipelineState.CLOSED
        assert result.chunk_count == 3
        assert len(frames) == 4
        assert frames[-1] == "data: [DONE]\n\n"

    @pytest.mark.asyncio
    async def test_body_read_error_ends_pipeline_errored(self):
        stream = FakeStream(HELLO_UPDATES[:3], error=httpx.ReadError("connection reset"))
        client, _, _ = make_client(stream)
        frames = []

        async def write(data):
            frames.append(data.decode("utf-8"))

        pipeline = StreamPipeline(ProviderStreamSource(client, "system"), SSESink(write))
        with pytest.raises(TransportFailure):
            await pipeline.run("hi")

        assert pipeline.state is PipelineState.ERRORED
        assert frames[0].startswith("data: ")
        assert frames[-1].startswith("event: error\n")
        assert '"type": "transport_error"' in frames[-1]
        assert "data: [DONE]\n\n" not in frames
        assert stream.closed

    @pytest.mark.asyncio
    async def test_cancellation_closes_provider_stream(self):
        stream = FakeStream(HELLO_UPDATES[:3], block=True)
        client, _, _ = make_client(stream)
        cancel = CancellationToken()
        frames = []

        async def write(data):
            frames.append(data)
            if len(frames) == 2:
                cancel.cancel("client disconnected")

        result = await asyncio.wait_for(
            StreamPipeline(ProviderStreamSource(client, "system"), SSESink(write)).run(
                "hi", cancel
            ),
            timeout=5,
        )

        assert result.state is PipelineState.CANCELLED
        assert len(frames) == 2
        assert stream.closed


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
