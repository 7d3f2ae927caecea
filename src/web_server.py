"""
Web entry point: relays provider streams to HTTP clients as Server-Sent Events.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Annotated

import uvicorn
from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from src.config import Configuration
from src.llm.client import ProviderClient
from src.llm.exceptions import ConfigurationMissing, LLMError
from src.llm.streaming import (
    CancellationToken,
    ProviderStreamSource,
    SSESink,
    StreamPipeline,
    StreamResult,
)
from src.logging_utils import ContextualLogger, RelayErrorHandler, configure_logging

logger = logging.getLogger(__name__)

RelayCallable = Callable[[SSESink, CancellationToken], Awaitable[StreamResult]]


class EventStreamResponse(Response):
    """
    Streams one relay pipeline as `text/event-stream`.

    Headers are sent before the pipeline starts. Each SSE event is handed to
    the server as its own body message, and an `http.disconnect` from the
    client fires the pipeline's cancellation token.
    """

    media_type = "text/event-stream"

    def __init__(
        self,
        relay: RelayCallable,
        *,
        emit_error_events: bool = True,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.relay = relay
        self.emit_error_events = emit_error_events
        self.status_code = 200
        self.background = None
        self.result: StreamResult | None = None
        # No body attribute: content-length must not be set on a stream
        self.init_headers({"Cache-Control": "no-cache", **(headers or {})})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await send({
            "type": "http.response.start",
            "status": self.status_code,
            "headers": self.raw_headers,
        })

        cancel = CancellationToken()

        async def write(data: bytes) -> None:
            await send({"type": "http.response.body", "body": data, "more_body": True})

        async def watch_disconnect() -> None:
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    cancel.cancel("client disconnected")
                    return

        sink = SSESink(write, emit_error_events=self.emit_error_events)
        watcher = asyncio.create_task(watch_disconnect())
        try:
            self.result = await self.relay(sink, cancel)
        except LLMError as e:
            # Status is already committed; the body simply ends here
            _, category = RelayErrorHandler.classify_error(e)
            logger.error(f"Relay stream failed mid-response ({category}): {e}")
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

        with contextlib.suppress(OSError):
            await send({"type": "http.response.body", "body": b"", "more_body": False})


def create_app(
    configuration: Configuration | None = None,
    provider_client: ProviderClient | None = None,
) -> FastAPI:
    """
    Build the relay web application.

    Args:
        configuration: Loaded configuration; read from config.yaml when omitted
        provider_client: Shared provider client; built from configuration
            during startup when omitted
    """
    config = configuration or Configuration()
    web_config = config.get_web_config()
    streaming_config = config.get_streaming_config()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = False
        app.state.provider_client = provider_client
        app.state.startup_error = None
        if provider_client is None:
            try:
                app.state.provider_client = ProviderClient(
                    config.get_llm_config(), config.llm_api_key
                )
                owned = True
            except ConfigurationMissing as e:
                # Each request fails fast with the same error
                logger.warning(f"Provider client unavailable: {e}")
                app.state.startup_error = e
        try:
            yield
        finally:
            if owned:
                await app.state.provider_client.close()
            logger.info("Web server shutdown complete")

    app = FastAPI(title="Chat Completions Streaming Relay", lifespan=lifespan)

    @app.exception_handler(LLMError)
    async def llm_error_handler(request: Request, exc: LLMError) -> JSONResponse:
        status_code, category = RelayErrorHandler.classify_error(exc)
        logger.error(f"{request.method} {request.url.path} failed ({category}): {exc}")
        return JSONResponse(
            status_code=status_code, content=RelayErrorHandler.describe(exc)
        )

    def get_provider_client(request: Request) -> ProviderClient:
        client = getattr(request.app.state, "provider_client", None)
        if client is None:
            startup_error = getattr(request.app.state, "startup_error", None)
            if startup_error is not None:
                raise ConfigurationMissing(str(startup_error), key=startup_error.key)
            raise ConfigurationMissing("Provider client is not configured")
        return client

    @app.post(web_config["route"], response_class=EventStreamResponse)
    async def chat_streaming(
        message: Annotated[str, Body()],
        request: Request,
    ) -> EventStreamResponse:
        """Stream a completion for `message` as Server-Sent Events."""
        prompts = config.get_prompts()
        source = ProviderStreamSource(get_provider_client(request), prompts["system"])
        pipeline_logger = ContextualLogger({"request_id": str(uuid.uuid4())})

        async def relay(sink: SSESink, cancel: CancellationToken) -> StreamResult:
            pipeline_logger.info("server - response started")
            pipeline = StreamPipeline(source, sink, pipeline_logger)
            try:
                return await pipeline.run(message, cancel)
            finally:
                pipeline_logger.info(
                    "server - response ended",
                    state=pipeline.state.value,
                    is_cancellation_requested=cancel.is_cancelled,
                )

        return EventStreamResponse(
            relay, emit_error_events=streaming_config["emit_error_events"]
        )

    return app


def run() -> None:
    """Start the relay web server with uvicorn."""
    config = Configuration()
    log_config = config.get_logging_config()
    configure_logging(log_config["level"])
    web_config = config.get_web_config()

    uvicorn.run(
        create_app(config),
        host=web_config["host"],
        port=web_config["port"],
        log_level=str(log_config["level"]).lower(),
    )


if __name__ == "__main__":
    run()
