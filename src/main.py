"""
Console entry point for the chat completions relay.

Commands:
- 1: stream a completion directly from the provider
- 2: stream the same completion through the relay HTTP API
- exit: quit
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import uuid
from collections.abc import Callable, Iterator
from typing import TextIO

import httpx

from src.config import Configuration
from src.llm.client import ProviderClient
from src.llm.exceptions import LLMError
from src.llm.streaming import (
    CancellationToken,
    ConsoleSink,
    HttpRelaySource,
    ProviderStreamSource,
    StreamPipeline,
    StreamResult,
)
from src.logging_utils import ContextualLogger, RelayErrorHandler, configure_logging

logger = logging.getLogger(__name__)

MENU = (
    "Enter the command number and press the enter key.\n"
    "1: Chat completions streaming demo, "
    "2: Chat completions streaming via relay API demo"
)


def create_http_client(config: Configuration) -> httpx.AsyncClient:
    """Create the process-wide HTTP client used by the relay source."""
    http_config = config.get_http_client_config()
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=http_config["connect_timeout"],
            read=http_config["read_timeout"],
            write=http_config["write_timeout"],
            pool=http_config["pool_timeout"],
        ),
        limits=httpx.Limits(
            max_connections=http_config["max_connections"],
            max_keepalive_connections=http_config["max_keepalive"],
            keepalive_expiry=http_config["keepalive_expiry"],
        ),
    )


@contextlib.contextmanager
def cancel_on_interrupt(cancel: CancellationToken) -> Iterator[None]:
    """Route SIGINT to the token while a stream is running."""
    loop = asyncio.get_running_loop()
    installed = False
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, cancel.cancel, "interrupted by user")
        installed = True
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


class ConsoleApp:
    """Line-based command loop driving the two relay pipelines."""

    def __init__(
        self,
        configuration: Configuration,
        http_client: httpx.AsyncClient,
        *,
        provider_client: ProviderClient | None = None,
        output: TextIO | None = None,
        input_func: Callable[[str], str] = input,
    ) -> None:
        self.configuration = configuration
        self.http_client = http_client
        self._provider_client = provider_client
        self._owns_provider_client = provider_client is None
        self.output = output or sys.stdout
        self._input = input_func

        console_config = configuration.get_console_config()
        self.output_delay_ms: int = console_config["output_delay_ms"]
        self.command_pause_ms: int = console_config["command_pause_ms"]

    def _print(self, text: str = "") -> None:
        self.output.write(f"{text}\n")
        self.output.flush()

    def _get_provider_client(self) -> ProviderClient:
        if self._provider_client is None:
            self._provider_client = ProviderClient(
                self.configuration.get_llm_config(),
                self.configuration.llm_api_key,
            )
        return self._provider_client

    def _pipeline_logger(self, command: str) -> ContextualLogger:
        return ContextualLogger({
            "command": command,
            "request_id": str(uuid.uuid4()),
        })

    async def stream_from_provider(self, cancel: CancellationToken) -> StreamResult:
        """Command 1: provider SDK stream to the console."""
        prompts = self.configuration.get_prompts()
        source = ProviderStreamSource(self._get_provider_client(), prompts["system"])
        sink = ConsoleSink(self.output, self.output_delay_ms)
        pipeline = StreamPipeline(source, sink, self._pipeline_logger("provider"))
        return await pipeline.run(prompts["user"], cancel)

    async def stream_via_relay(self, cancel: CancellationToken) -> StreamResult:
        """Command 2: relay API SSE stream to the console."""
        prompts = self.configuration.get_prompts()
        relay_config = self.configuration.get_relay_config()
        streaming_config = self.configuration.get_streaming_config()
        pipeline_logger = self._pipeline_logger("relay")

        source = HttpRelaySource(
            self.http_client,
            relay_config["endpoint"],
            enable_recovery=streaming_config["enable_recovery"],
            logger=pipeline_logger,
        )
        sink = ConsoleSink(self.output, self.output_delay_ms)
        pipeline = StreamPipeline(source, sink, pipeline_logger)
        return await pipeline.run(prompts["user"], cancel)

    async def run_command(self, command: str) -> StreamResult | None:
        """
        Execute one menu command.

        Errors are reported on the console and do not end the loop.

        Returns:
            The stream outcome, or None for an invalid command or a failure.
        """
        handlers = {
            "1": self.stream_from_provider,
            "2": self.stream_via_relay,
        }
        handler = handlers.get(command)
        if handler is None:
            self._print("invalid command number.")
            return None

        cancel = CancellationToken()
        try:
            with cancel_on_interrupt(cancel):
                result = await handler(cancel)
        except LLMError as e:
            _, category = RelayErrorHandler.classify_error(e)
            logger.error(f"Command {command} failed ({category}): {e}")
            self._print(f"error: {e}")
            return None

        if result.cancelled:
            self._print()
            self._print(f"stream cancelled: {cancel.reason}")
        return result

    async def run(self) -> None:
        """Read commands until `exit` or end of input."""
        while True:
            self._print(MENU)
            try:
                input_line = await asyncio.to_thread(self._input, "> ")
            except EOFError:
                break

            command = input_line.strip().lower()
            if not command:
                continue
            if command == "exit":
                break

            await self.run_command(command)

            await asyncio.sleep(self.command_pause_ms / 1000)
            self._print()

    async def aclose(self) -> None:
        """Close the provider client if this app created it."""
        if self._owns_provider_client and self._provider_client is not None:
            await self._provider_client.close()
            self._provider_client = None


async def main() -> None:
    """Main entry point - console command loop."""
    config = Configuration()
    configure_logging(config.get_logging_config()["level"])

    async with create_http_client(config) as http_client:
        app = ConsoleApp(config, http_client)
        try:
            await app.run()
        finally:
            await app.aclose()
            logger.info("Console shutdown complete")


def run() -> None:
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    run()
