"""
Cooperative cancellation for relay pipelines.

A CancellationToken is handed to every suspension point of a pipeline:
sources and sinks check it before each read or write, and `cancellable()`
races an in-flight read against it so a blocked network read is abandoned
as soon as the consumer goes away.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from ..exceptions import StreamCancelled

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal shared by a single pipeline run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token. Later calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelled(self.reason or "cancelled")


async def cancellable(awaitable: Awaitable[T], token: CancellationToken) -> T:
    """
    Await `awaitable` unless `token` fires first.

    When the token wins, the pending read is cancelled and awaited to
    completion before StreamCancelled is raised, so the underlying async
    generator is no longer running when the caller closes it.
    """
    if token.is_cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    read = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {read, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        read.cancel()
        waiter.cancel()
        await asyncio.wait({read, waiter})
        raise

    if read in done:
        waiter.cancel()
        return read.result()

    read.cancel()
    await asyncio.wait({read})
    if not read.cancelled():
        # The read finished while being cancelled; its outcome is discarded.
        read.exception()
    raise StreamCancelled(token.reason or "cancelled")
