"""
Cancellation handles keyed by message id.

A provider adapter registers a handle for the
message it is answering, and the UI later calls abort(message_id). Aborting
an unknown or finished id is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable

from chatrelay.llm.models import AbortError

logger = logging.getLogger(__name__)


class AbortRegistry:
    """Maps message ids to asyncio.Event abort signals."""

    def __init__(self):
        self._signals: dict[str, asyncio.Event] = {}

    def create(self, message_id: str | None) -> tuple[asyncio.Event, Callable[[], None]]:
        """
        Create the abort signal for message_id.

        Returns:
            (signal, cleanup); call cleanup once the request has finished
        """
        signal = asyncio.Event()
        if not message_id:
            return signal, lambda: None

        self._signals[message_id] = signal

        def cleanup() -> None:
            if self._signals.get(message_id) is signal:
                del self._signals[message_id]

        return signal, cleanup

    def abort(self, message_id: str) -> bool:
        """
        Fire the abort signal for message_id.

        Returns:
            True if an in-flight request was signalled
        """
        signal = self._signals.get(message_id)
        if signal is None:
            return False
        logger.info(f"Aborting request for message {message_id}")
        signal.set()
        return True

    def is_active(self, message_id: str) -> bool:
        return message_id in self._signals


async def iterate_until_aborted(stream, signal: asyncio.Event) -> AsyncIterator:
    """
    Iterate an async stream, racing every read against the abort signal.

    Raises:
        AbortError: As soon as the signal fires, even if the stream is stalled
    """
    iterator = stream.__aiter__()
    aborted = asyncio.ensure_future(signal.wait())
    try:
        while True:
            if signal.is_set():
                raise AbortError()
            next_part = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait({next_part, aborted}, return_when=asyncio.FIRST_COMPLETED)
            if next_part not in done:
                next_part.cancel()
                raise AbortError()
            try:
                part = next_part.result()
            except StopAsyncIteration:
                return
            yield part
    finally:
        aborted.cancel()
        close = getattr(stream, "aclose", None)
        if signal.is_set() and close is not None:
            try:
                await close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing aborted stream: {e}")


async def await_or_abort(awaitable, signal: asyncio.Event):
    """
    Await a single request unless the abort signal fires first.

    Raises:
        AbortError: If the signal fires before the request completes
    """
    if signal.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise AbortError()
    request = asyncio.ensure_future(awaitable)
    aborted = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({request, aborted}, return_when=asyncio.FIRST_COMPLETED)
        if request not in done:
            request.cancel()
            raise AbortError()
        return request.result()
    finally:
        aborted.cancel()
