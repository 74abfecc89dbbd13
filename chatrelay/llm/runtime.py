"""
Per-process runtime state owned by the caller of the orchestrator.

One RuntimeState is created at application start and passed to the
orchestrator; nothing in the pipeline keeps module-level mutable state.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

from chatrelay.llm.abort import AbortRegistry
from chatrelay.llm.models import Message


class RuntimeState:
    """
    Shared state for in-flight completions.

    Attributes:
        generating: True while a user-facing completion is running
        search_cache: Web search payloads keyed by "web-search-<messageId>",
            kept until overwritten or cleared
        aborts: Abort handles keyed by message id
    """

    def __init__(self):
        self.generating = False
        self.search_cache: dict[str, Any] = {}
        self.aborts = AbortRegistry()

    @staticmethod
    def search_cache_key(message_id: str) -> str:
        return f"web-search-{message_id}"

    def get_search_result(self, message_id: str) -> Any:
        return self.search_cache.get(self.search_cache_key(message_id))

    def set_search_result(self, message_id: str, response: Any) -> None:
        self.search_cache[self.search_cache_key(message_id)] = response


class ResponseChannel:
    """
    Unbounded in-process channel of message snapshots.

    Pass channel.send as the orchestrator's on_response callback and consume
    with `async for message in channel`. send() never blocks the producer.
    """

    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    def send(self, message: Message) -> None:
        self._queue.put_nowait(message.model_copy(deep=True))

    def close(self) -> None:
        self._queue.put_nowait(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[Message]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
