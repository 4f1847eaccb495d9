"""Bounded in-memory byte channel used as the live output stream."""

import asyncio
from typing import AsyncIterator

_CLOSED = object()


class StreamChannel:
    """Async queue of byte chunks with an explicit end-of-stream marker.

    Producers ``await send(chunk)``; the consumer iterates with ``async for``.
    The queue is bounded, so a producer waits until the consumer has taken the
    previous chunk. ``close()`` never blocks.
    """

    def __init__(self, maxsize: int = 1):
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._close_pending = False

    async def send(self, chunk: bytes) -> None:
        if self._closed:
            raise RuntimeError("Cannot send on a closed channel")
        await self._queue.put(chunk)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            self._close_pending = True

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        while True:
            if self._close_pending and self._queue.empty():
                return
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]


async def read_all(reader) -> bytes:
    """Drain a byte reader into one bytes object."""
    parts: list[bytes] = []
    async for chunk in reader:
        parts.append(chunk)
    return b"".join(parts)
