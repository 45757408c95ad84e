"""In-process byte pipes used to wire remote exec stdio to relay tasks."""

import asyncio
from typing import Optional

_EOF = object()


class BytePipe:
    """
    Unidirectional async byte pipe.

    Writers push chunks; readers get them in order. After close() readers
    drain what is buffered and then get b"" forever. Writing to a closed pipe
    raises BrokenPipeError.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = False
        self._eof_seen = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise BrokenPipeError("pipe is closed")
        if data:
            await self._queue.put(data)

    async def read(self) -> bytes:
        if self._eof_seen:
            return b""
        item = await self._queue.get()
        if item is _EOF:
            self._eof_seen = True
            return b""
        return item

    def read_nowait(self) -> Optional[bytes]:
        """Next buffered chunk, b"" at end of stream, None if nothing is ready."""
        if self._eof_seen:
            return b""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _EOF:
            self._eof_seen = True
            return b""
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_EOF)
        except asyncio.QueueFull:
            # Bounded and full: drop the oldest chunk so readers still see EOF.
            self._queue.get_nowait()
            self._queue.put_nowait(_EOF)
