"""Client-facing output for relayed responses.

The relay writes to a sink rather than straight to the ASGI ``send`` callable
so that buffering and flushing are explicit: a plain write may sit in the
buffer, a flush pushes everything written so far (including the status line and
headers) to the server.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from starlette.types import Send


class ResponseSink(Protocol):
    async def start(self, status_code: int, raw_headers: list[tuple[bytes, bytes]]) -> None: ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


@runtime_checkable
class Flusher(Protocol):
    """Capability of sinks that can push buffered output to the client on demand."""

    async def flush(self) -> None: ...


class ASGIResponseSink:
    """Response sink over an ASGI ``send``, buffering up to `buffer_size` bytes.

    The ``http.response.start`` message is held back until the first emission,
    so nothing reaches the client before the first full buffer or flush.
    """

    def __init__(self, send: Send, buffer_size: int = 4096):
        self._send = send
        self._buffer_size = buffer_size
        self._buffer = bytearray()
        self._start_message: dict | None = None
        self.started = False
        self.closed = False

    async def start(self, status_code: int, raw_headers: list[tuple[bytes, bytes]]) -> None:
        if self.started or self._start_message is not None:
            raise RuntimeError("response already started")
        self._start_message = {
            "type": "http.response.start",
            "status": status_code,
            "headers": raw_headers,
        }

    async def write(self, data: bytes) -> None:
        self._buffer.extend(data)
        if len(self._buffer) >= self._buffer_size:
            await self._emit(more_body=True)

    async def flush(self) -> None:
        await self._emit(more_body=True)

    async def close(self) -> None:
        if not self.closed:
            await self._emit(more_body=False)
            self.closed = True

    async def _emit(self, more_body: bool) -> None:
        if self._start_message is not None:
            message, self._start_message = self._start_message, None
            await self._send(message)
            self.started = True
        if not self.started:
            raise RuntimeError("response body written before start")
        if self._buffer or not more_body:
            body = bytes(self._buffer)
            self._buffer.clear()
            await self._send({"type": "http.response.body", "body": body, "more_body": more_body})
