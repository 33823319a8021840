"""Pytest configuration for all tests."""

import asyncio
from typing import Any

import pytest

from nvimrpc.value_codec import packb
from nvimrpc.wire import Decoder


class PipeTransport:
    """In-memory byte-stream transport for testing.

    Bytes written to one end become readable on its peer. ``max_read`` caps
    the size of each read so that framing across partial reads is exercised.
    """

    def __init__(self, max_read: int | None = None) -> None:
        self.peer: "PipeTransport | None" = None
        self.max_read = max_read
        self.closed = False
        self.written = bytearray()
        self._buf = bytearray()
        self._eof = False
        self._ready = asyncio.Event()

    def feed(self, data: bytes) -> None:
        """Make ``data`` readable on this end, as if the peer wrote it."""
        self._buf += data
        self._ready.set()

    def feed_eof(self) -> None:
        self._eof = True
        self._ready.set()

    async def read(self, n: int) -> bytes:
        while not self._buf and not self._eof:
            self._ready.clear()
            await self._ready.wait()
        if self.max_read is not None:
            n = min(n, self.max_read)
        data = bytes(self._buf[:n])
        del self._buf[:n]
        return data

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionError("pipe closed")
        self.written += data
        if self.peer is not None:
            self.peer.feed(data)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.feed_eof()
        if self.peer is not None:
            self.peer.feed_eof()


def create_pipe_pair(max_read: int | None = None) -> tuple[PipeTransport, PipeTransport]:
    """Create a pair of connected transports."""
    a = PipeTransport(max_read)
    b = PipeTransport(max_read)
    a.peer = b
    b.peer = a
    return a, b


class ScriptedPeer:
    """The far end of an endpoint's pipe, driven message by message by a test."""

    def __init__(self, transport: PipeTransport) -> None:
        self.transport = transport
        self._dec = Decoder()

    async def send(self, data: bytes) -> None:
        await self.transport.write(data)

    async def send_message(self, *items: Any) -> None:
        await self.send(packb(list(items)))

    async def read_message(self) -> Any:
        """Read one whole message written by the endpoint."""
        while not self._dec.message_ready():
            data = await self.transport.read(4096)
            if not data:
                raise EOFError("pipe closed")
            self._dec.feed(data)
        return self._dec.decode()

    async def close(self) -> None:
        await self.transport.close()


def create_scripted_pair(max_read: int | None = None) -> tuple[PipeTransport, ScriptedPeer]:
    """Create a transport for an endpoint and a scripted peer at its far end."""
    a, b = create_pipe_pair(max_read)
    return a, ScriptedPeer(b)

@pytest.fixture
def pipe_pair() -> tuple[PipeTransport, PipeTransport]:
    return create_pipe_pair()
