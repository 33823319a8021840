"""Byte-stream transports for :class:`~nvimrpc.endpoint.Endpoint`.

This module provides asyncio stream adapters that implement the Transport
protocol (TCP, unix sockets, and the process's own stdin/stdout).
"""

from __future__ import annotations

import asyncio
import logging
import sys

from nvimrpc.config import DialConfig

logger = logging.getLogger(__name__)


class StreamTransport:
    """Transport over an asyncio StreamReader/StreamWriter pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False

    async def read(self, n: int) -> bytes:
        """Read up to ``n`` bytes; ``b""`` at end of stream."""
        if self._closed:
            return b""
        return await self._reader.read(n)

    async def write(self, data: bytes) -> None:
        """Write and flush ``data``."""
        if self._closed:
            raise ConnectionError("transport closed")
        self._writer.write(data)
        await self._writer.drain()

    async def close(self) -> None:
        """Close the connection and wake up a pending read."""
        if self._closed:
            return
        self._closed = True
        self._reader.feed_eof()
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("error while closing transport: %s", e)


async def connect_tcp(host: str, port: int) -> StreamTransport:
    """Connect to ``host:port`` over TCP."""
    reader, writer = await asyncio.open_connection(host, port)
    logger.debug("connected to %s:%d", host, port)
    return StreamTransport(reader, writer)


async def connect_unix(path: str) -> StreamTransport:
    """Connect to the unix domain socket at ``path``."""
    reader, writer = await asyncio.open_unix_connection(path)
    logger.debug("connected to %s", path)
    return StreamTransport(reader, writer)


async def dial(address: str | DialConfig, timeout: float | None = None) -> StreamTransport:
    """Connect to ``address``: a unix socket path, or ``host:port``.

    Raises:
        pydantic.ValidationError: If the address is malformed
        TimeoutError: If the connection is not established in time
    """
    config = address if isinstance(address, DialConfig) else DialConfig(
        address=address, **({"timeout": timeout} if timeout is not None else {})
    )
    if config.is_unix:
        connect = connect_unix(config.address)
    else:
        connect = connect_tcp(*config.host_port)
    return await asyncio.wait_for(connect, timeout=config.timeout)


async def connect_stdio() -> StreamTransport:
    """Use this process's stdin and stdout, as a plugin host does."""
    loop = asyncio.get_running_loop()

    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer)

    w_transport, w_protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout.buffer)
    writer = asyncio.StreamWriter(w_transport, w_protocol, reader, loop)
    return StreamTransport(reader, writer)
