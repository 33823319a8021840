"""One-shot encoding and decoding of whole values.

The streaming :class:`~nvimrpc.wire.Encoder` and :class:`~nvimrpc.wire.Decoder`
are what the RPC endpoint uses. This module wraps them for the common case of
turning a single value into bytes and back.

Example:
    >>> packb({"a": [1, 2]})
    b'\\x81\\xa1a\\x92\\x01\\x02'
    >>> unpackb(b'\\x92\\x01\\x02', list[int])
    [1, 2]
"""

from __future__ import annotations

from typing import Any

from nvimrpc.error import MsgpackError
from nvimrpc.types import ExtensionMap
from nvimrpc.wire import Decoder, Encoder


class ValueCodec:
    """Encodes and decodes single values with a fixed extension registry."""

    def __init__(self, extensions: ExtensionMap | None = None) -> None:
        self.extensions: ExtensionMap = dict(extensions) if extensions else {}

    def encode(self, value: Any) -> bytes:
        enc = Encoder()
        enc.encode(value)
        return enc.getvalue()

    def decode(self, data: bytes, tp: Any = Any) -> Any:
        """Decode exactly one value from ``data``.

        Trailing bytes after the value are an error.
        """
        dec = Decoder(data, self.extensions)
        value = dec.decode(tp)
        if dec.buffered():
            raise MsgpackError(f"msgpack: {dec.buffered()} trailing bytes after value")
        return value


# Global default codec instance
_default_codec: ValueCodec | None = None


def get_default_codec() -> ValueCodec:
    """Get the global default ValueCodec instance."""
    global _default_codec
    if _default_codec is None:
        _default_codec = ValueCodec()
    return _default_codec


def packb(value: Any) -> bytes:
    """Encode ``value`` to MessagePack bytes."""
    return get_default_codec().encode(value)


def unpackb(data: bytes, tp: Any = Any, extensions: ExtensionMap | None = None) -> Any:
    """Decode one MessagePack value from ``data`` as host type ``tp``."""
    if extensions:
        return ValueCodec(extensions).decode(data, tp)
    return get_default_codec().decode(data, tp)
