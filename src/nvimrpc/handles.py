"""Editor object handles.

Buffers, windows and tabpages travel as MessagePack extension values whose
payload is itself a MessagePack integer::

    Buffer   extension 0
    Window   extension 1
    Tabpage  extension 2

Handles are encoded with an int32 payload (``d2`` + 4 bytes). Any integer
encoding is accepted when decoding.
"""

from __future__ import annotations

from typing import Any, ClassVar

from nvimrpc.error import DecodeConvertError, MsgpackError
from nvimrpc.types import ExtensionMap
from nvimrpc.wire import INT32, Decoder, Encoder, Type


def encode_ext(n: int) -> bytes:
    """Encode ``n`` as a MessagePack int32."""
    return bytes((INT32,)) + (n & 0xFFFFFFFF).to_bytes(4, "big")


def decode_ext(p: bytes | memoryview) -> int:
    """Decode a MessagePack-encoded integer extension payload."""
    dec = Decoder(bytes(p))
    try:
        dec.unpack()
    except MsgpackError:
        raise DecodeConvertError(Type.EXTENSION, int, bytes(p).hex()) from None
    if dec.type not in (Type.INT, Type.UINT) or dec.buffered():
        raise DecodeConvertError(Type.EXTENSION, int, bytes(p).hex())
    return dec.int()


class Handle(int):
    """Base class for handles; subclasses set ``ext_id``."""

    ext_id: ClassVar[int]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({int(self)})"

    def marshal_msgpack(self, enc: Encoder) -> None:
        enc.pack_extension(self.ext_id, encode_ext(int(self)))

    @classmethod
    def unmarshal_msgpack(cls, dec: Decoder) -> Any:
        if dec.type != Type.EXTENSION or dec.extension() != cls.ext_id:
            t = dec.type
            dec.skip()
            raise DecodeConvertError(t, cls)
        return cls(decode_ext(dec.bytes_no_copy()))


class Buffer(Handle):
    """A buffer handle."""

    ext_id = 0


class Window(Handle):
    """A window handle."""

    ext_id = 1


class Tabpage(Handle):
    """A tabpage handle."""

    ext_id = 2


HANDLE_TYPES: tuple[type[Handle], ...] = (Buffer, Window, Tabpage)


def handle_extensions() -> ExtensionMap:
    """Extension decoders producing handles when decoding into ``Any``."""
    return {cls.ext_id: (lambda p, cls=cls: cls(decode_ext(p))) for cls in HANDLE_TYPES}
