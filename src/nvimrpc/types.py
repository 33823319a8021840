"""Host-side type vocabulary for the MessagePack codec.

Python has a single unbounded ``int``. Sized integer slots are expressed with
``Annotated`` aliases so that a decoded value which does not fit is reported
as a convert error, the same way a fixed-width destination would overflow.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from nvimrpc.wire import Decoder, Encoder


@dataclass(frozen=True, slots=True)
class IntRange:
    """Inclusive bounds for an integer slot."""

    lo: int
    hi: int

    def __contains__(self, value: int) -> bool:
        return self.lo <= value <= self.hi


Int8 = Annotated[int, IntRange(-(1 << 7), (1 << 7) - 1)]
Int16 = Annotated[int, IntRange(-(1 << 15), (1 << 15) - 1)]
Int32 = Annotated[int, IntRange(-(1 << 31), (1 << 31) - 1)]
Int64 = Annotated[int, IntRange(-(1 << 63), (1 << 63) - 1)]
Uint8 = Annotated[int, IntRange(0, (1 << 8) - 1)]
Uint16 = Annotated[int, IntRange(0, (1 << 16) - 1)]
Uint32 = Annotated[int, IntRange(0, (1 << 32) - 1)]
Uint64 = Annotated[int, IntRange(0, (1 << 64) - 1)]

# A bare ``int`` accepts anything MessagePack can carry.
ANY_INT = IntRange(-(1 << 63), (1 << 64) - 1)


@dataclass(frozen=True, slots=True)
class Extension:
    """An extension value with no registered decoder.

    Wire format: ext/fixext with ``kind`` and the ``data`` payload.
    """

    kind: int
    data: bytes

    def marshal_msgpack(self, enc: Encoder) -> None:
        enc.pack_extension(self.kind, self.data)


class Raw(bytes):
    """A complete, already encoded MessagePack value.

    Encoding a ``Raw`` writes its bytes verbatim. Decoding into ``Raw``
    captures the exact bytes of the next value in the stream.
    """

    def __repr__(self) -> str:
        return f"Raw({bytes(self)!r})"


ExtensionMap = dict[int, Callable[[bytes], Any]]


@runtime_checkable
class Marshaler(Protocol):
    """Implemented by objects that encode themselves."""

    def marshal_msgpack(self, enc: Encoder) -> None:
        ...


@runtime_checkable
class Unmarshaler(Protocol):
    """Implemented by classes that decode themselves.

    ``unmarshal_msgpack`` is a classmethod. It is called with the decoder
    positioned on the current value (its header already unpacked) and
    returns the decoded instance.
    """

    @classmethod
    def unmarshal_msgpack(cls, dec: Decoder) -> Any:
        ...


def is_marshaler(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, Marshaler)


def is_unmarshaler(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, Unmarshaler)
