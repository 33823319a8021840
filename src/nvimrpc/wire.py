"""MessagePack wire codec.

This module handles WIRE-LEVEL encoding and decoding only:
- Format codes, lengths and scalar payloads (big-endian throughout)
- A streaming, pull-based :class:`Decoder` driven by a 256-entry format table
- An :class:`Encoder` that always picks the shortest format

Mapping between wire values and host types (dataclasses, typed containers,
extension registries) lives in :mod:`nvimrpc.encode` and
:mod:`nvimrpc.decode`; :meth:`Encoder.encode` and :meth:`Decoder.decode` are
the entry points into that layer.
"""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, BinaryIO, Callable, Final

from nvimrpc.error import (
    EncodeTypeError,
    EndOfStream,
    LongValue,
    MsgpackError,
    UnexpectedEof,
    UnknownCode,
)
from nvimrpc.types import ExtensionMap

# MessagePack format codes.
FIX_INT_MIN: Final = 0x00
FIX_INT_MAX: Final = 0x7F
FIX_MAP_MIN: Final = 0x80
FIX_MAP_MAX: Final = 0x8F
FIX_ARRAY_MIN: Final = 0x90
FIX_ARRAY_MAX: Final = 0x9F
FIX_STR_MIN: Final = 0xA0
FIX_STR_MAX: Final = 0xBF
NIL: Final = 0xC0
UNUSED: Final = 0xC1
FALSE: Final = 0xC2
TRUE: Final = 0xC3
BIN8: Final = 0xC4
BIN16: Final = 0xC5
BIN32: Final = 0xC6
EXT8: Final = 0xC7
EXT16: Final = 0xC8
EXT32: Final = 0xC9
FLOAT32: Final = 0xCA
FLOAT64: Final = 0xCB
UINT8: Final = 0xCC
UINT16: Final = 0xCD
UINT32: Final = 0xCE
UINT64: Final = 0xCF
INT8: Final = 0xD0
INT16: Final = 0xD1
INT32: Final = 0xD2
INT64: Final = 0xD3
FIXEXT1: Final = 0xD4
FIXEXT2: Final = 0xD5
FIXEXT4: Final = 0xD6
FIXEXT8: Final = 0xD7
FIXEXT16: Final = 0xD8
STR8: Final = 0xD9
STR16: Final = 0xDA
STR32: Final = 0xDB
ARRAY16: Final = 0xDC
ARRAY32: Final = 0xDD
MAP16: Final = 0xDE
MAP32: Final = 0xDF
NEG_FIX_INT_MIN: Final = 0xE0
NEG_FIX_INT_MAX: Final = 0xFF

MAX_UINT32: Final = (1 << 32) - 1
MAX_UINT64: Final = (1 << 64) - 1
MIN_INT64: Final = -(1 << 63)

# Payloads up to this size are returned as a view of the read buffer.
PEEK_THRESHOLD: Final = 4096
READ_SIZE: Final = 4096


class Type(IntEnum):
    """The semantic type of a value in the MessagePack stream."""

    INVALID = 0
    NIL = 1
    BOOL = 2
    INT = 3
    UINT = 4
    FLOAT = 5
    ARRAY_LEN = 6
    MAP_LEN = 7
    STRING = 8
    BINARY = 9
    EXTENSION = 10

    def __str__(self) -> str:
        return _TYPE_NAMES[self]

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


_TYPE_NAMES: Final = {
    Type.INVALID: "Invalid",
    Type.NIL: "Nil",
    Type.BOOL: "Bool",
    Type.INT: "Int",
    Type.UINT: "Uint",
    Type.FLOAT: "Float",
    Type.ARRAY_LEN: "ArrayLen",
    Type.MAP_LEN: "MapLen",
    Type.STRING: "String",
    Type.BINARY: "Binary",
    Type.EXTENSION: "Extension",
}


# =============================================================================
# Encoding
# =============================================================================


def _encode_num(c8: int, c16: int, c32: int, c64: int, v: int) -> bytes:
    if c8 and v <= 0xFF:
        return bytes((c8, v))
    if v <= 0xFFFF:
        return struct.pack(">BH", c16, v)
    if v <= MAX_UINT32:
        return struct.pack(">BI", c32, v)
    return struct.pack(">BQ", c64, v)


_FIXEXT_CODES: Final = {1: FIXEXT1, 2: FIXEXT2, 4: FIXEXT4, 8: FIXEXT8, 16: FIXEXT16}


class Encoder:
    """Writes values in MessagePack format.

    Args:
        writer: Any object with a ``write(bytes)`` method. When omitted the
            encoder writes to an in-memory buffer, see :meth:`getvalue`.
    """

    __slots__ = ("_w",)

    def __init__(self, writer: Any | None = None) -> None:
        self._w = writer if writer is not None else io.BytesIO()

    def getvalue(self) -> bytes:
        """Return everything written so far (in-memory encoders only)."""
        return self._w.getvalue()

    def pack_nil(self) -> None:
        self._w.write(b"\xc0")

    def pack_bool(self, b: bool) -> None:
        self._w.write(b"\xc3" if b else b"\xc2")

    def pack_int(self, v: int) -> None:
        """Pack an integer using the shortest format.

        Positive values are written with the unsigned codes for compatibility
        with other encoders.
        """
        if 0 <= v <= FIX_INT_MAX:
            self._w.write(bytes((v,)))
        elif v > 0:
            self.pack_uint(v)
        elif v >= -32:
            self._w.write(bytes((v & 0xFF,)))
        elif v >= -(1 << 7):
            self._w.write(struct.pack(">Bb", INT8, v))
        elif v >= -(1 << 15):
            self._w.write(struct.pack(">Bh", INT16, v))
        elif v >= -(1 << 31):
            self._w.write(struct.pack(">Bi", INT32, v))
        elif v >= MIN_INT64:
            self._w.write(struct.pack(">Bq", INT64, v))
        else:
            raise EncodeTypeError(int, f"{v} out of range")

    def pack_uint(self, v: int) -> None:
        if v < 0 or v > MAX_UINT64:
            raise EncodeTypeError(int, f"{v} out of range")
        if v <= FIX_INT_MAX:
            self._w.write(bytes((v,)))
        else:
            self._w.write(_encode_num(UINT8, UINT16, UINT32, UINT64, v))

    def pack_float(self, f: float) -> None:
        self._w.write(struct.pack(">Bd", FLOAT64, f))

    def _pack_array_map_len(self, fix_min: int, c16: int, c32: int, n: int, what: str) -> None:
        if n < 0 or n > MAX_UINT32:
            raise LongValue(what, n)
        if n < 16:
            self._w.write(bytes((fix_min + n,)))
        else:
            self._w.write(_encode_num(0, c16, c32, 0, n))

    def pack_array_len(self, n: int) -> None:
        """Write an array header. The caller must write ``n`` values next."""
        self._pack_array_map_len(FIX_ARRAY_MIN, ARRAY16, ARRAY32, n, "array")

    def pack_map_len(self, n: int) -> None:
        """Write a map header. The caller must write ``n`` key-value pairs next."""
        self._pack_array_map_len(FIX_MAP_MIN, MAP16, MAP32, n, "map")

    def _pack_string_len(self, n: int) -> None:
        if n < 32:
            self._w.write(bytes((FIX_STR_MIN + n,)))
        elif n <= MAX_UINT32:
            self._w.write(_encode_num(STR8, STR16, STR32, 0, n))
        else:
            raise LongValue("string", n)

    def pack_string(self, s: str) -> None:
        self.pack_string_bytes(s.encode("utf-8", "surrogateescape"))

    def pack_string_bytes(self, b: bytes) -> None:
        """Write already-encoded bytes as a String value."""
        self._pack_string_len(len(b))
        self._w.write(b)

    def pack_binary(self, b: bytes) -> None:
        n = len(b)
        if n > MAX_UINT32:
            raise LongValue("binary", n)
        self._w.write(_encode_num(BIN8, BIN16, BIN32, 0, n))
        self._w.write(b)

    def pack_extension(self, kind: int, data: bytes) -> None:
        if not -(1 << 7) <= kind <= 0xFF:
            raise EncodeTypeError(int, f"extension kind {kind} out of range")
        n = len(data)
        code = _FIXEXT_CODES.get(n)
        if code is not None:
            self._w.write(bytes((code, kind & 0xFF)))
        elif n <= MAX_UINT32:
            self._w.write(_encode_num(EXT8, EXT16, EXT32, 0, n) + bytes((kind & 0xFF,)))
        else:
            raise LongValue("extension", n)
        self._w.write(data)

    def pack_raw(self, data: bytes) -> None:
        """Write pre-encoded MessagePack bytes verbatim."""
        self._w.write(data)

    def encode(self, value: Any) -> None:
        """Encode an arbitrary host value, dispatching on its runtime type."""
        from nvimrpc.encode import encode_value

        encode_value(self, value)


# =============================================================================
# Decoding
# =============================================================================


@dataclass(frozen=True, slots=True)
class _Format:
    """Entry of the lead-byte table."""

    type: Type
    n: Callable[[Decoder, int], Any]
    more: bool = False


def _fixed(value: int) -> Callable[[Decoder, int], int]:
    return lambda d, code: value


def _sign(bits: int, read: Callable[[Decoder, int], int]) -> Callable[[Decoder, int], int]:
    half = 1 << (bits - 1)

    def n(d: Decoder, code: int) -> int:
        v = read(d, code)
        return v - (half << 1) if v >= half else v

    return n


def _read1(d: Decoder, code: int) -> int:
    return d._read_uint(1)


def _read2(d: Decoder, code: int) -> int:
    return d._read_uint(2)


def _read4(d: Decoder, code: int) -> int:
    return d._read_uint(4)


def _read8(d: Decoder, code: int) -> int:
    return d._read_uint(8)


def _read_float32(d: Decoder, code: int) -> float:
    return struct.unpack(">f", d._read_raw(4))[0]


def _read_float64(d: Decoder, code: int) -> float:
    return struct.unpack(">d", d._read_raw(8))[0]


def _unknown(d: Decoder, code: int) -> int:
    raise UnknownCode(code)


def _build_formats() -> tuple[_Format, ...]:
    table: list[_Format | None] = [None] * 256

    fix_int = _Format(Type.INT, lambda d, code: code)
    fix_map = _Format(Type.MAP_LEN, lambda d, code: code - FIX_MAP_MIN)
    fix_array = _Format(Type.ARRAY_LEN, lambda d, code: code - FIX_ARRAY_MIN)
    fix_str = _Format(Type.STRING, lambda d, code: code - FIX_STR_MIN, more=True)
    neg_fix_int = _Format(Type.INT, lambda d, code: code - 0x100)

    for code in range(FIX_INT_MIN, FIX_INT_MAX + 1):
        table[code] = fix_int
    for code in range(FIX_MAP_MIN, FIX_MAP_MAX + 1):
        table[code] = fix_map
    for code in range(FIX_ARRAY_MIN, FIX_ARRAY_MAX + 1):
        table[code] = fix_array
    for code in range(FIX_STR_MIN, FIX_STR_MAX + 1):
        table[code] = fix_str
    for code in range(NEG_FIX_INT_MIN, NEG_FIX_INT_MAX + 1):
        table[code] = neg_fix_int

    table[NIL] = _Format(Type.NIL, _fixed(0))
    table[UNUSED] = _Format(Type.INVALID, _unknown)
    table[FALSE] = _Format(Type.BOOL, _fixed(0))
    table[TRUE] = _Format(Type.BOOL, _fixed(1))
    table[BIN8] = _Format(Type.BINARY, _read1, more=True)
    table[BIN16] = _Format(Type.BINARY, _read2, more=True)
    table[BIN32] = _Format(Type.BINARY, _read4, more=True)
    table[EXT8] = _Format(Type.EXTENSION, _read1, more=True)
    table[EXT16] = _Format(Type.EXTENSION, _read2, more=True)
    table[EXT32] = _Format(Type.EXTENSION, _read4, more=True)
    table[FLOAT32] = _Format(Type.FLOAT, _read_float32)
    table[FLOAT64] = _Format(Type.FLOAT, _read_float64)
    table[UINT8] = _Format(Type.UINT, _read1)
    table[UINT16] = _Format(Type.UINT, _read2)
    table[UINT32] = _Format(Type.UINT, _read4)
    table[UINT64] = _Format(Type.UINT, _read8)
    table[INT8] = _Format(Type.INT, _sign(8, _read1))
    table[INT16] = _Format(Type.INT, _sign(16, _read2))
    table[INT32] = _Format(Type.INT, _sign(32, _read4))
    table[INT64] = _Format(Type.INT, _sign(64, _read8))
    table[FIXEXT1] = _Format(Type.EXTENSION, _fixed(1), more=True)
    table[FIXEXT2] = _Format(Type.EXTENSION, _fixed(2), more=True)
    table[FIXEXT4] = _Format(Type.EXTENSION, _fixed(4), more=True)
    table[FIXEXT8] = _Format(Type.EXTENSION, _fixed(8), more=True)
    table[FIXEXT16] = _Format(Type.EXTENSION, _fixed(16), more=True)
    table[STR8] = _Format(Type.STRING, _read1, more=True)
    table[STR16] = _Format(Type.STRING, _read2, more=True)
    table[STR32] = _Format(Type.STRING, _read4, more=True)
    table[ARRAY16] = _Format(Type.ARRAY_LEN, _read2)
    table[ARRAY32] = _Format(Type.ARRAY_LEN, _read4)
    table[MAP16] = _Format(Type.MAP_LEN, _read2)
    table[MAP32] = _Format(Type.MAP_LEN, _read4)

    assert all(f is not None for f in table)
    return tuple(table)  # type: ignore[arg-type]


FORMATS: Final = _build_formats()


class Decoder:
    """Reads MessagePack values from a byte stream.

    Call :meth:`unpack` to read the next value header, then inspect
    :attr:`type` and read the value with :meth:`int`, :meth:`uint`,
    :meth:`float`, :meth:`bool`, :meth:`length`, :meth:`bytes`,
    :meth:`string` or :meth:`extension`.

    Args:
        source: An object with ``read(n)`` (a file, a socket file, ...), or a
            bytes-like object holding the whole input. When ``None``, input
            is supplied with :meth:`feed`.
        extensions: Functions converting extension payloads to host values,
            keyed by extension kind.
    """

    def __init__(
        self,
        source: BinaryIO | bytes | bytearray | memoryview | None = None,
        extensions: ExtensionMap | None = None,
    ) -> None:
        self._buf = bytearray()
        self._pos = 0
        self._start = 0
        self._mark: int | None = None
        self._scan: tuple[int, int, int] | None = None
        self._err: MsgpackError | None = None
        self._t = Type.INVALID
        self._n: Any = 0
        self._p: bytes | memoryview | None = None
        self._peek = False
        self.extensions: ExtensionMap = dict(extensions) if extensions else {}

        if isinstance(source, (bytes, bytearray, memoryview)):
            self._source = None
            self._append(source)
        else:
            self._source = source

    # -------------------------------------------------------------------------
    # Buffer management
    # -------------------------------------------------------------------------

    def _append(self, data: bytes | bytearray | memoryview) -> None:
        keep = self._pos if self._mark is None else self._mark
        try:
            if keep and keep >= len(self._buf) // 2:
                del self._buf[:keep]
                self._shift(keep)
            self._buf += data
        except BufferError:
            # Views handed out by bytes_no_copy() pin the buffer; they keep
            # the old one alive while reading continues in a new one.
            self._buf = self._buf[keep:] + data
            self._shift(keep)

    def _shift(self, n: int) -> None:
        self._pos -= n
        self._start = max(self._start - n, 0)
        if self._mark is not None:
            self._mark -= n
        if self._scan is not None:
            base, pos, left = self._scan
            self._scan = (base - n, pos - n, left)

    def _fill(self, n: int) -> bool:
        while len(self._buf) - self._pos < n:
            if self._source is None:
                return False
            chunk = self._source.read(max(READ_SIZE, n - (len(self._buf) - self._pos)))
            if not chunk:
                return False
            self._append(chunk)
        return True

    def feed(self, data: bytes | bytearray | memoryview) -> None:
        """Append input for a decoder created without a source."""
        self._append(data)
        if isinstance(self._err, EndOfStream):
            self._err = None

    def buffered(self) -> int:
        """Number of buffered bytes not yet consumed."""
        return len(self._buf) - self._pos

    def _read_raw(self, n: int) -> bytes:
        if not self._fill(n):
            raise UnexpectedEof()
        b = bytes(self._buf[self._pos:self._pos + n])
        self._pos += n
        return b

    def _read_uint(self, n: int) -> int:
        return int.from_bytes(self._read_raw(n), "big")

    def _fatal(self, err: MsgpackError) -> MsgpackError:
        if isinstance(err, EndOfStream):
            err = UnexpectedEof()
        self._t = Type.INVALID
        self._err = err
        return err

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def unpack(self) -> None:
        """Read the next value header (and its payload, if any).

        Raises :class:`EndOfStream` when the input ends cleanly before the
        header, :class:`UnexpectedEof` when it ends inside the value.
        """
        if self._err is not None:
            raise self._err

        if not self._fill(1):
            self._err = EndOfStream()
            raise self._err

        self._start = self._pos
        code = self._buf[self._pos]
        self._pos += 1

        f = FORMATS[code]
        self._t = f.type
        try:
            self._n = f.n(self, code)
        except MsgpackError as e:
            raise self._fatal(e) from None

        if not f.more:
            self._p = None
            return

        nn = self._n
        if f.type == Type.EXTENSION:
            if not self._fill(1):
                raise self._fatal(UnexpectedEof())
            self._n = self._buf[self._pos]
            self._pos += 1

        if not self._fill(nn):
            raise self._fatal(UnexpectedEof())

        if nn <= PEEK_THRESHOLD:
            self._peek = True
            self._p = memoryview(self._buf)[self._pos:self._pos + nn]
        else:
            self._peek = False
            self._p = bytes(self._buf[self._pos:self._pos + nn])
        self._pos += nn

    def unpack_next(self) -> None:
        """Like :meth:`unpack`, for a value inside an enclosing value.

        End of stream here is always unexpected.
        """
        try:
            self.unpack()
        except EndOfStream as e:
            raise self._fatal(e) from None

    def skip(self) -> None:
        """Skip over any nested values of the current value."""
        n = self._skip_count()
        while n > 0:
            n -= 1
            self.unpack_next()
            n += self._skip_count()

    def _skip_count(self) -> int:
        if self._t == Type.ARRAY_LEN:
            return self._n
        if self._t == Type.MAP_LEN:
            return 2 * self._n
        return 0

    def message_ready(self) -> bool:
        """Report whether one complete value is buffered, without consuming it.

        Only meaningful for decoders fed with :meth:`feed`. Progress through
        a partial value is remembered, so repeated calls while input trickles
        in only look at the new bytes.
        """
        if self._err is not None:
            raise self._err
        if self._scan is None or self._scan[0] != self._pos:
            self._scan = (self._pos, self._pos, 1)
        base, pos, left = self._scan
        saved = (self._pos, self._start, self._t, self._n, self._p, self._peek)
        self._pos = pos
        try:
            while left > 0:
                self.unpack()
                left += self._skip_count() - 1
                pos = self._pos
        except EOFError:
            self._err = None
            return False
        finally:
            self._scan = (base, pos, left)
            if self._err is None:
                self._pos, self._start, self._t, self._n, self._p, self._peek = saved
        return True

    def raw(self) -> bytes:
        """Return the encoded bytes of the current value, skipping its children."""
        self._mark = self._start
        try:
            self.skip()
            return bytes(self._buf[self._mark:self._pos])
        finally:
            self._mark = None

    def decode(self, tp: Any = Any) -> Any:
        """Decode the next value as host type ``tp``.

        See :mod:`nvimrpc.decode` for the conversion rules. A value that cannot
        be converted is skipped and reported, after the whole value has been
        consumed, as :class:`~nvimrpc.error.DecodeConvertError`.
        """
        from nvimrpc.decode import decode_value

        return decode_value(self, tp)

    # -------------------------------------------------------------------------
    # Accessors for the current value
    # -------------------------------------------------------------------------

    @property
    def type(self) -> Type:
        """The type of the current value."""
        return self._t

    def extension(self) -> int:
        """The kind of the current Extension value."""
        return self._n

    def bytes(self) -> bytes:
        """The current String, Binary or Extension payload, safe to keep."""
        return bytes(self._p) if self._peek else self._p

    def bytes_no_copy(self) -> bytes | memoryview:
        """The current payload; may be a view invalidated by the next read."""
        return self._p

    def string(self) -> str:
        """The current String, Binary or Extension payload as text."""
        return str(self._p, "utf-8", "surrogateescape")

    def int(self) -> int:
        """The current Int value (or Uint value, unchanged)."""
        return self._n

    def uint(self) -> int:
        """The current Uint value (an Int value is reinterpreted as 64 bits)."""
        return self._n & MAX_UINT64

    def length(self) -> int:
        """The current ArrayLen or MapLen count."""
        return self._n

    def bool(self) -> bool:
        """The current Bool value."""
        return self._n != 0

    def float(self) -> float:
        """The current Float value."""
        return self._n
