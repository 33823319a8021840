"""Tests for the MessagePack wire codec.

These tests verify:
1. Literal encodings of integers, strings and extensions
2. Shortest-format selection at every size boundary
3. The streaming decoder: types, accessors, skip and raw capture
4. End of stream handling and error latching
5. Message framing over partial input
"""

import io
import struct

import pytest

from nvimrpc.error import EncodeTypeError, EndOfStream, LongValue, UnexpectedEof, UnknownCode
from nvimrpc.value_codec import packb
from nvimrpc.wire import PEEK_THRESHOLD, Decoder, Encoder, Type


def encode(fn, *args) -> bytes:
    enc = Encoder()
    fn(enc, *args)
    return enc.getvalue()


def header(data: bytes) -> Decoder:
    dec = Decoder(data)
    dec.unpack()
    return dec


class TestLiteralEncodings:
    """Byte-exact encodings of common values."""

    def test_uint8(self) -> None:
        assert encode(Encoder.pack_int, 0x80) == bytes.fromhex("cc80")
        dec = header(bytes.fromhex("cc80"))
        assert dec.type == Type.UINT
        assert dec.int() == 128

    def test_int8(self) -> None:
        assert encode(Encoder.pack_int, -0x21) == bytes.fromhex("d0df")
        dec = header(bytes.fromhex("d0df"))
        assert dec.type == Type.INT
        assert dec.int() == -33

    def test_fixstr_31(self) -> None:
        s = "1234567890123456789012345678901"
        data = encode(Encoder.pack_string, s)
        assert data == b"\xbf" + s.encode()
        dec = header(data)
        assert dec.type == Type.STRING
        assert dec.string() == s

    def test_str8_32(self) -> None:
        s = "12345678901234567890123456789012"
        assert encode(Encoder.pack_string, s) == b"\xd9\x20" + s.encode()

    def test_fixext16(self) -> None:
        payload = b"1234567890123456"
        data = encode(Encoder.pack_extension, 6, payload)
        assert data == b"\xd8\x06" + payload
        dec = header(data)
        assert dec.type == Type.EXTENSION
        assert dec.extension() == 6
        assert dec.bytes() == payload

    def test_ext8(self) -> None:
        payload = b"12345678901234567"
        assert encode(Encoder.pack_extension, 7, payload) == b"\xc7\x11\x07" + payload

    def test_nil_and_bool(self) -> None:
        enc = Encoder()
        enc.pack_nil()
        enc.pack_bool(True)
        enc.pack_bool(False)
        assert enc.getvalue() == b"\xc0\xc3\xc2"

    def test_float_is_always_float64(self) -> None:
        data = encode(Encoder.pack_float, 1.5)
        assert data == b"\xcb" + struct.pack(">d", 1.5)


class TestSizeBoundaries:
    """The encoder picks the smaller format below each boundary."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (0, "00"),
            (0x7F, "7f"),
            (0x80, "cc80"),
            (0xFF, "ccff"),
            (0x100, "cd0100"),
            (0xFFFF, "cdffff"),
            (0x10000, "ce00010000"),
            (0xFFFFFFFF, "ceffffffff"),
            (0x100000000, "cf0000000100000000"),
            ((1 << 64) - 1, "cfffffffffffffffff"),
            (-1, "ff"),
            (-32, "e0"),
            (-33, "d0df"),
            (-128, "d080"),
            (-129, "d1ff7f"),
            (-32768, "d18000"),
            (-32769, "d2ffff7fff"),
            (-(1 << 31), "d280000000"),
            (-(1 << 31) - 1, "d3ffffffff7fffffff"),
            (-(1 << 63), "d38000000000000000"),
        ],
    )
    def test_int(self, value: int, expected: str) -> None:
        data = encode(Encoder.pack_int, value)
        assert data == bytes.fromhex(expected)
        assert len(data) <= 9
        assert header(data).int() == value

    def test_int_out_of_range(self) -> None:
        with pytest.raises(EncodeTypeError):
            encode(Encoder.pack_int, 1 << 64)
        with pytest.raises(EncodeTypeError):
            encode(Encoder.pack_int, -(1 << 63) - 1)

    @pytest.mark.parametrize(
        "n,prefix",
        [
            (0, "a0"),
            (31, "bf"),
            (32, "d920"),
            (255, "d9ff"),
            (256, "da0100"),
            (65535, "daffff"),
            (65536, "db00010000"),
        ],
    )
    def test_string_length(self, n: int, prefix: str) -> None:
        data = encode(Encoder.pack_string, "x" * n)
        assert data == bytes.fromhex(prefix) + b"x" * n

    @pytest.mark.parametrize(
        "n,expected",
        [
            (0, "c400"),
            (255, "c4ff"),
            (256, "c50100"),
            (65536, "c600010000"),
        ],
    )
    def test_binary_length(self, n: int, expected: str) -> None:
        data = encode(Encoder.pack_binary, b"\x00" * n)
        assert data[: -n or None] == bytes.fromhex(expected)

    @pytest.mark.parametrize(
        "n,array,map_",
        [
            (0, "90", "80"),
            (15, "9f", "8f"),
            (16, "dc0010", "de0010"),
            (65535, "dcffff", "deffff"),
            (65536, "dd00010000", "df00010000"),
        ],
    )
    def test_array_map_length(self, n: int, array: str, map_: str) -> None:
        assert encode(Encoder.pack_array_len, n) == bytes.fromhex(array)
        assert encode(Encoder.pack_map_len, n) == bytes.fromhex(map_)

    def test_long_array(self) -> None:
        with pytest.raises(LongValue):
            encode(Encoder.pack_array_len, 1 << 32)

    @pytest.mark.parametrize(
        "n,prefix",
        [
            (1, "d405"),
            (2, "d505"),
            (3, "c70305"),
            (4, "d605"),
            (8, "d705"),
            (16, "d805"),
            (17, "c71105"),
            (256, "c8010005"),
        ],
    )
    def test_extension_length(self, n: int, prefix: str) -> None:
        data = encode(Encoder.pack_extension, 5, b"e" * n)
        assert data == bytes.fromhex(prefix) + b"e" * n


class TestDecoder:
    """Tests for the streaming decoder."""

    def test_type_names(self) -> None:
        assert str(Type.ARRAY_LEN) == "ArrayLen"
        assert str(Type.UINT) == "Uint"

    def test_uint64_max(self) -> None:
        dec = header(b"\xcf" + b"\xff" * 8)
        assert dec.type == Type.UINT
        assert dec.int() == (1 << 64) - 1

    def test_int_reinterpreted_as_uint(self) -> None:
        dec = header(b"\xff")
        assert dec.int() == -1
        assert dec.uint() == (1 << 64) - 1

    def test_float32(self) -> None:
        dec = header(b"\xca" + struct.pack(">f", 1.5))
        assert dec.type == Type.FLOAT
        assert dec.float() == 1.5

    def test_bool(self) -> None:
        assert header(b"\xc3").bool() is True
        assert header(b"\xc2").bool() is False

    def test_array_and_map_length(self) -> None:
        dec = header(b"\xdc\x00\x20")
        assert dec.type == Type.ARRAY_LEN
        assert dec.length() == 32
        dec = header(b"\x82")
        assert dec.type == Type.MAP_LEN
        assert dec.length() == 2

    def test_extension_kind_unsigned(self) -> None:
        dec = header(b"\xd4\xff\x01")
        assert dec.extension() == 255

    def test_small_payload_is_view(self) -> None:
        dec = header(b"\xc4\x03abc")
        assert isinstance(dec.bytes_no_copy(), memoryview)
        assert dec.bytes() == b"abc"
        assert isinstance(dec.bytes(), bytes)

    def test_large_payload_is_copied(self) -> None:
        n = PEEK_THRESHOLD + 1
        dec = header(b"\xc5" + n.to_bytes(2, "big") + b"z" * n)
        assert isinstance(dec.bytes_no_copy(), bytes)
        assert dec.bytes() == b"z" * n

    def test_view_survives_more_input(self) -> None:
        dec = Decoder()
        dec.feed(b"\xa3abc")
        dec.unpack()
        view = dec.bytes_no_copy()
        dec.feed(b"\x01" * 10000)
        assert bytes(view) == b"abc"

    def test_reads_from_file(self) -> None:
        data = b"\x93\x01\xa2hi" + b"\xc4\x02\x00\x01"
        dec = Decoder(io.BytesIO(data))
        assert dec.decode() == [1, "hi", b"\x00\x01"]
        with pytest.raises(EndOfStream):
            dec.unpack()

    def test_unknown_code(self) -> None:
        dec = Decoder(b"\xc1")
        with pytest.raises(UnknownCode) as exc_info:
            dec.unpack()
        assert exc_info.value.code == 0xC1
        assert dec.type == Type.INVALID


class TestSkip:
    """skip() leaves the cursor right after the current value."""

    @pytest.mark.parametrize(
        "value",
        [
            "92 01 02",
            "93 91 91 90 81 a1 61 92 c0 c3 a0",
            "82 a1 61 d8 05 30 31 32 33 34 35 36 37 38 39 30 31 32 33 34 35 a1 62 c4 01 ff",
            "dc 00 02 cb 3f f8 00 00 00 00 00 00 81 01 02",
        ],
    )
    def test_skip_composite(self, value: str) -> None:
        dec = Decoder(bytes.fromhex(value) + b"\x2a")
        dec.unpack()
        dec.skip()
        dec.unpack()
        assert dec.int() == 42
        assert dec.buffered() == 0

    def test_skip_scalar_is_noop(self) -> None:
        dec = Decoder(b"\x05\x06")
        dec.unpack()
        dec.skip()
        dec.unpack()
        assert dec.int() == 6

    def test_raw_captures_value(self) -> None:
        dec = Decoder(b"\x92\x01\xa1a\x05")
        dec.unpack()
        assert dec.raw() == b"\x92\x01\xa1a"
        dec.unpack()
        assert dec.int() == 5


class TestEndOfStream:
    """Clean and unexpected end of input."""

    def test_clean_end(self) -> None:
        dec = Decoder(b"")
        with pytest.raises(EndOfStream):
            dec.unpack()

    def test_feed_after_clean_end(self) -> None:
        dec = Decoder()
        with pytest.raises(EndOfStream):
            dec.unpack()
        dec.feed(b"\x07")
        dec.unpack()
        assert dec.int() == 7

    def test_truncated_payload(self) -> None:
        dec = Decoder(b"\xa5ab")
        with pytest.raises(UnexpectedEof):
            dec.unpack()

    def test_truncated_composite(self) -> None:
        dec = Decoder(b"\x92\x01")
        dec.unpack()
        dec.unpack_next()
        with pytest.raises(UnexpectedEof):
            dec.unpack_next()

    def test_error_is_latched(self) -> None:
        dec = Decoder(b"\x92\x01")
        dec.unpack()
        with pytest.raises(UnexpectedEof):
            dec.skip()
        dec.feed(b"\x02")
        with pytest.raises(UnexpectedEof):
            dec.unpack()


class TestMessageReady:
    """Framing complete values out of partial input."""

    def test_partial_then_complete(self) -> None:
        dec = Decoder()
        dec.feed(b"\x93\x01")
        assert not dec.message_ready()
        dec.feed(b"\xa2h")
        assert not dec.message_ready()
        dec.feed(b"i\xc0")
        assert dec.message_ready()
        assert dec.decode() == [1, "hi", None]
        assert not dec.message_ready()

    def test_byte_at_a_time(self) -> None:
        data = b"\x82\xa1a\x92\x01\x02\xa1b\xcd\x01\x00" * 2
        dec = Decoder()
        values = []
        for b in data:
            dec.feed(bytes((b,)))
            while dec.message_ready():
                values.append(dec.decode())
        assert values == [{"a": [1, 2], "b": 256}] * 2

    def test_unknown_code_is_raised(self) -> None:
        dec = Decoder()
        dec.feed(b"\x91\xc1")
        with pytest.raises(UnknownCode):
            dec.message_ready()

    def test_large_value_in_chunks(self) -> None:
        unpacked = 0

        class CountingDecoder(Decoder):
            def unpack(self) -> None:
                nonlocal unpacked
                unpacked += 1
                super().unpack()

        lines = [f"line {i}" for i in range(200_000)]
        data = packb([lines, "x" * (4 << 20)])
        chunk = 64 * 1024
        dec = CountingDecoder()
        dec.feed(data[:chunk])
        buf = dec._buf

        ready = [dec.message_ready()]
        for i in range(chunk, len(data), chunk):
            dec.feed(data[i:i + chunk])
            ready.append(dec.message_ready())

        assert ready[-1] and not any(ready[:-1])
        # Each value header is scanned once, plus one partial attempt per chunk.
        assert unpacked <= len(lines) + 3 + len(ready)
        # Input is appended to the same buffer rather than copied on every feed.
        assert dec._buf is buf
        assert dec.decode() == [lines, "x" * (4 << 20)]

    def test_consumed_input_is_dropped(self) -> None:
        dec = Decoder()
        for _ in range(1000):
            dec.feed(b"\x92\xa3abc\xcd\x01\x00")
            assert dec.message_ready()
            assert dec.decode() == ["abc", 256]
        assert dec.buffered() == 0
        assert len(dec._buf) < 64

    def test_pinned_buffer_keeps_partial_progress(self) -> None:
        dec = Decoder()
        dec.feed(b"\xa3abc\x93\x01")
        dec.unpack()
        view = dec.bytes_no_copy()
        assert not dec.message_ready()
        dec.feed(b"\x02")
        assert not dec.message_ready()
        dec.feed(b"\x03")
        assert dec.message_ready()
        assert dec.decode() == [1, 2, 3]
        assert bytes(view) == b"abc"
