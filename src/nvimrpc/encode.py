"""Host value to MessagePack encoding.

Every host type maps to one encode function, built on first use and shared
process-wide::

    Python type                         MessagePack type
    None                                nil
    bool                                true or false
    int (and sized aliases)             shortest int/uint
    float                               float64
    str                                 string
    bytes, bytearray, memoryview        binary
    list, tuple, deque, set, Sequence   array
    dict, Mapping                       map
    dataclass                           map, or array when a field is tagged "array"
    Raw                                 the raw bytes, verbatim
    objects with marshal_msgpack()      whatever the hook writes

``Any`` (and non-optional unions) dispatch on the runtime type of the value.
"""

from __future__ import annotations

import collections.abc
import dataclasses
import operator
import threading
from types import UnionType
from typing import Any, Callable, Union, get_args, get_origin

from nvimrpc.error import EncodeTypeError
from nvimrpc.fields import FieldInfo, fields_for_type, get_path, optional_arg, strip_annotated
from nvimrpc.types import Raw, is_marshaler
from nvimrpc.wire import Encoder

EncodeFunc = Callable[[Encoder, Any], None]

# Abstract origins that take any iterable; concrete Sequence and Set types
# (list, tuple, deque, set, their subclasses) are matched with issubclass.
_ITERABLE_ORIGINS = (collections.abc.Iterable, collections.abc.Collection)


def _is_sequence(tp: Any) -> bool:
    # str and bytes are Sequences too; callers match them first.
    return tp in _ITERABLE_ORIGINS or (
        isinstance(tp, type) and issubclass(tp, (collections.abc.Sequence, collections.abc.Set))
    )


def _is_mapping(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, collections.abc.Mapping)


_cache: dict[Any, EncodeFunc] = {}
_cache_lock = threading.Lock()


def encode_value(enc: Encoder, v: Any) -> None:
    """Encode ``v`` using the encoder for its runtime type."""
    if v is None:
        enc.pack_nil()
        return
    tp = type(v)
    if tp is object:
        raise EncodeTypeError(tp)
    encoder_for_type(tp)(enc, v)


def encoder_for_type(tp: Any, builder: dict[Any, EncodeFunc] | None = None) -> EncodeFunc:
    """Return the encode function for host type ``tp``.

    ``builder`` collects the functions built during one top-level call. A
    forwarding entry is installed for ``tp`` before its encoder is built so
    that recursive types resolve to the function under construction.
    """
    with _cache_lock:
        f = _cache.get(tp)
    if f is not None:
        return f

    save = builder is None
    if builder is None:
        builder = {}
    elif tp in builder:
        return builder[tp]

    def forward(enc: Encoder, v: Any) -> None:
        built(enc, v)

    builder[tp] = forward
    built = _build(tp, builder)
    builder[tp] = built

    if save:
        with _cache_lock:
            for t, fn in builder.items():
                _cache.setdefault(t, fn)
    return built


def _build(tp: Any, b: dict[Any, EncodeFunc]) -> EncodeFunc:
    if tp is Any or tp is object:
        return encode_value

    base, _ = strip_annotated(tp)
    origin = get_origin(base)

    if isinstance(base, type) and origin is None:
        if issubclass(base, Raw):
            return _encode_raw
        if is_marshaler(base):
            return _encode_marshaler

    inner = optional_arg(base)
    if inner is not None:
        return _optional_encoder(encoder_for_type(inner, b))

    if origin in (Union, UnionType):
        return encode_value

    if isinstance(base, type) and origin is None:
        if issubclass(base, bool):
            return _encode_bool
        if issubclass(base, int):
            return _encode_int
        if issubclass(base, float):
            return _encode_float
        if issubclass(base, str):
            return _encode_str
        if issubclass(base, (bytes, bytearray, memoryview)):
            return _encode_bytes
        if dataclasses.is_dataclass(base):
            return _struct_encoder(base, b)
        if _is_mapping(base):
            return _mapping_encoder(encode_value, encode_value)
        if _is_sequence(base):
            return _sequence_encoder(encode_value)
        return _unsupported(base)

    args = get_args(base)
    if origin is tuple:
        if len(args) == 2 and args[1] is Ellipsis:
            return _sequence_encoder(encoder_for_type(args[0], b))
        if args == ((),):
            args = ()
        return _fixed_tuple_encoder(tuple(encoder_for_type(a, b) for a in args), base)
    if _is_sequence(origin):
        return _sequence_encoder(encoder_for_type(args[0] if args else Any, b))
    if _is_mapping(origin):
        key, value = args if len(args) == 2 else (Any, Any)
        return _mapping_encoder(encoder_for_type(key, b), encoder_for_type(value, b))
    return _unsupported(base)


def _unsupported(tp: Any) -> EncodeFunc:
    def encode(enc: Encoder, v: Any) -> None:
        raise EncodeTypeError(type(v) if v is not None else tp)

    return encode


def _encode_raw(enc: Encoder, v: Any) -> None:
    if v is None:
        enc.pack_nil()
    else:
        enc.pack_raw(v)


def _encode_marshaler(enc: Encoder, v: Any) -> None:
    if v is None:
        enc.pack_nil()
    else:
        v.marshal_msgpack(enc)


def _optional_encoder(inner: EncodeFunc) -> EncodeFunc:
    def encode(enc: Encoder, v: Any) -> None:
        if v is None:
            enc.pack_nil()
        else:
            inner(enc, v)

    return encode


def _encode_bool(enc: Encoder, v: Any) -> None:
    enc.pack_bool(bool(v))


def _encode_int(enc: Encoder, v: Any) -> None:
    try:
        n = operator.index(v)
    except TypeError:
        raise EncodeTypeError(type(v), "expected an integer") from None
    enc.pack_int(n)


def _encode_float(enc: Encoder, v: Any) -> None:
    try:
        f = float(v)
    except (TypeError, ValueError):
        raise EncodeTypeError(type(v), "expected a float") from None
    enc.pack_float(f)


def _encode_str(enc: Encoder, v: Any) -> None:
    if isinstance(v, str):
        enc.pack_string(v)
    elif isinstance(v, (bytes, bytearray, memoryview)):
        enc.pack_string_bytes(v)
    else:
        raise EncodeTypeError(type(v), "expected a string")


def _encode_bytes(enc: Encoder, v: Any) -> None:
    if v is None:
        enc.pack_nil()
    elif isinstance(v, (bytes, bytearray, memoryview)):
        enc.pack_binary(v)
    else:
        raise EncodeTypeError(type(v), "expected bytes")


def _sequence_encoder(elem: EncodeFunc) -> EncodeFunc:
    def encode(enc: Encoder, v: Any) -> None:
        if v is None:
            enc.pack_nil()
            return
        if not isinstance(v, collections.abc.Collection) or isinstance(v, (str, bytes, collections.abc.Mapping)):
            raise EncodeTypeError(type(v), "expected a sequence")
        enc.pack_array_len(len(v))
        for item in v:
            elem(enc, item)

    return encode


def _fixed_tuple_encoder(elems: tuple[EncodeFunc, ...], tp: Any) -> EncodeFunc:
    def encode(enc: Encoder, v: Any) -> None:
        if v is None:
            enc.pack_nil()
            return
        if len(v) != len(elems):
            raise EncodeTypeError(tp, f"expected {len(elems)} elements, got {len(v)}")
        enc.pack_array_len(len(elems))
        for fn, item in zip(elems, v):
            fn(enc, item)

    return encode


def _mapping_encoder(key: EncodeFunc, value: EncodeFunc) -> EncodeFunc:
    def encode(enc: Encoder, v: Any) -> None:
        if v is None:
            enc.pack_nil()
            return
        if not isinstance(v, collections.abc.Mapping):
            raise EncodeTypeError(type(v), "expected a mapping")
        enc.pack_map_len(len(v))
        for k, item in v.items():
            key(enc, k)
            value(enc, item)

    return encode


def _empty_check(f: FieldInfo) -> Callable[[Any], bool] | None:
    if f.empty is not None:
        sentinel = f.empty
        return lambda v: v == sentinel

    base, _ = strip_annotated(f.type)
    if optional_arg(base) is not None or base is Any:
        return lambda v: v is None
    origin = get_origin(base) or base
    if origin in (Union, UnionType):
        return lambda v: v is None
    if not isinstance(origin, type):
        return None
    if issubclass(origin, bool):
        return lambda v: not v
    if issubclass(origin, (int, float)):
        return lambda v: v == 0
    if dataclasses.is_dataclass(origin):
        return None
    if issubclass(origin, (str, bytes, bytearray, tuple)) or _is_sequence(origin) or _is_mapping(origin):
        return lambda v: v is None or len(v) == 0
    return lambda v: v is None


def _struct_encoder(cls: type, b: dict[Any, EncodeFunc]) -> EncodeFunc:
    fields, array = fields_for_type(cls)
    entries = [
        (f, encoder_for_type(f.type, b), _empty_check(f) if f.omit_empty else None)
        for f in fields
    ]

    if array:

        def encode_array(enc: Encoder, v: Any) -> None:
            if v is None:
                enc.pack_nil()
                return
            enc.pack_array_len(len(entries))
            for f, fn, _ in entries:
                ok, fv = get_path(v, f)
                if ok:
                    fn(enc, fv)
                else:
                    enc.pack_nil()

        return encode_array

    def encode_map(enc: Encoder, v: Any) -> None:
        if v is None:
            enc.pack_nil()
            return
        present = []
        for f, fn, empty in entries:
            ok, fv = get_path(v, f)
            if not ok or (empty is not None and empty(fv)):
                continue
            present.append((f.name, fn, fv))

        enc.pack_map_len(len(present))
        for name, fn, fv in present:
            enc.pack_string(name)
            fn(enc, fv)

    return encode_map
