"""MessagePack to host value decoding.

Decode functions are built once per requested host type and shared
process-wide. They are called with the decoder positioned on the value (its
header already unpacked) and return the converted value.

A wire value that does not fit the requested type is not fatal: the first
such mismatch is recorded, the value is skipped (including nested values),
and decoding carries on. The recorded :class:`DecodeConvertError` is raised
once the whole value has been consumed, with ``result`` holding what could be
decoded.
"""

from __future__ import annotations

import collections.abc
import dataclasses
import math
import threading
import typing
from types import UnionType
from typing import Any, Callable, Union, get_args, get_origin

from nvimrpc.error import DecodeConvertError
from nvimrpc.fields import FieldInfo, fields_for_type, optional_arg, set_path, strip_annotated
from nvimrpc.types import ANY_INT, Extension, IntRange, Raw, is_unmarshaler
from nvimrpc.wire import Decoder, Type


class _Skip:
    __slots__ = ()

    def __repr__(self) -> str:
        return "SKIP"


# Returned by decode functions when the value was skipped.
SKIP: Any = _Skip()


class DecodeState:
    """Per-call decoding state: the decoder and the first convert error."""

    __slots__ = ("dec", "err")

    def __init__(self, dec: Decoder) -> None:
        self.dec = dec
        self.err: DecodeConvertError | None = None

    def unpack(self) -> None:
        self.dec.unpack_next()

    def skip(self) -> None:
        self.dec.skip()

    def save_error(self, dest_type: Any, src_value: Any = None) -> None:
        if self.err is None:
            self.err = DecodeConvertError(self.dec.type, dest_type, src_value)

    def save_error_and_skip(self, dest_type: Any, src_value: Any = None) -> Any:
        self.save_error(dest_type, src_value)
        self.dec.skip()
        return SKIP

    def keep_error(self, err: DecodeConvertError) -> None:
        if self.err is None:
            self.err = err


DecodeFunc = Callable[[DecodeState], Any]

_SEQUENCE_ORIGINS = (
    list,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Iterable,
    collections.abc.Collection,
)
_MAPPING_ORIGINS = (dict, collections.abc.Mapping, collections.abc.MutableMapping)


def _sequence_container(tp: Any) -> type | None:
    """The type an array is decoded into for ``tp``, or None if ``tp`` is not list-like."""
    if tp in _SEQUENCE_ORIGINS:
        return list
    if isinstance(tp, type) and issubclass(tp, (list, collections.deque)):
        return tp
    return None


_cache: dict[Any, DecodeFunc] = {}
_cache_lock = threading.Lock()

_hints_cache: dict[type, dict[str, Any]] = {}


def decode_value(dec: Decoder, tp: Any = Any) -> Any:
    """Read the next value from ``dec`` and convert it to ``tp``.

    Raises :class:`~nvimrpc.error.EndOfStream` at a clean end of input and
    :class:`~nvimrpc.error.DecodeConvertError` (after consuming the value)
    when some part of it did not fit ``tp``.
    """
    dec.unpack()
    ds = DecodeState(dec)
    result = decoder_for_type(tp)(ds)
    if result is SKIP:
        result = zero_value(tp)
    if ds.err is not None:
        ds.err.result = result
        raise ds.err
    return result


def decoder_for_type(tp: Any, builder: dict[Any, DecodeFunc] | None = None) -> DecodeFunc:
    """Return the decode function for host type ``tp``.

    Same construction scheme as :func:`nvimrpc.encode.encoder_for_type`.
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

    def forward(ds: DecodeState) -> Any:
        return built(ds)

    builder[tp] = forward
    built = _build(tp, builder)
    builder[tp] = built

    if save:
        with _cache_lock:
            for t, fn in builder.items():
                _cache.setdefault(t, fn)
    return built


# =============================================================================
# Zero values
# =============================================================================


def _type_hints(cls: type) -> dict[str, Any]:
    hints = _hints_cache.get(cls)
    if hints is None:
        hints = _hints_cache.setdefault(cls, typing.get_type_hints(cls, include_extras=True))
    return hints


def new_instance(cls: type) -> Any:
    """Create an instance of dataclass ``cls`` without calling ``__init__``.

    Fields get their declared default, or the zero value of their type.
    """
    obj = object.__new__(cls)
    hints = _type_hints(cls)
    for f in dataclasses.fields(cls):
        if f.default is not dataclasses.MISSING:
            v = f.default
        elif f.default_factory is not dataclasses.MISSING:
            v = f.default_factory()
        else:
            v = zero_value(hints.get(f.name, Any))
        object.__setattr__(obj, f.name, v)
    return obj


def zero_value(tp: Any) -> Any:
    """The value a slot of type ``tp`` holds when nothing was decoded into it."""
    base, _ = strip_annotated(tp)
    origin = get_origin(base)
    if origin is None and isinstance(base, type):
        if issubclass(base, Raw) or is_unmarshaler(base) or base is Extension:
            return None
        if issubclass(base, bool):
            return False
        if issubclass(base, (int, float, str, bytes, bytearray)):
            try:
                return base()
            except (TypeError, ValueError):
                return None
        if dataclasses.is_dataclass(base):
            return new_instance(base)
        container = _sequence_container(base)
        if container is not None:
            return container()
        if base is tuple:
            return ()
        if base in _MAPPING_ORIGINS:
            return {}
        return None
    if origin is tuple:
        args = get_args(base)
        if len(args) == 2 and args[1] is Ellipsis or args == ((),):
            return ()
        return tuple(zero_value(a) for a in args)
    container = _sequence_container(origin)
    if container is not None:
        return container()
    if origin in _MAPPING_ORIGINS:
        return {}
    return None


# =============================================================================
# Builders
# =============================================================================


def _build(tp: Any, b: dict[Any, DecodeFunc]) -> DecodeFunc:
    if tp is Any or tp is object:
        return decode_dynamic

    base, meta = strip_annotated(tp)
    origin = get_origin(base)

    if isinstance(base, type) and origin is None:
        if issubclass(base, Raw):
            return _decode_raw
        if is_unmarshaler(base):
            return _unmarshal_decoder(base)

    inner = optional_arg(base)
    if inner is not None:
        return _optional_decoder(decoder_for_type(inner, b))

    if origin in (Union, UnionType):
        return decode_dynamic

    if isinstance(base, type) and origin is None:
        if base is Extension:
            return _decode_extension
        if issubclass(base, bool):
            return _decode_bool
        if issubclass(base, int):
            bounds = next((m for m in meta if isinstance(m, IntRange)), ANY_INT)
            return _int_decoder(base, bounds, tp)
        if issubclass(base, float):
            return _decode_float
        if issubclass(base, str):
            return _decode_str
        if issubclass(base, (bytes, bytearray)):
            return _bytes_decoder(base)
        if dataclasses.is_dataclass(base):
            return _struct_decoder(base, b)
        container = _sequence_container(base)
        if container is not None:
            return _list_decoder(decode_dynamic, Any, container)
        if base is tuple:
            return _list_decoder(decode_dynamic, Any, tuple)
        if base in _MAPPING_ORIGINS:
            return _dict_decoder(decode_dynamic, decode_dynamic, base)
        return _unsupported(tp)

    args = get_args(base)
    if origin is tuple:
        if len(args) == 2 and args[1] is Ellipsis:
            return _list_decoder(decoder_for_type(args[0], b), args[0], tuple)
        if args == ((),):
            args = ()
        return _fixed_tuple_decoder(tuple(decoder_for_type(a, b) for a in args), args, tp)
    container = _sequence_container(origin)
    if container is not None:
        elem = args[0] if args else Any
        return _list_decoder(decoder_for_type(elem, b), elem, container)
    if origin in _MAPPING_ORIGINS:
        key, value = args if len(args) == 2 else (Any, Any)
        return _dict_decoder(decoder_for_type(key, b), decoder_for_type(value, b), tp)
    return _unsupported(tp)


def _unsupported(tp: Any) -> DecodeFunc:
    def decode(ds: DecodeState) -> Any:
        return ds.save_error_and_skip(tp)

    return decode


def _decode_raw(ds: DecodeState) -> Any:
    return Raw(ds.dec.raw())


def _unmarshal_decoder(cls: type) -> DecodeFunc:
    def decode(ds: DecodeState) -> Any:
        if ds.dec.type == Type.NIL:
            return None
        try:
            return cls.unmarshal_msgpack(ds.dec)
        except DecodeConvertError as e:
            ds.keep_error(e)
            return SKIP

    return decode


def _optional_decoder(inner: DecodeFunc) -> DecodeFunc:
    def decode(ds: DecodeState) -> Any:
        if ds.dec.type == Type.NIL:
            return None
        return inner(ds)

    return decode


def _decode_extension(ds: DecodeState) -> Any:
    d = ds.dec
    if d.type != Type.EXTENSION:
        return ds.save_error_and_skip(Extension)
    return Extension(d.extension(), d.bytes())


def _decode_bool(ds: DecodeState) -> Any:
    d = ds.dec
    match d.type:
        case Type.BOOL:
            return d.bool()
        case Type.INT | Type.UINT:
            return d.int() != 0
        case _:
            return ds.save_error_and_skip(bool)


def _int_decoder(cls: type, bounds: IntRange, tp: Any) -> DecodeFunc:
    def decode(ds: DecodeState) -> Any:
        d = ds.dec
        match d.type:
            case Type.INT | Type.UINT:
                x = d.int()
            case Type.FLOAT:
                f = d.float()
                if not math.isfinite(f) or not f.is_integer():
                    return ds.save_error_and_skip(tp, f)
                x = int(f)
            case _:
                return ds.save_error_and_skip(tp)

        if x not in bounds:
            return ds.save_error_and_skip(tp, x)
        if cls is int:
            return x
        try:
            return cls(x)
        except ValueError:
            return ds.save_error_and_skip(tp, x)

    return decode


def _decode_float(ds: DecodeState) -> Any:
    d = ds.dec
    match d.type:
        case Type.INT | Type.UINT:
            i = d.int()
            x = float(i)
            if int(x) != i:
                return ds.save_error_and_skip(float, i)
            return x
        case Type.FLOAT:
            return d.float()
        case _:
            return ds.save_error_and_skip(float)


def _decode_str(ds: DecodeState) -> Any:
    d = ds.dec
    if d.type in (Type.STRING, Type.BINARY):
        return d.string()
    return ds.save_error_and_skip(str)


def _bytes_decoder(cls: type) -> DecodeFunc:
    def decode(ds: DecodeState) -> Any:
        d = ds.dec
        match d.type:
            case Type.NIL:
                return cls()
            case Type.STRING | Type.BINARY:
                return d.bytes() if cls is bytes else cls(d.bytes_no_copy())
            case _:
                return ds.save_error_and_skip(cls)

    return decode


def _list_decoder(elem: DecodeFunc, elem_type: Any, container: type) -> DecodeFunc:
    def decode(ds: DecodeState) -> Any:
        d = ds.dec
        if d.type == Type.NIL:
            return container()
        if d.type != Type.ARRAY_LEN:
            return ds.save_error_and_skip(container)

        out = []
        for _ in range(d.length()):
            ds.unpack()
            v = elem(ds)
            out.append(zero_value(elem_type) if v is SKIP else v)
        return out if container is list else container(out)

    return decode


def _fixed_tuple_decoder(elems: tuple[DecodeFunc, ...], types: tuple[Any, ...], tp: Any) -> DecodeFunc:
    def decode(ds: DecodeState) -> Any:
        d = ds.dec
        if d.type == Type.NIL:
            return zero_value(tp)
        if d.type != Type.ARRAY_LEN:
            return ds.save_error_and_skip(tp)

        out = [zero_value(t) for t in types]
        for i in range(d.length()):
            ds.unpack()
            if i < len(elems):
                v = elems[i](ds)
                if v is not SKIP:
                    out[i] = v
            else:
                ds.skip()
        return tuple(out)

    return decode


def _dict_decoder(key: DecodeFunc, value: DecodeFunc, tp: Any) -> DecodeFunc:
    value_type = (get_args(strip_annotated(tp)[0]) or (Any, Any))[-1]

    def decode(ds: DecodeState) -> Any:
        d = ds.dec
        if d.type != Type.MAP_LEN:
            return ds.save_error_and_skip(tp)

        out: dict[Any, Any] = {}
        for _ in range(d.length()):
            ds.unpack()
            k = key(ds)
            ds.unpack()
            v = value(ds)
            if k is SKIP:
                continue
            if v is SKIP:
                v = zero_value(value_type)
            try:
                out[k] = v
            except TypeError:
                ds.save_error(tp, k)
        return out

    return decode


def _struct_decoder(cls: type, b: dict[Any, DecodeFunc]) -> DecodeFunc:
    fields, array = fields_for_type(cls)
    entries = [(f, decoder_for_type(f.type, b)) for f in fields]

    if array:

        def decode_array(ds: DecodeState) -> Any:
            d = ds.dec
            if d.type != Type.ARRAY_LEN:
                return ds.save_error_and_skip(cls)

            obj = new_instance(cls)
            for i in range(d.length()):
                ds.unpack()
                if i < len(entries):
                    f, fn = entries[i]
                    _assign(obj, f, fn(ds))
                else:
                    ds.skip()
            return obj

        return decode_array

    by_name = {f.name: (f, fn) for f, fn in entries}
    with_empty = [f for f in fields if f.empty is not None]

    def decode_map(ds: DecodeState) -> Any:
        d = ds.dec
        if d.type != Type.MAP_LEN:
            return ds.save_error_and_skip(cls)

        obj = new_instance(cls)
        for f in with_empty:
            set_path(obj, f, f.empty, new_instance)

        for _ in range(d.length()):
            ds.unpack()
            entry = None
            if d.type in (Type.STRING, Type.BINARY):
                entry = by_name.get(d.string())
            else:
                ds.save_error_and_skip(str)

            ds.unpack()
            if entry is None:
                ds.skip()
                continue
            f, fn = entry
            _assign(obj, f, fn(ds))
        return obj

    return decode_map


def _assign(obj: Any, f: FieldInfo, v: Any) -> None:
    if v is not SKIP:
        set_path(obj, f, v, new_instance)


# =============================================================================
# Dynamic values
# =============================================================================


def decode_dynamic(ds: DecodeState) -> Any:
    """Decode the current value into its canonical host representation.

    Maps decode to ``dict`` with ``str`` keys; entries with other keys are
    skipped and reported. Extensions go through the decoder's extension
    registry, or become :class:`~nvimrpc.types.Extension` values.
    """
    d = ds.dec
    match d.type:
        case Type.INT | Type.UINT:
            return d.int()
        case Type.FLOAT:
            return d.float()
        case Type.BOOL:
            return d.bool()
        case Type.NIL:
            return None
        case Type.STRING:
            return d.string()
        case Type.BINARY:
            return d.bytes()
        case Type.ARRAY_LEN:
            out = []
            for _ in range(d.length()):
                ds.unpack()
                out.append(decode_dynamic(ds))
            return out
        case Type.MAP_LEN:
            m: dict[str, Any] = {}
            for _ in range(d.length()):
                ds.unpack()
                if d.type not in (Type.STRING, Type.BINARY):
                    ds.save_error_and_skip(str)
                    ds.unpack()
                    ds.skip()
                    continue
                key = d.string()
                ds.unpack()
                m[key] = decode_dynamic(ds)
            return m
        case Type.EXTENSION:
            fn = d.extensions.get(d.extension())
            if fn is None:
                return Extension(d.extension(), d.bytes())
            try:
                return fn(d.bytes())
            except DecodeConvertError as e:
                ds.keep_error(e)
                return None
        case _:
            return None
