"""Dataclass field metadata for the MessagePack codec.

A field's wire behaviour is controlled by its ``msgpack`` tag::

    @dataclass
    class Item:
        name: str = msgpack_field("n")
        count: int = msgpack_field("c,omitempty", default=0)
        hidden: int = msgpack_field("-", default=0)
        level: int = msgpack_field("lvl,omitempty", empty="-1", default=-1)

The first comma-separated element is the wire name (blank means the attribute
name, ``-`` excludes the field). The remaining elements are keywords:
``omitempty`` skips the field on encode when it holds its empty value, and
``array`` switches the whole dataclass to positional (array) encoding.

``embed=True`` on a field with a blank name whose type is a dataclass (or an
optional dataclass) merges that dataclass's fields into the enclosing one.
"""

from __future__ import annotations

import dataclasses
import re
import threading
import typing
from dataclasses import dataclass
from types import NoneType, UnionType
from typing import Annotated, Any, Union, get_args, get_origin

from nvimrpc.error import FieldTagError
from nvimrpc.types import IntRange

TAG_KEY = "msgpack"
EMPTY_KEY = "empty"
EMBED_KEY = "embed"

_INT_LITERAL = re.compile(r"[+-]?[0-9]+")
_TRUE_LITERALS = frozenset(("1", "t", "T", "TRUE", "true", "True"))
_FALSE_LITERALS = frozenset(("0", "f", "F", "FALSE", "false", "False"))

# Depth assigned to names that have not been seen yet.
_UNSEEN = 1 << 16


def msgpack_field(
    tag: str = "",
    *,
    empty: str | None = None,
    embed: bool = False,
    **kwargs: Any,
) -> Any:
    """Declare a dataclass field with a msgpack tag.

    Args:
        tag: The tag string, ``name[,omitempty][,array]``.
        empty: A literal for the field's empty value. It is parsed according
            to the field type (int, bool or str). Decoding assigns it to
            the field before reading the map, and ``omitempty`` compares
            against it.
        embed: Flatten the fields of a dataclass-typed field into the
            enclosing dataclass (only when the tag name is blank).
        **kwargs: Passed through to :func:`dataclasses.field`.
    """
    metadata = dict(kwargs.pop("metadata", None) or {})
    metadata[TAG_KEY] = tag
    metadata[EMPTY_KEY] = empty
    metadata[EMBED_KEY] = embed
    return dataclasses.field(metadata=metadata, **kwargs)


@dataclass(frozen=True, slots=True)
class FieldInfo:
    """A resolved wire field of a dataclass.

    Attributes:
        name: Wire name.
        path: Attribute names from the outer dataclass to this field.
        owners: Dataclass types of the embedded values along ``path``,
            used to allocate missing intermediates while decoding.
        type: Resolved type hint of the field (``Annotated`` preserved).
        omit_empty: Skip the field on encode when empty.
        array: The field carries the ``array`` keyword.
        empty: Parsed empty sentinel, or ``None`` when not set.
    """

    name: str
    path: tuple[str, ...]
    owners: tuple[type, ...]
    type: Any
    omit_empty: bool = False
    array: bool = False
    empty: Any = None


def strip_annotated(tp: Any) -> tuple[Any, tuple[Any, ...]]:
    """Split ``Annotated[T, ...]`` into ``(T, metadata)``."""
    if get_origin(tp) is Annotated:
        args = get_args(tp)
        return args[0], tuple(args[1:])
    return tp, ()


def optional_arg(tp: Any) -> Any | None:
    """Return ``T`` for ``Optional[T]`` (``T | None``), else ``None``."""
    if get_origin(tp) in (Union, UnionType):
        args = get_args(tp)
        if len(args) == 2 and NoneType in args:
            return args[0] if args[1] is NoneType else args[1]
    return None


def _dataclass_target(tp: Any) -> type | None:
    base, _ = strip_annotated(tp)
    inner = optional_arg(base)
    if inner is not None:
        base, _ = strip_annotated(inner)
    if isinstance(base, type) and dataclasses.is_dataclass(base):
        return base
    return None


def _parse_tag(tag: str, cls: type) -> tuple[str, bool, bool]:
    name, omit_empty, array = "", False, False
    for i, p in enumerate(tag.split(",")):
        if i == 0:
            name = p
        elif p == "omitempty":
            omit_empty = True
        elif p == "array":
            array = True
        else:
            raise FieldTagError(f"msgpack: unknown field tag {p} for type {cls.__name__}")
    return name, omit_empty, array


def _parse_empty(raw: Any, tp: Any, cls: type, attr: str) -> Any:
    text = str(raw)
    base, meta = strip_annotated(tp)
    if base is bool:
        if text in _TRUE_LITERALS:
            return True
        if text in _FALSE_LITERALS:
            return False
        raise FieldTagError(
            f"msgpack: error parsing field empty field {cls.__name__}.{attr}: invalid syntax {text!r}"
        )
    if base is int:
        if not _INT_LITERAL.fullmatch(text):
            raise FieldTagError(
                f"msgpack: error parsing field empty field {cls.__name__}.{attr}: invalid syntax {text!r}"
            )
        value = int(text)
        bounds = next((m for m in meta if isinstance(m, IntRange)), None)
        if bounds is not None and value not in bounds:
            raise FieldTagError(
                f"msgpack: error parsing field empty field {cls.__name__}.{attr}: value out of range {text!r}"
            )
        return value
    if base is str:
        return text
    raise FieldTagError(f"msgpack: unsupported empty field {cls.__name__}.{attr}")


def _collect(
    fields: list[FieldInfo],
    cls: type,
    visited: set[type],
    depth: dict[str, int],
    path: tuple[str, ...],
    owners: tuple[type, ...],
) -> None:
    if cls in visited:
        return
    visited.add(cls)

    hints = typing.get_type_hints(cls, include_extras=True)

    for f in dataclasses.fields(cls):
        meta = f.metadata
        embed = bool(meta.get(EMBED_KEY, False))
        if f.name.startswith("_") and not embed:
            continue

        name, omit_empty, array = _parse_tag(meta.get(TAG_KEY, "") or "", cls)
        if name == "-":
            continue

        tp = hints.get(f.name, Any)

        if name == "" and embed:
            target = _dataclass_target(tp)
            if target is not None:
                _collect(fields, target, visited, depth, path + (f.name,), owners + (target,))
                continue

        if name == "":
            name = f.name

        level = len(path)
        seen = depth.get(name, _UNSEEN)
        if level == seen:
            # Same name at the same depth: neither field is encoded.
            fields[:] = [x for x in fields if x.name != name]
            continue
        if level > seen:
            continue
        if seen != _UNSEEN:
            fields[:] = [x for x in fields if x.name != name]
        depth[name] = level

        empty = None
        raw_empty = meta.get(EMPTY_KEY)
        if raw_empty is not None and raw_empty != "":
            empty = _parse_empty(raw_empty, tp, cls, f.name)

        fields.append(
            FieldInfo(
                name=name,
                path=path + (f.name,),
                owners=owners,
                type=tp,
                omit_empty=omit_empty,
                array=array,
                empty=empty,
            )
        )


_cache: dict[type, tuple[tuple[FieldInfo, ...], bool]] = {}
_cache_lock = threading.Lock()


def fields_for_type(cls: type) -> tuple[tuple[FieldInfo, ...], bool]:
    """Return the wire fields of dataclass ``cls`` and whether it is array-mode.

    Results are computed once per class and shared process-wide.
    """
    with _cache_lock:
        cached = _cache.get(cls)
    if cached is not None:
        return cached

    fields: list[FieldInfo] = []
    _collect(fields, cls, set(), {}, (), ())
    result = (tuple(fields), any(f.array for f in fields))

    with _cache_lock:
        return _cache.setdefault(cls, result)


def get_path(obj: Any, f: FieldInfo) -> tuple[bool, Any]:
    """Follow ``f.path`` from ``obj``.

    Returns ``(False, None)`` when an embedded intermediate is ``None``.
    """
    v = obj
    for attr in f.path:
        if v is None:
            return False, None
        v = getattr(v, attr)
    return True, v


def set_path(obj: Any, f: FieldInfo, value: Any, zero: typing.Callable[[type], Any]) -> None:
    """Assign ``value`` at ``f.path``, allocating embedded intermediates.

    Uses ``object.__setattr__`` so frozen dataclasses can be filled too.
    """
    v = obj
    for attr, owner in zip(f.path[:-1], f.owners):
        nxt = getattr(v, attr)
        if nxt is None:
            nxt = zero(owner)
            object.__setattr__(v, attr, nxt)
        v = nxt
    object.__setattr__(v, f.path[-1], value)
