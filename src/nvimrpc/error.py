"""Error types for the MessagePack codec and the RPC endpoint.

Codec errors derive from :class:`MsgpackError`. Endpoint errors derive from
:class:`RpcError`, which carries an :class:`ErrorCode` and is built through
the factory classmethods (``RpcError.closed()``, ``RpcError.framing(...)``).

Fatal errors (framing, unexpected end of stream, unknown format code) tear
the endpoint down. :class:`DecodeConvertError` is recoverable: it is attached
to the single operation that produced it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class MsgpackError(Exception):
    """Base class for codec errors."""


class EndOfStream(MsgpackError, EOFError):
    """The stream ended cleanly at a value boundary."""

    def __init__(self, message: str = "msgpack: end of stream") -> None:
        super().__init__(message)


class UnexpectedEof(MsgpackError, EOFError):
    """The stream ended in the middle of a value."""

    def __init__(self, message: str = "msgpack: unexpected end of stream") -> None:
        super().__init__(message)


class UnknownCode(MsgpackError):
    """The reserved lead byte 0xc1 was read."""

    def __init__(self, code: int) -> None:
        super().__init__(f"msgpack: unknown format code {code:x}")
        self.code = code


class LongValue(MsgpackError, ValueError):
    """An outgoing length does not fit in 32 bits."""

    def __init__(self, what: str, length: int) -> None:
        super().__init__(f"msgpack: long {what} ({length})")
        self.length = length


class EncodeTypeError(MsgpackError, TypeError):
    """A value of an unsupported host type was passed to the encoder."""

    def __init__(self, tp: Any, detail: str | None = None) -> None:
        name = getattr(tp, "__qualname__", None) or repr(tp)
        message = f"msgpack: unsupported type: {name}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.type = tp


class FieldTagError(MsgpackError, ValueError):
    """A dataclass field carries an invalid msgpack tag."""


class DecodeConvertError(MsgpackError):
    """A MessagePack value was not appropriate for the destination type.

    The decoder records the first such error, skips the offending value and
    keeps going. ``result`` holds the best-effort decoded value once the
    enclosing decode has completed.
    """

    def __init__(self, src_type: Any, dest_type: Any, src_value: Any = None) -> None:
        self.src_type = src_type
        self.src_value = src_value
        self.dest_type = dest_type
        self.result: Any = None
        super().__init__(self._format())

    def _format(self) -> str:
        dest = getattr(self.dest_type, "__qualname__", None) or repr(self.dest_type)
        if self.src_value is None:
            return f"msgpack: cannot convert {self.src_type} to {dest}"
        return f"msgpack: cannot convert {self.src_type}({self.src_value!r}) to {dest}"


class ErrorCode(Enum):
    """Endpoint error codes."""

    CLOSED = "closed"
    INTERNAL = "internal"
    FRAMING = "framing"
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    PEER = "peer"
    BATCH = "batch"


class RpcError(Exception):
    """An error raised by the RPC endpoint."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value!r}, {self.message!r})"

    @classmethod
    def closed(cls) -> RpcError:
        return cls(ErrorCode.CLOSED, "msgpack/rpc: session closed")

    @classmethod
    def internal(cls, message: str = "msgpack/rpc: internal error") -> RpcError:
        return cls(ErrorCode.INTERNAL, message)

    @classmethod
    def framing(cls, message: str) -> RpcError:
        return cls(ErrorCode.FRAMING, message)

    @classmethod
    def invalid_argument(cls, message: str = "msgpack/rpc: invalid argument") -> RpcError:
        return cls(ErrorCode.INVALID_ARGUMENT, message)

    @classmethod
    def not_found(cls, message: str) -> RpcError:
        return cls(ErrorCode.NOT_FOUND, message)


class PeerError(RpcError):
    """An error value returned by the peer, surfaced verbatim as ``value``."""

    def __init__(self, value: Any) -> None:
        super().__init__(ErrorCode.PEER, f"{value}")
        self.value = value


class BatchError(RpcError):
    """A sub-call of a batch failed on the peer.

    Results before ``index`` are valid; results from ``index`` on are not set.
    """

    def __init__(self, index: int, err: Exception) -> None:
        super().__init__(ErrorCode.BATCH, str(err))
        self.index = index
        self.err = err


class ErrorList(RpcError):
    """Errors collected from the calls of a pipeline."""

    def __init__(self, errors: list[Exception]) -> None:
        super().__init__(ErrorCode.PEER, str(errors[0]))
        self.errors = errors

    def __iter__(self):
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)


class NvimError(PeerError):
    """An exception or validation error reported by the editor."""

    def __init__(self, method: str, kind: str, message: Any, value: Any = None) -> None:
        super().__init__(value if value is not None else [kind, message])
        self.method = method
        self.kind = kind
        self.message = f"nvim:{method} {kind}: {message}"
        self.args = (self.message,)
