"""Atomic batches of calls.

A batch collects calls locally and sends them to the peer as one request to
an "atomic" method (``nvim_call_atomic`` by default). The peer runs the calls
in order without servicing other clients in between and replies with::

    [results, error]

where ``results`` holds the results of the calls that ran and ``error`` is
``nil`` or ``[index, type, message]`` for the call that failed (type 0 is an
exception, 1 a validation error).

Example:
    >>> batch = Batch(endpoint)
    >>> name = batch.call("nvim_buf_get_name", 0, result_type=str)
    >>> count = batch.call("nvim_buf_line_count", 0, result_type=int)
    >>> await batch.execute()
    >>> name.value, count.value

A batch does not support concurrent use.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from nvimrpc.config import BatchConfig
from nvimrpc.error import BatchError, DecodeConvertError, ErrorCode, MsgpackError, NvimError, RpcError
from nvimrpc.fields import msgpack_field
from nvimrpc.types import Raw
from nvimrpc.wire import Decoder, Encoder, Type

if TYPE_CHECKING:
    from nvimrpc.endpoint import Endpoint

logger = logging.getLogger(__name__)

EXCEPTION_ERROR = 0
VALIDATION_ERROR = 1

ERROR_KINDS = {EXCEPTION_ERROR: "exception", VALIDATION_ERROR: "validation"}


@dataclass
class AtomicError:
    """The error element of an atomic reply: ``[index, type, message]``."""

    index: int = msgpack_field(",array", default=0)
    type: int = 0
    message: str = ""


class BatchResult:
    """Result slot of one call in a batch. Set by :meth:`Batch.execute`."""

    __slots__ = ("method", "result_type", "value", "done")

    def __init__(self, method: str, result_type: Any) -> None:
        self.method = method
        self.result_type = result_type
        self.value: Any = None
        self.done = False

    def _set(self, value: Any) -> None:
        self.value = value
        self.done = True

    def __repr__(self) -> str:
        return f"BatchResult({self.method!r}, value={self.value!r}, done={self.done})"


def array_header(n: int) -> bytes:
    enc = Encoder()
    enc.pack_array_len(n)
    return enc.getvalue()


class Batch:
    """Collects calls and executes them atomically on the peer."""

    def __init__(self, endpoint: Endpoint, config: BatchConfig | None = None) -> None:
        self._endpoint = endpoint
        self._config = config or BatchConfig()
        self._enc = Encoder()
        self._methods: list[str] = []
        self._results: list[BatchResult] = []
        self._err: Exception | None = None

    def __len__(self) -> int:
        return len(self._methods)

    def call(self, method: str, *args: Any, result_type: Any = Any) -> BatchResult:
        """Add a call to the batch and return its result slot.

        ``result_type`` is the host type the result is decoded as; ``None``
        discards it. If the arguments cannot be encoded, the error is
        returned by :meth:`execute` and later calls are ignored.
        """
        slot = BatchResult(method, result_type)
        if self._err is not None:
            return slot

        self._methods.append(method)
        self._results.append(slot)
        try:
            self._enc.pack_array_len(2)
            self._enc.pack_string(method)
            self._enc.encode(list(args))
        except MsgpackError as e:
            self._err = e
        return slot

    def call_function(self, name: str, *args: Any, result_type: Any = Any) -> BatchResult:
        """Add a call to a vimscript function."""
        return self.call("nvim_call_function", name, list(args), result_type=result_type)

    def _reset(self) -> None:
        self._enc = Encoder()
        self._methods = []
        self._results = []
        self._err = None

    async def execute(self) -> None:
        """Send the batch and fill the result slots.

        Raises:
            BatchError: A call failed on the peer. Slots before ``index``
                are set; the rest are not.
            RpcError: The atomic call itself failed, or its error element is
                malformed.
            DecodeConvertError: A result did not fit its slot's type.
        """
        try:
            if self._err is not None:
                raise self._err

            arg = Raw(array_header(len(self._methods)) + self._enc.getvalue())
            reply = await self._endpoint.call(self._config.atomic_method, arg, result_type=Raw)
            error = self._apply(reply)
            if error is not None:
                raise self._batch_error(error)
        finally:
            self._reset()

    def _apply(self, reply: bytes) -> AtomicError | None:
        dec = Decoder(reply, self._endpoint.extensions)
        dec.unpack()
        if dec.type != Type.ARRAY_LEN:
            raise DecodeConvertError(dec.type, list)

        saved: DecodeConvertError | None = None
        error: AtomicError | None = None
        n = dec.length()

        for i in range(n):
            if i == 0:
                saved = self._apply_results(dec)
            elif i == 1:
                try:
                    error = dec.decode(Optional[AtomicError])
                except DecodeConvertError as e:
                    saved = saved or e
            else:
                dec.unpack_next()
                dec.skip()

        if saved is not None:
            raise saved
        return error

    def _apply_results(self, dec: Decoder) -> DecodeConvertError | None:
        dec.unpack_next()
        if dec.type == Type.NIL:
            return None
        if dec.type != Type.ARRAY_LEN:
            err = DecodeConvertError(dec.type, list)
            dec.skip()
            return err

        saved: DecodeConvertError | None = None
        for i in range(dec.length()):
            if i >= len(self._results):
                dec.unpack_next()
                dec.skip()
                continue
            slot = self._results[i]
            if slot.result_type is None:
                dec.unpack_next()
                dec.skip()
                slot._set(None)
                continue
            try:
                slot._set(dec.decode(slot.result_type))
            except DecodeConvertError as e:
                saved = saved or e
                slot._set(e.result)
        return saved

    def _batch_error(self, e: AtomicError) -> RpcError:
        kind = ERROR_KINDS.get(e.type)
        if not 0 <= e.index < len(self._methods) or kind is None:
            return RpcError(
                ErrorCode.BATCH,
                f"nvim:{self._config.atomic_method} {e.index} {e.type} {e.message}",
            )
        method = self._methods[e.index]
        logger.debug("batch call %d (%s) failed: %s", e.index, method, e.message)
        return BatchError(e.index, NvimError(method, kind, e.message, [e.type, e.message]))
