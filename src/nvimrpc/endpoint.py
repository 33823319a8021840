"""MessagePack-RPC endpoint.

A symmetric peer: both sides issue requests and notifications and serve the
other side's. Messages on the wire are MessagePack arrays::

    [0, id, method, args]       request
    [1, id, error, result]      reply
    [2, method, args]           notification

Concurrency model (asyncio):
- A single read loop (serve()) owns the decoder and frames messages out of
  partial reads
- Each incoming request runs in its own task; its reply is written when the
  handler finishes
- Incoming notifications are run one at a time, in arrival order, by a single
  worker task
- Writes are serialized by an asyncio.Lock; every message is encoded into a
  private buffer first and written whole

The pending-call table, the id counter, the state flag and the handler table
are only touched from the event loop thread, so no further locking is needed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import typing
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from nvimrpc.config import EndpointConfig
from nvimrpc.decode import zero_value
from nvimrpc.error import DecodeConvertError, PeerError, RpcError, UnexpectedEof
from nvimrpc.types import ExtensionMap, is_marshaler
from nvimrpc.wire import Decoder, Encoder, Type

logger = logging.getLogger(__name__)

REQUEST_MESSAGE = 0
REPLY_MESSAGE = 1
NOTIFICATION_MESSAGE = 2

# Request ids are 31-bit so they fit any peer's signed 32-bit integer.
ID_MASK = 0x7FFFFFFF


class Transport(Protocol):
    """Interface for the byte stream under an endpoint."""

    async def read(self, n: int) -> bytes:
        """Read up to ``n`` bytes. Returns ``b""`` at end of stream."""
        ...

    async def write(self, data: bytes) -> None:
        """Write all of ``data`` and flush it."""
        ...

    async def close(self) -> None:
        """Close the stream. A pending read must return or raise."""
        ...


class Call:
    """An outgoing request and, once done, its outcome."""

    __slots__ = ("method", "args", "result_type", "result", "error", "_done")

    def __init__(self, method: str, args: tuple[Any, ...], result_type: Any = Any) -> None:
        self.method = method
        self.args = args
        self.result_type = result_type
        self.result: Any = None
        self.error: BaseException | None = None
        self._done = asyncio.Event()

    def done(self) -> bool:
        return self._done.is_set()

    def _finish(self, error: BaseException | None = None, result: Any = None) -> None:
        if self._done.is_set():
            logger.warning("msgpack/rpc: call to %s completed twice", self.method)
            return
        self.error = error
        self.result = result
        self._done.set()

    async def join(self) -> None:
        """Wait until the call is done, without raising its error."""
        await self._done.wait()

    async def wait(self) -> Any:
        """Wait for the reply. Returns the result or raises the call's error."""
        await self._done.wait()
        if self.error is not None:
            raise self.error
        return self.result

    def __repr__(self) -> str:
        state = "done" if self.done() else "pending"
        return f"Call({self.method!r}, {state})"


@dataclass(frozen=True, slots=True)
class Handler:
    """A registered method handler."""

    fn: Callable[..., Any]
    bound: tuple[Any, ...]
    params: tuple[Any, ...]
    variadic: bool
    variadic_type: Any


def make_handler(fn: Callable[..., Any], bound: tuple[Any, ...]) -> Handler:
    """Inspect ``fn`` and build a :class:`Handler`.

    The first ``len(bound)`` positional parameters receive the bound
    arguments. The remaining positional parameters are filled from the
    incoming args array, each decoded as its annotation (``Any`` when
    unannotated). A ``*args`` parameter receives the rest of the array.
    """
    if not callable(fn):
        raise RpcError.invalid_argument("msgpack/rpc: handler not a function")

    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError) as e:
        raise RpcError.invalid_argument(f"msgpack/rpc: cannot inspect handler: {e}") from e
    try:
        hints = typing.get_type_hints(fn, include_extras=True)
    except (NameError, TypeError):
        hints = {}

    positional: list[inspect.Parameter] = []
    variadic: inspect.Parameter | None = None
    for p in sig.parameters.values():
        match p.kind:
            case inspect.Parameter.POSITIONAL_ONLY | inspect.Parameter.POSITIONAL_OR_KEYWORD:
                positional.append(p)
            case inspect.Parameter.VAR_POSITIONAL:
                variadic = p
            case inspect.Parameter.KEYWORD_ONLY if p.default is inspect.Parameter.empty:
                raise RpcError.invalid_argument(
                    f"msgpack/rpc: handler keyword-only parameter {p.name} must have a default"
                )

    if len(positional) < len(bound):
        raise RpcError.invalid_argument(f"msgpack/rpc: handler must have at least {len(bound)} args")

    for i, (p, arg) in enumerate(zip(positional, bound)):
        ann = hints.get(p.name)
        if arg is not None and isinstance(ann, type) and typing.get_origin(ann) is None and not isinstance(arg, ann):
            raise RpcError.invalid_argument(
                f"msgpack/rpc: handler arg {i} must be type {type(arg).__name__}"
            )

    params = tuple(hints.get(p.name, Any) for p in positional[len(bound):])
    return Handler(
        fn=fn,
        bound=tuple(bound),
        params=params,
        variadic=variadic is not None,
        variadic_type=hints.get(variadic.name, Any) if variadic is not None else Any,
    )


async def _invoke(h: Handler, args: list[Any]) -> Any:
    result = h.fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class Endpoint:
    """A MessagePack-RPC peer over a byte-stream :class:`Transport`.

    Example:
        >>> endpoint = Endpoint(transport)
        >>> endpoint.register("add", lambda a, b: a + b)
        >>> serve_task = asyncio.create_task(endpoint.serve())
        >>> await endpoint.call("peer_method", 1, 2, result_type=int)
    """

    def __init__(
        self,
        transport: Transport,
        config: EndpointConfig | None = None,
        *,
        extensions: ExtensionMap | None = None,
    ) -> None:
        """Initialize the endpoint.

        Args:
            transport: The byte stream to the peer
            config: Optional endpoint configuration
            extensions: Extension decoders, merged over ``config.extensions``
        """
        self.transport = transport
        self._config = config or EndpointConfig()

        merged = dict(self._config.extensions)
        merged.update(extensions or {})
        self._dec = Decoder(extensions=merged)

        self._pack_lock = asyncio.Lock()

        self._id = 0
        self._pending: dict[int, Call] = {}
        self._closed = False
        self._err: BaseException | None = None

        self._handlers: dict[str, Handler] = {}

        # Request handler tasks, kept so close() can wait for them
        self._request_tasks: set[asyncio.Task[None]] = set()

        # Notifications run in order on a single worker; None stops it
        self._notifications: asyncio.Queue[tuple[str, Handler, list[Any]] | None] = asyncio.Queue()
        self._notification_task: asyncio.Task[None] | None = None
        self._serving = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def extensions(self) -> ExtensionMap:
        return self._dec.extensions

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def register(self, method: str, fn: Callable[..., Any], *args: Any) -> None:
        """Register handler ``fn`` for ``method``.

        When servicing a call, the arguments to ``fn`` are ``args`` followed
        by the values passed from the peer. ``fn`` may be a coroutine
        function. Returning a value replies with it; raising replies with the
        error (a :class:`PeerError` replies with its ``value``, other
        exceptions with their string form).
        """
        self._handlers[method] = make_handler(fn, args)

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def _write(self, data: bytes) -> None:
        if self._closed:
            raise RpcError.closed()
        async with self._pack_lock:
            await self.transport.write(data)

    async def go(self, method: str, *args: Any, result_type: Any = Any) -> Call:
        """Send a request and return its :class:`Call` without waiting for the reply.

        ``result_type`` is the host type the result is decoded as; ``None``
        discards the result.
        """
        call = Call(method, args, result_type)
        if self._closed:
            call._finish(RpcError.closed())
            return call

        self._id = (self._id + 1) & ID_MASK
        request_id = self._id
        self._pending[request_id] = call

        try:
            enc = Encoder()
            enc.pack_array_len(4)
            enc.pack_uint(REQUEST_MESSAGE)
            enc.pack_uint(request_id)
            enc.pack_string(method)
            enc.encode(list(args))
            await self._write(enc.getvalue())
        except Exception as e:
            if self._pending.pop(request_id, None) is not None:
                call._finish(e)
            await self._close(RpcError.internal(f"msgpack/rpc: error encoding {method}: {e}"))

        return call

    async def call(self, method: str, *args: Any, result_type: Any = Any) -> Any:
        """Send a request and wait for the result."""
        c = await self.go(method, *args, result_type=result_type)
        return await c.wait()

    async def notify(self, method: str, *args: Any) -> None:
        """Send a notification."""
        if self._closed:
            raise RpcError.closed()
        try:
            enc = Encoder()
            enc.pack_array_len(3)
            enc.pack_uint(NOTIFICATION_MESSAGE)
            enc.pack_string(method)
            enc.encode(list(args))
            await self._write(enc.getvalue())
        except Exception as e:
            await self._close(RpcError.internal(f"msgpack/rpc: error encoding {method}: {e}"))
            raise

    async def _reply(self, request_id: int, reply_err: BaseException | None, result: Any) -> None:
        enc = Encoder()
        enc.pack_array_len(4)
        enc.pack_uint(REPLY_MESSAGE)
        enc.pack_uint(request_id)
        if reply_err is None:
            enc.pack_nil()
        elif isinstance(reply_err, PeerError):
            enc.encode(reply_err.value)
        elif is_marshaler(type(reply_err)):
            reply_err.marshal_msgpack(enc)
        else:
            enc.pack_string(str(reply_err))
        enc.encode(result)
        await self._write(enc.getvalue())

    # -------------------------------------------------------------------------
    # Closing
    # -------------------------------------------------------------------------

    async def _close(self, err: BaseException | None) -> BaseException | None:
        if self._closed:
            return self._err
        self._closed = True
        self._err = err

        pending, self._pending = self._pending, {}
        for call in pending.values():
            call._finish(RpcError.closed())

        self._notifications.put_nowait(None)

        if err is not None:
            logger.debug("msgpack/rpc: closing endpoint: %s", err)
        try:
            await self.transport.close()
        except OSError as e:
            if self._err is None:
                self._err = e
        return self._err

    async def close(self) -> None:
        """Close the endpoint.

        Pending calls fail with the closed error and the transport is closed.
        Running request handlers are given ``config.close_timeout`` seconds
        to finish. Closing more than once is a no-op.
        """
        await self._close(None)
        tasks = self._request_tasks - {asyncio.current_task()}
        if tasks:
            await asyncio.wait(tasks, timeout=self._config.close_timeout)

    # -------------------------------------------------------------------------
    # Serving
    # -------------------------------------------------------------------------

    async def serve(self) -> None:
        """Serve incoming messages until the peer disconnects or a fatal error.

        Returns normally when the stream ends cleanly or the endpoint was
        closed locally. Fatal errors (framing, truncated stream, transport
        failure) close the endpoint and are raised.
        """
        if self._serving:
            raise RpcError.internal("msgpack/rpc: serve already running")
        self._serving = True
        self._notification_task = asyncio.create_task(self._run_notifications())

        try:
            while await self._read_message():
                await self._handle_message()
            await self._close(None)
        except asyncio.CancelledError:
            await self._close(None)
            raise
        except Exception as e:
            err = await self._close(e)
            if err is not None:
                raise err from None
        finally:
            self._notifications.put_nowait(None)

    async def _read_message(self) -> bool:
        """Buffer one complete message. Returns False at a clean end of stream."""
        while not self._dec.message_ready():
            if self._closed:
                return False
            data = await self.transport.read(self._config.read_size)
            if not data:
                if self._dec.buffered():
                    raise UnexpectedEof()
                return False
            self._dec.feed(data)
        return True

    def _decode_uint(self, what: str) -> int:
        self._dec.unpack_next()
        if self._dec.type not in (Type.UINT, Type.INT):
            raise RpcError.framing(f"msgpack/rpc: error decoding {what}, found {self._dec.type}")
        return self._dec.uint()

    def _decode_string(self, what: str) -> str:
        self._dec.unpack_next()
        if self._dec.type != Type.STRING:
            raise RpcError.framing(f"msgpack/rpc: error decoding {what}, found {self._dec.type}")
        return self._dec.string()

    def _skip(self, n: int) -> None:
        for _ in range(n):
            self._dec.unpack_next()
            self._dec.skip()

    async def _handle_message(self) -> None:
        dec = self._dec
        dec.unpack()
        if dec.type != Type.ARRAY_LEN:
            raise RpcError.framing(f"msgpack/rpc: expected message array, found {dec.type}")

        message_len = dec.length()
        if message_len < 1:
            raise RpcError.framing(f"msgpack/rpc: invalid message length {message_len}")

        message_type = self._decode_uint("message type")
        match message_type:
            case 0:
                await self._handle_request(message_len)
            case 1:
                self._handle_reply(message_len)
            case 2:
                self._handle_notification(message_len)
            case _:
                raise RpcError.framing(f"msgpack/rpc: unknown message type {message_type}")

    def _handle_reply(self, message_len: int) -> None:
        if message_len != 4:
            raise RpcError.framing(f"msgpack/rpc: invalid reply message length {message_len}")

        request_id = self._decode_uint("response id")
        call = self._pending.pop(request_id, None)
        if call is None:
            logger.warning("msgpack/rpc: no pending call for reply %d", request_id)
            self._skip(2)
            return

        try:
            error_value = self._dec.decode(Any)
        except DecodeConvertError as e:
            call._finish(RpcError.internal())
            raise RpcError.framing(f"msgpack/rpc: error decoding error value: {e}") from e

        if error_value is not None:
            self._skip(1)
            call._finish(PeerError(error_value))
            return

        if call.result_type is None:
            self._skip(1)
            call._finish()
            return

        try:
            result = self._dec.decode(call.result_type)
        except DecodeConvertError as e:
            call._finish(e, e.result)
            return
        call._finish(result=result)

    def _decode_args(self, h: Handler) -> tuple[list[Any], DecodeConvertError | None]:
        dec = self._dec
        dec.unpack_next()
        if dec.type != Type.ARRAY_LEN:
            found = dec.type
            dec.skip()
            raise RpcError.framing(f"msgpack/rpc: expected args array, found {found}")

        src_len = dec.length()
        args = list(h.bound)
        saved: DecodeConvertError | None = None

        def decode(tp: Any) -> Any:
            nonlocal saved
            try:
                return dec.decode(tp)
            except DecodeConvertError as e:
                if saved is None:
                    saved = e
                return e.result

        for i, tp in enumerate(h.params):
            args.append(decode(tp) if i < src_len else zero_value(tp))

        extra = src_len - len(h.params)
        if h.variadic:
            for _ in range(extra):
                args.append(decode(h.variadic_type))
        elif extra > 0:
            self._skip(extra)

        return args, saved

    async def _handle_request(self, message_len: int) -> None:
        if message_len != 4:
            raise RpcError.framing(f"msgpack/rpc: invalid request message length {message_len}")

        request_id = self._decode_uint("request id")
        method = self._decode_string("service method name")

        h = self._handlers.get(method)
        if h is None:
            self._skip(1)
            logger.warning("msgpack/rpc: request service method %s not found", method)
            await self._reply(request_id, RpcError.not_found(f"unknown request method: {method}"), None)
            return

        args, err = self._decode_args(h)
        if err is not None:
            logger.warning("msgpack/rpc: %s: %s", method, err)
            await self._reply(request_id, RpcError.invalid_argument("invalid argument"), None)
            return

        task = asyncio.create_task(self._run_request(request_id, method, h, args))
        self._request_tasks.add(task)
        task.add_done_callback(self._request_tasks.discard)

    async def _run_request(self, request_id: int, method: str, h: Handler, args: list[Any]) -> None:
        reply_err: BaseException | None = None
        result: Any = None
        try:
            result = await _invoke(h, args)
        except Exception as e:
            logger.debug("msgpack/rpc: service method %s raised %r", method, e)
            reply_err = e

        try:
            await self._reply(request_id, reply_err, result)
        except Exception as e:
            await self._close(e)

    def _handle_notification(self, message_len: int) -> None:
        if message_len != 3:
            raise RpcError.framing(f"msgpack/rpc: invalid notification message length {message_len}")

        method = self._decode_string("service method name")

        h = self._handlers.get(method)
        if h is None:
            logger.warning("msgpack/rpc: notification service method %s not found", method)
            self._skip(1)
            return

        args, err = self._decode_args(h)
        if err is not None:
            logger.warning("msgpack/rpc: dropping notification %s: %s", method, err)
            return

        self._notifications.put_nowait((method, h, args))

    async def _run_notifications(self) -> None:
        while True:
            item = await self._notifications.get()
            if item is None:
                return
            method, h, args = item
            try:
                await _invoke(h, args)
            except Exception:
                logger.exception("msgpack/rpc: service method %s failed", method)
