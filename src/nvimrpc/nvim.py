"""A thin client for a remote editor instance.

:class:`Nvim` wraps an :class:`~nvimrpc.endpoint.Endpoint` configured with
the editor's handle extensions, and turns the editor's ``[type, message]``
error values into :class:`~nvimrpc.error.NvimError`.

Example:
    >>> nvim = await Nvim.dial("/tmp/nvim.sock")
    >>> serve_task = asyncio.create_task(nvim.serve())
    >>> await nvim.call("nvim_command", "echo 'hello'")
    >>> await nvim.call_function("abs", -3, result_type=int)
    3
"""

from __future__ import annotations

import inspect
import logging
import typing
from dataclasses import dataclass
from typing import Any, Callable

from nvimrpc.batch import ERROR_KINDS, Batch
from nvimrpc.config import BatchConfig, DialConfig, EndpointConfig
from nvimrpc.endpoint import Endpoint, Transport
from nvimrpc.error import NvimError, PeerError
from nvimrpc.fields import msgpack_field
from nvimrpc.handles import handle_extensions
from nvimrpc.pipeline import Pipeline
from nvimrpc.transport import connect_stdio, dial

logger = logging.getLogger(__name__)


def fix_error(method: str, err: BaseException) -> BaseException:
    """Map an editor error value ``[type, message]`` to :class:`NvimError`.

    Other errors are returned unchanged.
    """
    if isinstance(err, PeerError) and not isinstance(err, NvimError):
        v = err.value
        if isinstance(v, list) and len(v) == 2 and type(v[0]) is int:
            kind = ERROR_KINDS.get(v[0])
            if kind is not None:
                return NvimError(method, kind, v[1], v)
    return err


@dataclass
class ApiInfo:
    """Reply of ``nvim_get_api_info``: ``[channel_id, metadata]``."""

    channel_id: int = msgpack_field(",array", default=0)
    metadata: Any = None


class Nvim:
    """A connection to an editor instance.

    The application must run :meth:`serve` (usually as a task) for replies
    and incoming calls to be processed.
    """

    def __init__(self, endpoint: Endpoint) -> None:
        self.endpoint = endpoint
        self._channel_id = 0

    @classmethod
    def from_transport(cls, transport: Transport, config: EndpointConfig | None = None) -> Nvim:
        """Create a client over ``transport``."""
        return cls(Endpoint(transport, config, extensions=handle_extensions()))

    @classmethod
    async def dial(cls, address: str | DialConfig, config: EndpointConfig | None = None) -> Nvim:
        """Connect to an editor listening on a unix socket path or ``host:port``."""
        return cls.from_transport(await dial(address), config)

    @classmethod
    async def stdio(cls, config: EndpointConfig | None = None) -> Nvim:
        """Create a client over this process's stdin/stdout (plugin hosts)."""
        return cls.from_transport(await connect_stdio(), config)

    async def __aenter__(self) -> Nvim:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def serve(self) -> None:
        """Serve incoming messages until the editor disconnects or there is an error."""
        await self.endpoint.serve()

    async def close(self) -> None:
        """Release the resources used by the client."""
        await self.endpoint.close()

    async def call(self, method: str, *args: Any, result_type: Any = Any) -> Any:
        """Call an API method and return its result."""
        try:
            return await self.endpoint.call(method, *args, result_type=result_type)
        except PeerError as e:
            raise fix_error(method, e) from None

    async def notify(self, method: str, *args: Any) -> None:
        """Send a notification to the editor."""
        await self.endpoint.notify(method, *args)

    def register_handler(self, method: str, fn: Callable[..., Any]) -> None:
        """Register ``fn`` as the handler for ``method``.

        If the first parameter of ``fn`` is annotated ``Nvim``, this client
        is passed as that argument. The editor calls handlers with
        ``rpcrequest()`` and ``rpcnotify()``.
        """
        args: tuple[Any, ...] = ()
        if self._wants_client(fn):
            args = (self,)
        self.endpoint.register(method, fn, *args)

    @staticmethod
    def _wants_client(fn: Callable[..., Any]) -> bool:
        try:
            params = list(inspect.signature(fn).parameters.values())
        except (TypeError, ValueError):
            return False
        if not params or params[0].kind not in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            return False
        try:
            ann = typing.get_type_hints(fn).get(params[0].name)
        except (NameError, TypeError):
            ann = params[0].annotation
        return ann is Nvim or ann == "Nvim" or (isinstance(ann, type) and issubclass(ann, Nvim))

    def new_batch(self, config: BatchConfig | None = None) -> Batch:
        """Create a batch of calls executed atomically by the editor."""
        return Batch(self.endpoint, config)

    def new_pipeline(self) -> Pipeline:
        """Create a pipeline of concurrently issued calls."""
        return Pipeline(self.endpoint, fix_error)

    async def call_function(self, name: str, *args: Any, result_type: Any = Any) -> Any:
        """Call a vimscript function."""
        return await self.call("nvim_call_function", name, list(args), result_type=result_type)

    async def exec_lua(self, code: str, *args: Any, result_type: Any = Any) -> Any:
        """Execute a chunk of Lua code; ``args`` are available as ``...``."""
        return await self.call("nvim_exec_lua", code, list(args), result_type=result_type)

    async def api_info(self) -> ApiInfo:
        """Return the channel id of this client and the API metadata."""
        return await self.call("nvim_get_api_info", result_type=ApiInfo)

    async def channel_id(self) -> int:
        """Return the editor's channel id for this client."""
        if not self._channel_id:
            info = await self.api_info()
            self._channel_id = info.channel_id
        return self._channel_id
