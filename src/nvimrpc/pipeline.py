"""Pipelined calls.

A pipeline sends each call as soon as it is made, without waiting for the
reply, and collects all the outcomes in :meth:`Pipeline.wait`.

A pipeline does not support concurrent use.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from nvimrpc.error import ErrorList

if TYPE_CHECKING:
    from nvimrpc.endpoint import Call, Endpoint

ErrorFixer = Callable[[str, BaseException], BaseException]


class PipelineResult:
    """Result slot of one pipelined call. Set by :meth:`Pipeline.wait`."""

    __slots__ = ("method", "value", "error", "done", "_call")

    def __init__(self, call: Call) -> None:
        self.method = call.method
        self.value: Any = None
        self.error: BaseException | None = None
        self.done = False
        self._call = call

    def __repr__(self) -> str:
        return f"PipelineResult({self.method!r}, value={self.value!r}, error={self.error!r})"


class Pipeline:
    """Issues calls without waiting and gathers their results."""

    def __init__(self, endpoint: Endpoint, fix_error: ErrorFixer | None = None) -> None:
        self._endpoint = endpoint
        self._fix_error = fix_error
        self._slots: list[PipelineResult] = []

    def __len__(self) -> int:
        return len(self._slots)

    async def call(self, method: str, *args: Any, result_type: Any = Any) -> PipelineResult:
        """Send a call and return its result slot."""
        c = await self._endpoint.go(method, *args, result_type=result_type)
        slot = PipelineResult(c)
        self._slots.append(slot)
        return slot

    async def call_function(self, name: str, *args: Any, result_type: Any = Any) -> PipelineResult:
        """Send a call to a vimscript function."""
        return await self.call("nvim_call_function", name, list(args), result_type=result_type)

    async def wait(self) -> None:
        """Wait for every call, then fill the result slots.

        Raises the call's error if exactly one call was made and it failed,
        or an :class:`ErrorList` of all failures if more than one call was
        made. The pipeline is empty afterwards.
        """
        slots, self._slots = self._slots, []
        errors: list[BaseException] = []

        for slot in slots:
            c = slot._call
            await c.join()
            slot.value = c.result
            slot.done = True
            if c.error is not None:
                err = c.error
                if self._fix_error is not None:
                    err = self._fix_error(c.method, err)
                slot.error = err
                errors.append(err)

        if not errors:
            return
        if len(slots) > 1:
            raise ErrorList(errors)
        raise errors[0]
