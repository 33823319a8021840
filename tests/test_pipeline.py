"""Tests for pipelined calls.

These tests verify:
1. Calls are sent immediately and results gathered by wait()
2. A single failed call raises its own error
3. Several calls raise an ErrorList of the failures
4. Errors are passed through the fix-up function
"""

import asyncio

import pytest

from conftest import ScriptedPeer, create_scripted_pair
from nvimrpc.endpoint import Endpoint
from nvimrpc.error import ErrorCode, ErrorList, NvimError, PeerError, RpcError
from nvimrpc.nvim import fix_error
from nvimrpc.pipeline import Pipeline


async def start_endpoint() -> tuple[Endpoint, ScriptedPeer, asyncio.Task]:
    t, peer = create_scripted_pair()
    ep = Endpoint(t)
    task = asyncio.create_task(ep.serve())
    return ep, peer, task


async def stop_endpoint(ep: Endpoint, task: asyncio.Task) -> None:
    await ep.close()
    await asyncio.wait_for(task, timeout=1.0)


class TestPipeline:
    """Pipeline behaviour."""

    @pytest.mark.asyncio
    async def test_results(self) -> None:
        ep, peer, task = await start_endpoint()
        p = Pipeline(ep)
        a = await p.call("a", 1)
        b = await p.call_function("abs", -2, result_type=int)
        assert len(p) == 2

        m1 = await peer.read_message()
        m2 = await peer.read_message()
        assert m2[2:] == ["nvim_call_function", ["abs", [-2]]]
        await peer.send_message(1, m2[1], None, 2)
        await peer.send_message(1, m1[1], None, "one")

        await asyncio.wait_for(p.wait(), timeout=1.0)
        assert a.value == "one" and a.done and a.error is None
        assert b.value == 2
        assert len(p) == 0

        await stop_endpoint(ep, task)

    @pytest.mark.asyncio
    async def test_single_error(self) -> None:
        ep, peer, task = await start_endpoint()
        p = Pipeline(ep)
        slot = await p.call("a")

        msg = await peer.read_message()
        await peer.send_message(1, msg[1], "failed", None)

        with pytest.raises(PeerError) as exc_info:
            await asyncio.wait_for(p.wait(), timeout=1.0)
        assert exc_info.value.value == "failed"
        assert slot.error is exc_info.value

        await stop_endpoint(ep, task)

    @pytest.mark.asyncio
    async def test_error_list(self) -> None:
        ep, peer, task = await start_endpoint()
        p = Pipeline(ep)
        ok = await p.call("a")
        bad = await p.call("b")

        m1 = await peer.read_message()
        m2 = await peer.read_message()
        await peer.send_message(1, m1[1], None, True)
        await peer.send_message(1, m2[1], "failed", None)

        with pytest.raises(ErrorList) as exc_info:
            await asyncio.wait_for(p.wait(), timeout=1.0)
        assert len(exc_info.value) == 1
        assert list(exc_info.value) == [bad.error]
        assert ok.value is True

        await stop_endpoint(ep, task)

    @pytest.mark.asyncio
    async def test_fix_error(self) -> None:
        ep, peer, task = await start_endpoint()
        p = Pipeline(ep, fix_error)
        slot = await p.call("nvim_command", "bogus")

        msg = await peer.read_message()
        await peer.send_message(1, msg[1], [0, "E492: Not an editor command"], None)

        with pytest.raises(NvimError) as exc_info:
            await asyncio.wait_for(p.wait(), timeout=1.0)
        assert str(exc_info.value) == "nvim:nvim_command exception: E492: Not an editor command"
        assert slot.error is exc_info.value

        await stop_endpoint(ep, task)

    @pytest.mark.asyncio
    async def test_endpoint_closed(self) -> None:
        ep, peer, task = await start_endpoint()
        p = Pipeline(ep)
        await p.call("a")
        await peer.read_message()
        await peer.close()

        with pytest.raises(RpcError) as exc_info:
            await asyncio.wait_for(p.wait(), timeout=1.0)
        assert exc_info.value.code == ErrorCode.CLOSED
        await asyncio.wait_for(task, timeout=1.0)
