import asyncio
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import pytest

from labkit.client import Client, RpcHooks
from labkit.codec import FieldKind, Message, encode, field
from labkit.errors import (
    CanceledError,
    OtherError,
    RpcDecodeError,
    RpcEncodeError,
    RpcTimeout,
    StoppedError,
)


@dataclass
class JunkArgs(Message):
    x: int = field(1, FieldKind.INT64)


@dataclass
class JunkReply(Message):
    x: str = field(1, FieldKind.STRING)


def make_client(name="test_client", worker=None):
    incoming = queue.SimpleQueue()
    return Client(name, incoming.put, worker=worker), incoming


class ClosedSender:
    def __call__(self, rpc):
        raise StoppedError()


@pytest.mark.asyncio
async def test_call_delivers_request_and_reply():
    client, incoming = make_client()
    pending = client.call("junk.handler4", JunkArgs(777), JunkReply)
    rpc = incoming.get_nowait()
    assert rpc.client_name == "test_client"
    assert rpc.fq_name == "junk.handler4"
    assert rpc.req
    assert rpc.req == encode(JunkArgs(777))
    sender = rpc.take_resp_sender()
    assert rpc.resp is None
    reply = JunkReply("boom!!!")
    sender.set_result(encode(reply))
    assert await pending == reply


@pytest.mark.asyncio
async def test_dropped_reply_is_canceled():
    client, incoming = make_client()
    pending = client.call("junk.handler4", JunkArgs(777), JunkReply)
    rpc = incoming.get_nowait()
    sender = rpc.take_resp_sender()
    assert rpc.resp is None
    sender.cancel()
    with pytest.raises(CanceledError):
        await pending
    assert rpc.fq_name == "junk.handler4"


def test_closed_network_stops_calls():
    client = Client("test_client", ClosedSender())
    with pytest.raises(StoppedError):
        client.call("junk.handler4", JunkArgs(), JunkReply)


@pytest.mark.asyncio
async def test_error_reply_is_raised():
    client, incoming = make_client()
    pending = client.call("junk.handler2", JunkArgs(1), JunkReply)
    rpc = incoming.get_nowait()
    assert rpc.req == encode(JunkArgs(1))
    rpc.take_resp_sender().set_exception(RpcTimeout())
    with pytest.raises(RpcTimeout):
        await pending
    assert rpc.resp is None


@pytest.mark.asyncio
async def test_undecodable_reply():
    client, incoming = make_client()
    pending = client.call("junk.handler2", JunkArgs(1), JunkReply)
    rpc = incoming.get_nowait()
    assert rpc.fq_name == "junk.handler2"
    rpc.take_resp_sender().set_result(b"\x0a\x05ab")
    with pytest.raises(RpcDecodeError):
        await pending
    assert rpc.resp is None


def test_unencodable_request_is_not_sent():
    client, incoming = make_client()
    with pytest.raises(RpcEncodeError):
        client.call("junk.handler2", JunkArgs("nope"), JunkReply)
    assert incoming.empty()


def test_blocking_result_from_another_thread():
    client, incoming = make_client()
    pending = client.call("junk.handler4", JunkArgs(3), JunkReply)
    rpc = incoming.get_nowait()
    timer = threading.Timer(
        0.05, rpc.take_resp_sender().set_result, args=(encode(JunkReply("pointer")),)
    )
    timer.start()
    assert pending.result(timeout=5) == JunkReply("pointer")
    timer.join()


def test_blocking_result_times_out():
    client, _ = make_client()
    pending = client.call("junk.handler4", JunkArgs(3), JunkReply)
    with pytest.raises(TimeoutError):
        pending.result(timeout=0.01)


@pytest.mark.asyncio
async def test_cancelling_the_waiter_keeps_the_reply_open():
    client, incoming = make_client()
    pending = client.call("junk.handler4", JunkArgs(3), JunkReply)
    sender = incoming.get_nowait().resp
    task = asyncio.ensure_future(pending)
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not sender.cancelled()


class DropHooks(RpcHooks):
    def before_dispatch(self, fq_name, req):
        raise OtherError("reqhook")


def test_hooks_are_shared_with_requests_in_flight():
    client, incoming = make_client()
    client.call("junk.handler2", JunkArgs(100), JunkReply)
    rpc = incoming.get_nowait()
    assert rpc.hooks is None
    hooks = DropHooks()
    client.set_hooks(hooks)
    assert rpc.hooks is hooks
    with pytest.raises(OtherError) as info:
        rpc.hooks.before_dispatch(rpc.fq_name, rpc.req)
    assert info.value == OtherError("reqhook")
    client.clear_hooks()
    assert rpc.hooks is None


def test_default_hooks_pass_replies_through():
    hooks = RpcHooks()
    assert hooks.before_dispatch("junk.handler2", b"\x08\x01") is None
    assert hooks.after_dispatch("junk.handler2", b"reply") == b"reply"
    with pytest.raises(RpcTimeout):
        hooks.after_dispatch("junk.handler2", RpcTimeout())


def test_spawn_runs_coroutine_on_worker():
    async def compute():
        await asyncio.sleep(0)
        return 41 + 1

    with ThreadPoolExecutor(max_workers=2) as pool:
        client, _ = make_client(worker=pool)
        assert client.worker is pool
        assert client.spawn(compute()).result(timeout=5) == 42