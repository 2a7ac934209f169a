import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import pytest

from labkit.client import RpcHooks
from labkit.codec import FieldKind, Message, decode, encode, field
from labkit.errors import CanceledError, OtherError, RpcTimeout, StoppedError
from labkit.network import Network
from labkit.server import ServerBuilder
from labkit.service import Service, ServiceClient, add_service, rpc


@dataclass
class JunkArgs(Message):
    x: int = field(1, FieldKind.INT64)


@dataclass
class JunkReply(Message):
    x: str = field(1, FieldKind.STRING)


class Junk(Service, name="junk"):
    def __init__(self):
        self.log2 = []
        self._lock = threading.Lock()

    @rpc(JunkArgs, JunkReply)
    async def handler2(self, args):
        with self._lock:
            self.log2.append(args.x)
        return JunkReply(f"handler2-{args.x}")

    @rpc(JunkArgs, JunkReply)
    async def handler3(self, args):
        await asyncio.sleep(20)
        return JunkReply(f"handler3-{-args.x}")

    @rpc(JunkArgs, JunkReply)
    async def handler4(self, args):
        return JunkReply("pointer")


@dataclass
class Echo(Message):
    x: int = field(1, FieldKind.INT64)


class EchoService(Service, name="echo"):
    @rpc(Echo, Echo)
    async def ping(self, request):
        return request


@dataclass
class BenchArgs(Message):
    x: int = field(1, FieldKind.INT64)


@dataclass
class BenchReply(Message):
    x: str = field(1, FieldKind.STRING)


class Bench(Service, name="bench"):
    @rpc(BenchArgs, BenchReply)
    async def handler(self, args):
        return BenchReply(f"handler-{args.x}")


def junk_suit():
    net = Network()
    builder = ServerBuilder("test_server")
    junk = Junk()
    add_service(junk, builder)
    server = builder.build()
    net.add_server(server)
    return net, server, junk


def connected_client(net, client_name="test_client", server_name="test_server"):
    client = ServiceClient(Junk, net.create_client(client_name))
    net.connect(client_name, server_name)
    net.enable(client_name, True)
    return client


def test_echo_example():
    net = Network()
    builder = ServerBuilder("echo_server")
    add_service(EchoService(), builder)
    net.add_server(builder.build())
    client = ServiceClient(EchoService, net.create_client("client"))
    net.enable("client", True)
    net.connect("client", "echo_server")
    assert client.ping(Echo(777)).result(timeout=5) == Echo(777)


def test_repeated_bench_calls():
    net = Network()
    builder = ServerBuilder("test_server")
    add_service(Bench(), builder)
    server = builder.build()
    net.add_server(server)
    client = ServiceClient(Bench, net.create_client("client"))
    net.connect("client", server.name())
    net.enable("client", True)
    replies = [client.handler(BenchArgs(111)).result(timeout=5) for _ in range(50)]
    assert replies == [BenchReply("handler-111")] * 50
    assert net.count("test_server") == 50


def test_network_client_rpc():
    builder = ServerBuilder("test")
    add_service(Junk(), builder)
    server = builder.build()
    net, incoming = Network.create()
    net.add_server(server)
    client = ServiceClient(Junk, net.create_client("test_client"))

    async def ask():
        return await client.handler4(JunkArgs(777))

    pending = client.spawn(ask())
    request = incoming.get(timeout=5)
    reply = JunkReply("boom!!!")
    request.take_resp_sender().set_result(encode(reply))
    assert request.client_name == "test_client"
    assert request.fq_name == "junk.handler4"
    assert decode(JunkArgs, request.req) == JunkArgs(777)
    assert pending.result(timeout=5) == reply

    pending = client.spawn(ask())
    request = incoming.get(timeout=5)
    request.take_resp_sender().cancel()
    with pytest.raises(CanceledError):
        pending.result(timeout=5)

    incoming.close()
    with pytest.raises(StoppedError):
        client.handler4(JunkArgs())


def test_incoming_get_times_out():
    _, incoming = Network.create()
    with pytest.raises(TimeoutError):
        incoming.get(timeout=0.05)


def test_basic():
    net, _, _ = junk_suit()
    client = connected_client(net)
    assert client.handler4(JunkArgs()).result(timeout=5) == JunkReply("pointer")


@pytest.mark.asyncio
async def test_await_reply():
    net, _, _ = junk_suit()
    client = connected_client(net)
    reply = await client.handler2(JunkArgs(5))
    assert reply == JunkReply("handler2-5")


def test_disconnect():
    net, _, _ = junk_suit()
    client = ServiceClient(Junk, net.create_client("test_client"))
    net.connect("test_client", "test_server")
    with pytest.raises(RpcTimeout):
        client.handler4(JunkArgs()).result(timeout=5)
    net.enable("test_client", True)
    assert client.handler4(JunkArgs()).result(timeout=5) == JunkReply("pointer")


def test_unconnected_client_times_out():
    net, _, _ = junk_suit()
    client = ServiceClient(Junk, net.create_client("loner"))
    net.enable("loner", True)
    with pytest.raises(RpcTimeout):
        client.handler4(JunkArgs()).result(timeout=5)
    assert net.count("test_server") == 0
    assert net.total_count() == 1


def test_count():
    net, _, _ = junk_suit()
    client = connected_client(net)
    for i in range(17):
        reply = client.handler2(JunkArgs(i)).result(timeout=5)
        assert reply.x == f"handler2-{i}"
    assert net.count("test_server") == 17
    assert net.total_count() == 17


def test_count_unknown_or_deleted_server():
    net, _, _ = junk_suit()
    with pytest.raises(KeyError):
        net.count("nobody")
    net.delete_server("test_server")
    with pytest.raises(KeyError):
        net.count("test_server")


def test_concurrent_many():
    net, server, _ = junk_suit()
    nclients, nrpcs = 20, 10

    def run(i):
        name = f"client-{i}"
        client = ServiceClient(Junk, net.create_client(name))
        net.enable(name, True)
        net.connect(name, server.name())
        done = 0
        for j in range(nrpcs):
            x = i * 100 + j
            reply = client.handler2(JunkArgs(x)).result(timeout=10)
            assert reply.x == f"handler2-{x}"
            done += 1
        return done

    with ThreadPoolExecutor(max_workers=nclients) as pool:
        total = sum(pool.map(run, range(nclients)))
    assert total == nclients * nrpcs
    assert net.count(server.name()) == total


def test_unreliable():
    net, server, junk = junk_suit()
    net.set_reliable(False)
    nclients = 40

    def run(i):
        name = f"client-{i}"
        client = ServiceClient(Junk, net.create_client(name))
        net.enable(name, True)
        net.connect(name, server.name())
        x = i * 100
        try:
            reply = client.handler2(JunkArgs(x)).result(timeout=60)
        except RpcTimeout:
            return 0
        assert reply.x == f"handler2-{x}"
        return 1

    with ThreadPoolExecutor(max_workers=nclients) as pool:
        total = sum(pool.map(run, range(nclients)))
    assert 0 < total < nclients
    assert net.total_count() == nclients
    assert len(junk.log2) >= total
    assert net.count(server.name()) <= nclients


def test_concurrent_one():
    net, server, junk = junk_suit()
    nrpcs = 20

    def start(x):
        name = f"client-{x}"
        client = ServiceClient(Junk, net.create_client(name))
        net.enable(name, True)
        net.connect(name, server.name())
        return client.handler2(JunkArgs(x))

    xs = [i + 100 for i in range(nrpcs)]
    pendings = [start(x) for x in xs]
    results = [pending.result(timeout=10).x for pending in pendings]
    assert results == [f"handler2-{x}" for x in xs]
    assert len(junk.log2) == nrpcs
    assert net.count(server.name()) == nrpcs


def test_regression1():
    net, server, junk = junk_suit()
    client = ServiceClient(Junk, net.create_client("client"))
    net.connect("client", server.name())
    net.enable("client", False)

    delayed = [client.handler2(JunkArgs(i + 100)) for i in range(20)]
    time.sleep(0.3)

    t0 = time.monotonic()
    net.enable("client", True)
    reply = client.handler2(JunkArgs(99)).result(timeout=5)
    elapsed = time.monotonic() - t0
    assert reply.x == "handler2-99"
    assert elapsed < 1.0

    for pending in delayed:
        with pytest.raises(RpcTimeout):
            pending.result(timeout=5)
    assert len(junk.log2) == 1
    assert net.count(server.name()) == 1


def test_killed():
    net, server, _ = junk_suit()
    client = connected_client(net, "client", server.name())

    async def ask():
        return await client.handler3(JunkArgs(99))

    pending = client.spawn(ask())
    time.sleep(1)
    assert not pending.done()
    net.delete_server(server.name())
    with pytest.raises(StoppedError):
        pending.result(timeout=1)


def test_network_spawn_runs_coroutine():
    net, _, _ = junk_suit()
    client = connected_client(net)

    async def ask():
        return await client.handler2(JunkArgs(3))

    assert net.spawn(ask()).result(timeout=5) == JunkReply("handler2-3")


def test_long_reordering_still_delivers():
    net, _, _ = junk_suit()
    net.set_long_reordering(True)
    client = connected_client(net)
    assert client.handler2(JunkArgs(8)).result(timeout=10) == JunkReply("handler2-8")


def test_long_delays_on_disabled_client_time_out():
    net, _, _ = junk_suit()
    net.set_long_delays(True)
    client = ServiceClient(Junk, net.create_client("test_client"))
    net.connect("test_client", "test_server")
    with pytest.raises(RpcTimeout):
        client.handler4(JunkArgs()).result(timeout=10)


class Hooks(RpcHooks):
    def __init__(self):
        self.drop_req = False
        self.drop_resp = False

    def before_dispatch(self, fq_name, req):
        if self.drop_req:
            raise OtherError("reqhook")

    def after_dispatch(self, fq_name, resp):
        if self.drop_resp:
            raise OtherError("resphook")
        return super().after_dispatch(fq_name, resp)


def test_rpc_hooks():
    net, _, _ = junk_suit()
    raw = net.create_client("test_client")
    hooks = Hooks()
    raw.set_hooks(hooks)
    client = ServiceClient(Junk, raw)
    net.connect("test_client", "test_server")
    net.enable("test_client", True)

    reply = client.handler2(JunkArgs(100)).result(timeout=5)
    assert reply.x == "handler2-100"

    hooks.drop_req = True
    with pytest.raises(OtherError) as excinfo:
        client.handler2(JunkArgs(100)).result(timeout=5)
    assert excinfo.value == OtherError("reqhook")

    hooks.drop_req = False
    hooks.drop_resp = True
    with pytest.raises(OtherError) as excinfo:
        client.handler2(JunkArgs(100)).result(timeout=5)
    assert excinfo.value == OtherError("resphook")

    hooks.drop_resp = False
    reply = client.handler2(JunkArgs(100)).result(timeout=5)
    assert reply.x == "handler2-100"

    hooks.drop_req = True
    raw.clear_hooks()
    assert client.handler4(JunkArgs()).result(timeout=5) == JunkReply("pointer")