"""A simulated network that delivers RPCs between named clients and servers.

Clients are enabled or disabled and connected to servers by name. The network
can drop, delay and reorder requests and replies to imitate an unreliable
transport, and it stops replies from servers that have been deleted.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from collections import deque
from concurrent.futures import Future, InvalidStateError, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Coroutine

from labkit.client import Client, Rpc
from labkit.errors import OtherError, RpcError, RpcTimeout, StoppedError
from labkit.server import Server

_log = logging.getLogger(__name__)

_DEAD_CHECK_INTERVAL = 0.1


def _as_rpc_error(exc: Exception) -> RpcError:
    if isinstance(exc, RpcError):
        return exc
    return OtherError(f"{type(exc).__name__}: {exc}")


class _Incoming:
    """The queue of requests sent by clients and not yet taken by the network."""

    def __init__(self) -> None:
        self._items: deque[Rpc] = deque()
        self._cond = threading.Condition()
        self._closed = False

    def put(self, rpc: Rpc) -> None:
        """Queue ``rpc``; raise :class:`StoppedError` once the queue is closed."""
        with self._cond:
            if self._closed:
                raise StoppedError()
            self._items.append(rpc)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> Rpc:
        """Take the next request.

        Raises :class:`TimeoutError` when nothing arrives within ``timeout`` and
        :class:`StoppedError` once the queue is closed.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise TimeoutError("no request within the given time")
            if self._items:
                return self._items.popleft()
            raise StoppedError()

    def close(self) -> None:
        """Refuse further requests and cancel the replies of queued ones."""
        with self._cond:
            self._closed = True
            pending = list(self._items)
            self._items.clear()
            self._cond.notify_all()
        for rpc in pending:
            sender = rpc.take_resp_sender()
            if sender is not None:
                sender.cancel()


@dataclass(frozen=True)
class _EndInfo:
    enabled: bool
    reliable: bool
    long_reordering: bool
    server: Server | None


class Network:
    """Routes requests from clients to the servers they are connected to.

    ``Network()`` starts delivering requests at once; :meth:`create` gives a
    network together with its queue of incoming requests, left for the caller
    to serve.
    """

    def __init__(self) -> None:
        self._start(self._setup())

    @classmethod
    def create(cls) -> tuple[Network, _Incoming]:
        """A network that does not deliver requests, and its incoming queue."""
        net = cls.__new__(cls)
        return net, net._setup()

    def _setup(self) -> _Incoming:
        self._lock = threading.Lock()
        self._reliable = True
        # pause a long time on send on a disabled connection
        self._long_delays = False
        # sometimes delay replies a long time
        self._long_reordering = False
        self._enabled: dict[str, bool] = {}
        self._servers: dict[str, Server | None] = {}
        self._connections: dict[str, str | None] = {}
        self._total = 0
        self._rng = random.Random()
        self._incoming = _Incoming()
        self._worker = ThreadPoolExecutor(thread_name_prefix="network-worker")
        return self._incoming

    def _start(self, incoming: _Incoming) -> None:
        loop = asyncio.new_event_loop()
        threading.Thread(
            target=loop.run_forever, name="network-poller", daemon=True
        ).start()

        def pump() -> None:
            while True:
                try:
                    rpc = incoming.get()
                except StoppedError:
                    return
                asyncio.run_coroutine_threadsafe(self._serve(rpc), loop)

        threading.Thread(target=pump, name="network-pump", daemon=True).start()

    # ------------------------------------------------------------ topology

    def add_server(self, server: Server) -> None:
        with self._lock:
            self._servers[server.name()] = server

    def delete_server(self, name: str) -> None:
        """Kill the server registered under ``name``; its replies are dropped."""
        with self._lock:
            if name in self._servers:
                self._servers[name] = None

    def create_client(self, name: str) -> Client:
        """A new client end, disabled and connected to nothing."""
        with self._lock:
            self._enabled[name] = False
            self._connections[name] = None
        return Client(name, self._incoming.put, self._worker)

    def connect(self, client_name: str, server_name: str) -> None:
        """Connect a client to a server."""
        with self._lock:
            self._connections[client_name] = server_name

    def enable(self, client_name: str, enabled: bool) -> None:
        """Enable or disable a client."""
        _log.debug(
            "client %s is %s", client_name, "enabled" if enabled else "disabled"
        )
        with self._lock:
            self._enabled[client_name] = enabled

    def set_reliable(self, yes: bool) -> None:
        with self._lock:
            self._reliable = yes

    def set_long_reordering(self, yes: bool) -> None:
        with self._lock:
            self._long_reordering = yes

    def set_long_delays(self, yes: bool) -> None:
        with self._lock:
            self._long_delays = yes

    def count(self, server_name: str) -> int:
        """How many requests the named, live server has dispatched."""
        with self._lock:
            server = self._servers.get(server_name)
        if server is None:
            raise KeyError(f"no live server named {server_name!r}")
        return server.count()

    def total_count(self) -> int:
        """How many requests the network has processed."""
        with self._lock:
            return self._total

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> Future:
        """Run ``coro`` on the network's worker in its own event loop."""
        return self._worker.submit(asyncio.run, coro)

    # ------------------------------------------------------------ delivery

    def _end_info(self, client_name: str) -> _EndInfo:
        with self._lock:
            server_name = self._connections.get(client_name)
            server = self._servers.get(server_name) if server_name else None
            return _EndInfo(
                enabled=self._enabled[client_name],
                reliable=self._reliable,
                long_reordering=self._long_reordering,
                server=server,
            )

    def _is_server_dead(self, client_name: str, server_name: str, server_id: int) -> bool:
        with self._lock:
            if not self._enabled.get(client_name, False):
                return True
            server = self._servers.get(server_name)
            return server is None or server.id != server_id

    async def _serve(self, rpc: Rpc) -> None:
        sender = rpc.take_resp_sender()
        result: bytes | None = None
        error: RpcError | None = None
        try:
            result = await self._process_rpc(rpc)
        except Exception as exc:
            error = _as_rpc_error(exc)
        if sender is None:
            return
        try:
            if error is not None:
                sender.set_exception(error)
            else:
                sender.set_result(result)
        except InvalidStateError:
            _log.error("fail to send resp for %r", rpc)

    async def _process_rpc(self, rpc: Rpc) -> bytes:
        with self._lock:
            self._total += 1
        info = self._end_info(rpc.client_name)
        _log.debug("%r process with %r", rpc, info)
        rng = self._rng

        if info.enabled and info.server is not None:
            short_delay = None if info.reliable else rng.randrange(27)
            if not info.reliable and rng.randrange(1000) < 100:
                # drop the request, return as if timeout
                await asyncio.sleep(short_delay)
                raise RpcTimeout()
            drop_reply = not info.reliable and rng.randrange(1000) < 100
            reordering = None
            if info.long_reordering and rng.randrange(900) < 600:
                # delay the response for a while
                upper_bound = 1 + rng.randrange(2000)
                reordering = 200 + rng.randrange(upper_bound)
            return await self._dispatch(
                short_delay, drop_reply, reordering, rpc, info.server
            )

        # simulate no reply and eventual timeout
        with self._lock:
            long_delays = self._long_delays
        # long delays let tests check that RPCs are not sent synchronously;
        # short ones let clients try each server in rapid succession
        ms = rng.randrange(7000) if long_delays else rng.randrange(100)
        _log.debug("%r delay %dms then timeout", rpc, ms)
        await asyncio.sleep(ms / 1000)
        raise RpcTimeout()

    async def _dispatch(
        self,
        delay_ms: int | None,
        drop_reply: bool,
        reordering_ms: int | None,
        rpc: Rpc,
        server: Server,
    ) -> bytes:
        if delay_ms:
            await asyncio.sleep(delay_ms / 1000)

        fq_name = rpc.fq_name
        req, rpc.req = rpc.req or b"", None
        hooks = rpc.hooks
        if hooks is not None:
            hooks.before_dispatch(fq_name, req)

        # Watch the server while the handler runs, so that a killed server
        # never gives a positive reply.
        client_name, server_name, server_id = rpc.client_name, server.name(), server.id
        handling = asyncio.ensure_future(server.dispatch(fq_name, req))
        watching = asyncio.ensure_future(
            self._server_dead(client_name, server_name, server_id)
        )
        done, pending = await asyncio.wait(
            {handling, watching}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()

        resp: bytes | RpcError
        if handling in done:
            try:
                resp = handling.result()
            except Exception as exc:
                resp = _as_rpc_error(exc)
        else:
            resp = StoppedError()

        hooks = rpc.hooks
        if hooks is not None:
            resp = hooks.after_dispatch(fq_name, resp)
        elif isinstance(resp, RpcError):
            raise resp

        if self._is_server_dead(client_name, server_name, server_id):
            raise StoppedError()
        if drop_reply:
            # drop the reply, return as if timeout
            raise RpcTimeout()
        if reordering_ms is not None:
            _log.debug("%r next long reordering %dms", rpc, reordering_ms)
            await asyncio.sleep(reordering_ms / 1000)
        return resp

    async def _server_dead(self, client_name: str, server_name: str, server_id: int) -> None:
        while True:
            await asyncio.sleep(_DEAD_CHECK_INTERVAL)
            if self._is_server_dead(client_name, server_name, server_id):
                _log.debug("%r is dead", server_name)
                return