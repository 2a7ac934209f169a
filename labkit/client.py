"""The client end of an RPC connection."""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Coroutine, Generator, Generic, TypeVar

from labkit.codec import DecodeError, EncodeError, Message, decode, encode
from labkit.errors import CanceledError, RpcDecodeError, RpcEncodeError, RpcError

M = TypeVar("M", bound=Message)
T = TypeVar("T")


class RpcHooks:
    """Interceptors run by the network around the dispatch of each request."""

    def before_dispatch(self, fq_name: str, req: bytes) -> None:
        """Called before dispatch; raise an :class:`RpcError` to reject."""
        return None

    def after_dispatch(self, fq_name: str, resp: bytes | RpcError) -> bytes:
        """Called with the reply or the error; return a reply or raise."""
        if isinstance(resp, RpcError):
            raise resp
        return resp


class _HookSlot:
    """Hooks shared by a client and every request it has sent."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hooks: RpcHooks | None = None

    def get(self) -> RpcHooks | None:
        with self._lock:
            return self._hooks

    def set(self, hooks: RpcHooks | None) -> None:
        with self._lock:
            self._hooks = hooks


class Rpc:
    """A request in flight, together with the future its reply goes to."""

    def __init__(
        self,
        client_name: str,
        fq_name: str,
        req: bytes | None,
        resp: Future | None,
        hook_slot: _HookSlot | None = None,
    ) -> None:
        self.client_name = client_name
        self.fq_name = fq_name
        self.req = req
        self.resp = resp
        self._hook_slot = hook_slot if hook_slot is not None else _HookSlot()

    @property
    def hooks(self) -> RpcHooks | None:
        """The hooks currently installed on the sending client."""
        return self._hook_slot.get()

    def take_resp_sender(self) -> Future | None:
        """Hand over the reply future, leaving none behind."""
        sender, self.resp = self.resp, None
        return sender

    def __repr__(self) -> str:
        return f"Rpc(client_name={self.client_name!r}, fq_name={self.fq_name!r})"


class _Reply(Generic[M]):
    """The pending reply of one call; await it or wait with :meth:`result`."""

    __slots__ = ("_future", "_response_type")

    def __init__(self, future: Future, response_type: type[M]) -> None:
        self._future = future
        self._response_type = response_type

    def __await__(self) -> Generator[Any, None, M]:
        return self._receive().__await__()

    async def _receive(self) -> M:
        if not self._future.done():
            # asyncio.wait leaves the reply untouched if this task is cancelled.
            await asyncio.wait({asyncio.wrap_future(self._future)})
        return self._unwrap()

    def result(self, timeout: float | None = None) -> M:
        """Block until the reply arrives; raise TimeoutError after ``timeout``."""
        done, _ = concurrent.futures.wait([self._future], timeout)
        if not done:
            raise TimeoutError("no reply within the given time")
        return self._unwrap()

    def _unwrap(self) -> M:
        if self._future.cancelled():
            raise CanceledError()
        error = self._future.exception()
        if error is not None:
            raise error
        try:
            return decode(self._response_type, self._future.result())
        except DecodeError as exc:
            raise RpcDecodeError(exc) from exc


class Client:
    """Sends encoded requests through ``sender`` and decodes the replies.

    ``sender`` takes each :class:`Rpc`; it raises :class:`StoppedError` when
    requests can no longer be delivered.
    """

    def __init__(
        self,
        name: str,
        sender: Callable[[Rpc], None],
        worker: Executor | None = None,
    ) -> None:
        self.name = name
        self._sender = sender
        self._hooks = _HookSlot()
        self._worker = worker
        self._worker_lock = threading.Lock()

    @property
    def worker(self) -> Executor:
        """The executor that runs spawned coroutines."""
        with self._worker_lock:
            if self._worker is None:
                self._worker = ThreadPoolExecutor(
                    thread_name_prefix=f"client-{self.name}"
                )
            return self._worker

    def call(self, fq_name: str, req: Message, response_type: type[M]) -> _Reply[M]:
        """Send ``req`` to ``fq_name`` now and return its pending reply."""
        try:
            payload = encode(req)
        except EncodeError as exc:
            raise RpcEncodeError(exc) from exc
        future: Future = Future()
        self._sender(Rpc(self.name, fq_name, payload, future, self._hooks))
        return _Reply(future, response_type)

    def set_hooks(self, hooks: RpcHooks) -> None:
        self._hooks.set(hooks)

    def clear_hooks(self) -> None:
        self._hooks.set(None)

    def spawn(self, coro: Coroutine[Any, Any, T]) -> Future:
        """Run ``coro`` on the worker in its own event loop."""
        return self.worker.submit(asyncio.run, coro)