"""RPC servers: named collections of services dispatched by method name."""

from __future__ import annotations

import itertools
import threading
from typing import Awaitable, Callable, Protocol

from labkit.errors import OtherError, UnimplementedError

Handler = Callable[[bytes], Awaitable[bytes]]

_next_id = itertools.count()
_id_lock = threading.Lock()


class _HandlerFactory(Protocol):
    def handler(self, name: str) -> Handler: ...


def _allocate_id() -> int:
    with _id_lock:
        return next(_next_id)


class ServerBuilder:
    """Collects services before a :class:`Server` is built."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.services: dict[str, _HandlerFactory] = {}

    def add_service(self, service_name: str, factory: _HandlerFactory) -> None:
        """Register ``factory`` under ``service_name``.

        Raises :class:`OtherError` if the name is already taken.
        """
        if service_name in self.services:
            raise OtherError(f"{service_name} has already registered")
        self.services[service_name] = factory

    def build(self) -> Server:
        """A server holding the services registered so far."""
        return Server(self.name, self.services)


class Server:
    """Dispatches encoded requests to the handlers of its services."""

    def __init__(self, name: str, services: dict[str, _HandlerFactory]) -> None:
        self._name = name
        self._services = dict(services)
        self._id = _allocate_id()
        self._count = 0
        self._lock = threading.Lock()

    @property
    def id(self) -> int:
        """A number unique to this server instance."""
        return self._id

    def count(self) -> int:
        """How many requests this server has been asked to dispatch."""
        return self._count

    def name(self) -> str:
        return self._name

    async def dispatch(self, fq_name: str, req: bytes) -> bytes:
        """Run the handler named ``service.method`` on the encoded request."""
        with self._lock:
            self._count += 1
        parts = fq_name.split(".", 2)
        factory = self._services.get(parts[0]) if len(parts) >= 2 else None
        if factory is None:
            raise UnimplementedError(f"unknown {fq_name}")
        return await factory.handler(parts[1])(bytes(req))

    def __repr__(self) -> str:
        return f"Server(name={self._name!r}, id={self._id})"