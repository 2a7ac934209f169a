"""Declaring RPC services and calling them by method name."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, ClassVar, Coroutine, Mapping

from labkit.client import Client
from labkit.codec import DecodeError, EncodeError, Message, decode, encode
from labkit.errors import RpcDecodeError, RpcEncodeError, UnimplementedError
from labkit.server import Handler, ServerBuilder

_RPC_ATTR = "__labkit_rpc__"


@dataclass(frozen=True)
class _RpcSpec:
    request_type: type[Message]
    response_type: type[Message]


def rpc(request_type: type[Message], response_type: type[Message]) -> Callable:
    """Mark a service method as an RPC taking and returning these messages."""

    def decorate(method: Callable) -> Callable:
        setattr(method, _RPC_ATTR, _RpcSpec(request_type, response_type))
        return method

    return decorate


class Service:
    """Base class of RPC services.

    Subclasses name the service with ``class Junk(Service, name="junk")`` and
    mark their methods with :func:`rpc`. Overriding a marked method in a
    further subclass keeps it an RPC.
    """

    service_name: ClassVar[str | None] = None
    rpc_methods: ClassVar[Mapping[str, _RpcSpec]] = MappingProxyType({})

    def __init_subclass__(cls, name: str | None = None, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        methods: dict[str, _RpcSpec] = {}
        for base in reversed(cls.__bases__):
            methods.update(getattr(base, "rpc_methods", {}))
        for attr, value in vars(cls).items():
            spec = getattr(value, _RPC_ATTR, None)
            if isinstance(spec, _RpcSpec):
                methods[attr] = spec
        cls.rpc_methods = MappingProxyType(methods)
        if name is not None:
            if not name or "." in name:
                raise ValueError(f"invalid service name {name!r}")
            if not methods:
                raise TypeError("empty service is not allowed")
            cls.service_name = name


def _name_of(service_type: type[Service]) -> str:
    name = getattr(service_type, "service_name", None)
    if name is None:
        raise TypeError(f"{service_type.__name__} does not name a service")
    return name


class _ServiceHandlers:
    """Builds request handlers for the methods of one service instance."""

    def __init__(self, service: Service) -> None:
        self._service = service
        self._name = _name_of(type(service))

    def handler(self, name: str) -> Handler:
        spec = type(self._service).rpc_methods.get(name)
        if spec is None:
            return self._unimplemented(name)
        method = getattr(self._service, name)

        async def handle(req: bytes) -> bytes:
            try:
                request = decode(spec.request_type, req)
            except DecodeError as exc:
                raise RpcDecodeError(exc) from exc
            response = method(request)
            if inspect.isawaitable(response):
                response = await response
            try:
                return encode(response)
            except EncodeError as exc:
                raise RpcEncodeError(exc) from exc

        return handle

    def _unimplemented(self, name: str) -> Handler:
        async def handle(req: bytes) -> bytes:
            raise UnimplementedError(f"unknown {name} in {self._name}")

        return handle


def add_service(service: Service, builder: ServerBuilder) -> None:
    """Register ``service`` with ``builder`` under its service name."""
    builder.add_service(_name_of(type(service)), _ServiceHandlers(service))


class ServiceClient:
    """Calls the RPC methods of ``service_type`` through ``client``.

    Each method is an attribute taking the request message and returning the
    pending reply.
    """

    def __init__(self, service_type: type[Service], client: Client) -> None:
        self._service_name = _name_of(service_type)
        self._service_type = service_type
        self._client = client

    @property
    def client(self) -> Client:
        return self._client

    def __getattr__(self, method_name: str) -> Callable:
        if method_name.startswith("_"):
            raise AttributeError(method_name)
        spec = self._service_type.rpc_methods.get(method_name)
        if spec is None:
            raise AttributeError(
                f"service {self._service_name} has no method {method_name!r}"
            )
        fq_name = f"{self._service_name}.{method_name}"
        client = self._client

        def call(args: Message):
            return client.call(fq_name, args, spec.response_type)

        call.__name__ = method_name
        return call

    def spawn(self, coro: Coroutine) -> Any:
        """Run ``coro`` on the underlying client's worker."""
        return self._client.spawn(coro)