"""Errors raised by RPC calls made over the simulated network."""

from __future__ import annotations

from labkit.codec import DecodeError, EncodeError


class RpcError(Exception):
    """Base class of every RPC failure.

    Two errors are equal when they are of the same kind and carry the same
    details.
    """

    variant = "Error"

    def __str__(self) -> str:
        if not self.args:
            return self.variant
        details = ", ".join(repr(arg) for arg in self.args)
        return f"{self.variant}({details})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RpcError):
            return NotImplemented
        return type(self) is type(other) and self.args == other.args

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class UnimplementedError(RpcError):
    """The requested service or method does not exist on the server."""

    variant = "Unimplemented"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RpcEncodeError(RpcError):
    """A request or a response could not be encoded."""

    variant = "Encode"

    def __init__(self, error: EncodeError) -> None:
        super().__init__(str(error))
        self.error = error


class RpcDecodeError(RpcError):
    """A request or a response could not be decoded."""

    variant = "Decode"

    def __init__(self, error: DecodeError) -> None:
        super().__init__(str(error))
        self.error = error


class CanceledError(RpcError):
    """The reply channel was closed before a reply was sent."""

    variant = "Recv"

    def __init__(self) -> None:
        super().__init__()


class RpcTimeout(RpcError):
    """No reply arrived; the request or the reply was lost."""

    variant = "Timeout"

    def __init__(self) -> None:
        super().__init__()


class StoppedError(RpcError):
    """The network or the server has stopped serving requests."""

    variant = "Stopped"

    def __init__(self) -> None:
        super().__init__()


class OtherError(RpcError):
    """Any other failure, described by a message."""

    variant = "Other"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message