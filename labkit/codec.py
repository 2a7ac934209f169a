"""Protocol-buffer wire encoding for dataclass-based messages.

A message is a dataclass deriving from :class:`Message` whose codec fields are
declared with :func:`field`. Encoding follows proto3 rules: scalar fields that
hold their default value are omitted, and repeated numeric fields are packed.
"""

from __future__ import annotations

import dataclasses
import enum
import struct
from functools import lru_cache
from typing import Any, TypeVar

_META_KEY = "labkit.codec"
_MAX_TAG = (1 << 29) - 1
_U32 = (1 << 32) - 1
_U64 = (1 << 64) - 1


class EncodeError(ValueError):
    """A message could not be encoded."""


class DecodeError(ValueError):
    """A buffer could not be decoded into a message."""


class WireType(enum.IntEnum):
    """Wire types of the protocol-buffer encoding."""

    VARINT = 0
    FIXED64 = 1
    LENGTH_DELIMITED = 2
    START_GROUP = 3
    END_GROUP = 4
    FIXED32 = 5


class FieldKind(enum.Enum):
    """Scalar value types a message field may hold."""

    INT32 = "int32"
    INT64 = "int64"
    UINT32 = "uint32"
    UINT64 = "uint64"
    SINT32 = "sint32"
    SINT64 = "sint64"
    BOOL = "bool"
    ENUM = "enum"
    FIXED32 = "fixed32"
    SFIXED32 = "sfixed32"
    FLOAT = "float"
    FIXED64 = "fixed64"
    SFIXED64 = "sfixed64"
    DOUBLE = "double"
    STRING = "string"
    BYTES = "bytes"

    @property
    def wire_type(self) -> WireType:
        return _WIRE_TYPES[self]

    @property
    def packable(self) -> bool:
        return self not in (FieldKind.STRING, FieldKind.BYTES)


_WIRE_TYPES = {
    **{
        kind: WireType.VARINT
        for kind in (
            FieldKind.INT32,
            FieldKind.INT64,
            FieldKind.UINT32,
            FieldKind.UINT64,
            FieldKind.SINT32,
            FieldKind.SINT64,
            FieldKind.BOOL,
            FieldKind.ENUM,
        )
    },
    FieldKind.FIXED32: WireType.FIXED32,
    FieldKind.SFIXED32: WireType.FIXED32,
    FieldKind.FLOAT: WireType.FIXED32,
    FieldKind.FIXED64: WireType.FIXED64,
    FieldKind.SFIXED64: WireType.FIXED64,
    FieldKind.DOUBLE: WireType.FIXED64,
    FieldKind.STRING: WireType.LENGTH_DELIMITED,
    FieldKind.BYTES: WireType.LENGTH_DELIMITED,
}

_INT_RANGES = {
    FieldKind.INT32: (-(1 << 31), (1 << 31) - 1),
    FieldKind.ENUM: (-(1 << 31), (1 << 31) - 1),
    FieldKind.SINT32: (-(1 << 31), (1 << 31) - 1),
    FieldKind.SFIXED32: (-(1 << 31), (1 << 31) - 1),
    FieldKind.INT64: (-(1 << 63), (1 << 63) - 1),
    FieldKind.SINT64: (-(1 << 63), (1 << 63) - 1),
    FieldKind.SFIXED64: (-(1 << 63), (1 << 63) - 1),
    FieldKind.UINT32: (0, _U32),
    FieldKind.FIXED32: (0, _U32),
    FieldKind.UINT64: (0, _U64),
    FieldKind.FIXED64: (0, _U64),
}

_STRUCT_FORMATS = {
    FieldKind.FIXED32: "<I",
    FieldKind.SFIXED32: "<i",
    FieldKind.FLOAT: "<f",
    FieldKind.FIXED64: "<Q",
    FieldKind.SFIXED64: "<q",
    FieldKind.DOUBLE: "<d",
}


def _default_of(kind: FieldKind) -> Any:
    if kind is FieldKind.STRING:
        return ""
    if kind is FieldKind.BYTES:
        return b""
    if kind is FieldKind.BOOL:
        return False
    if kind in (FieldKind.FLOAT, FieldKind.DOUBLE):
        return 0.0
    return 0


@dataclasses.dataclass(frozen=True)
class _FieldInfo:
    tag: int
    kind: FieldKind
    repeated: bool


@dataclasses.dataclass(frozen=True)
class _Spec:
    name: str
    tag: int
    kind: FieldKind
    repeated: bool


class Message:
    """Base class for codec messages; subclasses are dataclasses."""

    def encoded_len(self) -> int:
        """Number of bytes the encoded message occupies."""
        return len(encode(self))


M = TypeVar("M", bound=Message)


def field(tag: int, kind: FieldKind | str, *, repeated: bool = False) -> Any:
    """Declare a dataclass field carried on the wire under ``tag``."""
    if not 1 <= tag <= _MAX_TAG:
        raise ValueError(f"field tag {tag} out of range 1..{_MAX_TAG}")
    kind = FieldKind(kind)
    metadata = {_META_KEY: _FieldInfo(tag, kind, repeated)}
    if repeated:
        return dataclasses.field(default_factory=list, metadata=metadata)
    return dataclasses.field(default=_default_of(kind), metadata=metadata)


@lru_cache(maxsize=None)
def _specs(message_type: type) -> tuple[_Spec, ...]:
    if not (isinstance(message_type, type) and dataclasses.is_dataclass(message_type)):
        raise TypeError(f"{message_type!r} is not a dataclass message type")
    specs = []
    seen: set[int] = set()
    for f in dataclasses.fields(message_type):
        info = f.metadata.get(_META_KEY)
        if info is None:
            continue
        if info.tag in seen:
            raise TypeError(f"{message_type.__name__}: duplicate tag {info.tag}")
        seen.add(info.tag)
        specs.append(_Spec(f.name, info.tag, info.kind, info.repeated))
    return tuple(specs)


# ---------------------------------------------------------------- encoding


def _varint(value: int) -> bytes:
    value &= _U64
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _key(tag: int, wire_type: WireType) -> bytes:
    return _varint((tag << 3) | wire_type)


def _payload(kind: FieldKind, value: Any) -> bytes:
    if kind is FieldKind.STRING:
        if not isinstance(value, str):
            raise EncodeError(f"expected str, got {type(value).__name__}")
        data = value.encode("utf-8")
        return _varint(len(data)) + data
    if kind is FieldKind.BYTES:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise EncodeError(f"expected bytes, got {type(value).__name__}")
        data = bytes(value)
        return _varint(len(data)) + data
    if kind is FieldKind.BOOL:
        if not isinstance(value, int):
            raise EncodeError(f"expected bool, got {type(value).__name__}")
        return _varint(1 if value else 0)
    if kind in (FieldKind.FLOAT, FieldKind.DOUBLE):
        if not isinstance(value, (int, float)):
            raise EncodeError(f"expected a number, got {type(value).__name__}")
        return struct.pack(_STRUCT_FORMATS[kind], float(value))
    if not isinstance(value, int):
        raise EncodeError(f"expected int, got {type(value).__name__}")
    low, high = _INT_RANGES[kind]
    if not low <= value <= high:
        raise EncodeError(f"{value} out of range for {kind.value}")
    if kind in _STRUCT_FORMATS:
        return struct.pack(_STRUCT_FORMATS[kind], value)
    if kind is FieldKind.SINT32:
        return _varint(((value << 1) ^ (value >> 31)) & _U32)
    if kind is FieldKind.SINT64:
        return _varint(((value << 1) ^ (value >> 63)) & _U64)
    return _varint(value)


def _encode_field(spec: _Spec, value: Any) -> bytes:
    if not spec.repeated:
        if value == _default_of(spec.kind) and not isinstance(value, (list, tuple)):
            return b""
        return _key(spec.tag, spec.kind.wire_type) + _payload(spec.kind, value)
    if not isinstance(value, (list, tuple)):
        raise EncodeError(f"expected a list, got {type(value).__name__}")
    if spec.kind.packable:
        if not value:
            return b""
        packed = b"".join(_payload(spec.kind, item) for item in value)
        return (
            _key(spec.tag, WireType.LENGTH_DELIMITED) + _varint(len(packed)) + packed
        )
    key = _key(spec.tag, spec.kind.wire_type)
    return b"".join(key + _payload(spec.kind, item) for item in value)


def encode(message: Message) -> bytes:
    """Encode ``message`` to its wire representation."""
    name = type(message).__name__
    out = bytearray()
    for spec in _specs(type(message)):
        try:
            out += _encode_field(spec, getattr(message, spec.name))
        except EncodeError as exc:
            raise EncodeError(f"{name}.{spec.name}: {exc}") from None
    return bytes(out)


# ---------------------------------------------------------------- decoding


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def varint(self) -> int:
        result = 0
        for count in range(10):
            if self._pos >= len(self._data):
                raise DecodeError("buffer underflow")
            byte = self._data[self._pos]
            self._pos += 1
            result |= (byte & 0x7F) << (7 * count)
            if byte < 0x80:
                if count == 9 and byte > 1:
                    break
                return result
        raise DecodeError("invalid varint")

    def take(self, size: int) -> bytes:
        if size > len(self._data) - self._pos:
            raise DecodeError("buffer underflow")
        chunk = self._data[self._pos : self._pos + size]
        self._pos += size
        return chunk

    def length_delimited(self) -> bytes:
        return self.take(self.varint())

    def key(self) -> tuple[int, WireType]:
        raw = self.varint()
        if raw > _U32:
            raise DecodeError(f"invalid key value: {raw}")
        wire = raw & 0x7
        if wire > WireType.FIXED32:
            raise DecodeError(f"invalid wire type value: {wire}")
        tag = raw >> 3
        if tag == 0:
            raise DecodeError("invalid tag value: 0")
        return tag, WireType(wire)


def _skip(reader: _Reader, wire: WireType, tag: int) -> None:
    if wire is WireType.VARINT:
        reader.varint()
    elif wire is WireType.FIXED64:
        reader.take(8)
    elif wire is WireType.FIXED32:
        reader.take(4)
    elif wire is WireType.LENGTH_DELIMITED:
        reader.length_delimited()
    elif wire is WireType.START_GROUP:
        while True:
            inner_tag, inner_wire = reader.key()
            if inner_wire is WireType.END_GROUP:
                if inner_tag != tag:
                    raise DecodeError("unexpected end group tag")
                return
            _skip(reader, inner_wire, inner_tag)
    else:
        raise DecodeError("unexpected end group tag")


def _read_value(kind: FieldKind, reader: _Reader) -> Any:
    if kind is FieldKind.STRING:
        try:
            return reader.length_delimited().decode("utf-8")
        except UnicodeDecodeError:
            raise DecodeError(
                "invalid string value: data is not UTF-8 encoded"
            ) from None
    if kind is FieldKind.BYTES:
        return bytes(reader.length_delimited())
    if kind in _STRUCT_FORMATS:
        fmt = _STRUCT_FORMATS[kind]
        return struct.unpack(fmt, reader.take(struct.calcsize(fmt)))[0]
    raw = reader.varint()
    if kind is FieldKind.BOOL:
        return raw != 0
    if kind in (FieldKind.INT32, FieldKind.ENUM):
        raw &= _U32
        return raw - (1 << 32) if raw >= 1 << 31 else raw
    if kind is FieldKind.INT64:
        return raw - (1 << 64) if raw >= 1 << 63 else raw
    if kind is FieldKind.UINT32:
        return raw & _U32
    if kind is FieldKind.SINT32:
        raw &= _U32
        return (raw >> 1) ^ -(raw & 1)
    if kind is FieldKind.SINT64:
        return (raw >> 1) ^ -(raw & 1)
    return raw


def _merge(spec: _Spec, wire: WireType, reader: _Reader, values: dict) -> None:
    expected = spec.kind.wire_type
    if spec.repeated and spec.kind.packable and wire is WireType.LENGTH_DELIMITED:
        packed = _Reader(reader.length_delimited())
        while not packed.at_end():
            values[spec.name].append(_read_value(spec.kind, packed))
        return
    if wire is not expected:
        raise DecodeError(f"invalid wire type: {wire.name} (expected {expected.name})")
    value = _read_value(spec.kind, reader)
    if spec.repeated:
        values[spec.name].append(value)
    else:
        values[spec.name] = value


def decode(message_type: type[M], data: bytes) -> M:
    """Decode a message of ``message_type`` from ``data``."""
    specs = _specs(message_type)
    by_tag = {spec.tag: spec for spec in specs}
    values: dict[str, Any] = {
        spec.name: [] if spec.repeated else _default_of(spec.kind) for spec in specs
    }
    reader = _Reader(bytes(data))
    while not reader.at_end():
        tag, wire = reader.key()
        spec = by_tag.get(tag)
        if spec is None:
            _skip(reader, wire, tag)
            continue
        try:
            _merge(spec, wire, reader, values)
        except DecodeError as exc:
            raise DecodeError(f"{message_type.__name__}.{spec.name}: {exc}") from None
    return message_type(**values)