"""A small sample message used to exercise the codec."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from labkit.codec import FieldKind, Message, field


class MsgType(enum.IntEnum):
    """Kinds of operation a :class:`Msg` carries."""

    UNKNOWN = 0
    PUT = 1
    GET = 2
    DEL = 3

    @classmethod
    def is_valid(cls, value: int) -> bool:
        """Whether ``value`` names a member of the enumeration."""
        return value in {member.value for member in cls}


@dataclass
class Msg(Message):
    """A simple protobuf message."""

    type: int = field(1, FieldKind.ENUM)
    id: int = field(2, FieldKind.UINT64)
    name: str = field(3, FieldKind.STRING)
    payload: list[bytes] = field(4, FieldKind.BYTES, repeated=True)

    def msg_type(self) -> MsgType:
        """The enum value of ``type``, or the default when it is not valid."""
        if MsgType.is_valid(self.type):
            return MsgType(self.type)
        return MsgType.UNKNOWN

    def set_type(self, value: MsgType | int) -> None:
        """Set ``type`` to the given enum value."""
        self.type = int(MsgType(value))