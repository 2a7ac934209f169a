"""A key/value store model and a parser for its textual operation logs."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from labkit.model import Event, EventKind, Model, Operation


class Op(enum.Enum):
    """Operations a key/value client may issue."""

    GET = "get"
    PUT = "put"
    APPEND = "append"


@dataclass(frozen=True)
class KvInput:
    """The request half of a key/value operation."""

    op: Op
    key: str
    value: str = ""


@dataclass(frozen=True)
class KvOutput:
    """The response half of a key/value operation."""

    value: str = ""


def _input_of(event: Event) -> KvInput:
    if not isinstance(event.value, KvInput):
        raise TypeError(f"event {event.id} does not carry an input")
    return event.value


class KvModel(Model[str, KvInput, KvOutput]):
    """Sequential specification of a single key's value, partitioned by key."""

    def partition(
        self, history: Sequence[Operation[KvInput, KvOutput]]
    ) -> list[list[Operation[KvInput, KvOutput]]]:
        groups: dict[str, list[Operation[KvInput, KvOutput]]] = {}
        for operation in history:
            groups.setdefault(operation.input.key, []).append(operation)
        return list(groups.values())

    def partition_event(self, history: Sequence[Event]) -> list[list[Event]]:
        groups: dict[str, list[Event]] = {}
        keys: dict[int, str] = {}
        for event in history:
            if event.kind is EventKind.CALL:
                key = _input_of(event).key
                keys[event.id] = key
            else:
                try:
                    key = keys[event.id]
                except KeyError:
                    raise ValueError(
                        f"return event {event.id} has no matching call"
                    ) from None
            groups.setdefault(key, []).append(event)
        return list(groups.values())

    def init(self) -> str:
        # One key's value is modelled; histories are partitioned by key.
        return ""

    def step(self, state: str, input: KvInput, output: KvOutput) -> tuple[bool, str]:
        if input.op is Op.GET:
            return output.value == state, state
        if input.op is Op.PUT:
            return True, input.value
        return True, state + input.value


_INVOKE_GET = re.compile(
    r'\{:process (\d+), :type :invoke, :f :get, :key "(.*)", :value nil\}'
)
_INVOKE_PUT = re.compile(
    r'\{:process (\d+), :type :invoke, :f :put, :key "(.*)", :value "(.*)"\}'
)
_INVOKE_APPEND = re.compile(
    r'\{:process (\d+), :type :invoke, :f :append, :key "(.*)", :value "(.*)"\}'
)
_RETURN_GET = re.compile(
    r'\{:process (\d+), :type :ok, :f :get, :key ".*", :value "(.*)"\}'
)
_RETURN_PUT = re.compile(
    r'\{:process (\d+), :type :ok, :f :put, :key ".*", :value ".*"\}'
)
_RETURN_APPEND = re.compile(
    r'\{:process (\d+), :type :ok, :f :append, :key ".*", :value ".*"\}'
)


def parse_kv_log(lines: Iterable[str]) -> list[Event]:
    """Parse a key/value operation log into call and return events.

    Operations still pending at the end of the log get a return event with an
    empty value.
    """
    events: list[Event] = []
    pending: dict[int, int] = {}
    next_id = 0

    def finish(process: str, value: str) -> None:
        try:
            match_id = pending.pop(int(process))
        except KeyError:
            raise ValueError(f"process {process} returned without an invocation") from None
        events.append(Event(EventKind.RETURN, KvOutput(value), match_id))

    for raw in lines:
        line = raw.rstrip("\r\n")
        invoke = None
        if args := _INVOKE_GET.search(line):
            invoke = (args[1], KvInput(Op.GET, args[2], ""))
        elif args := _INVOKE_PUT.search(line):
            invoke = (args[1], KvInput(Op.PUT, args[2], args[3]))
        elif args := _INVOKE_APPEND.search(line):
            invoke = (args[1], KvInput(Op.APPEND, args[2], args[3]))
        elif args := _RETURN_GET.search(line):
            finish(args[1], args[2])
        elif args := (_RETURN_PUT.search(line) or _RETURN_APPEND.search(line)):
            finish(args[1], "")
        else:
            raise ValueError(f"unrecognised log line: {line!r}")
        if invoke is not None:
            process, kv_input = invoke
            events.append(Event(EventKind.CALL, kv_input, next_id))
            pending[int(process)] = next_id
            next_id += 1

    for match_id in pending.values():
        events.append(Event(EventKind.RETURN, KvOutput(""), match_id))
    return events