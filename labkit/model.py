"""Histories and the model interface for linearizability checking."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Generic, Sequence, TypeVar

S = TypeVar("S")
I = TypeVar("I")  # noqa: E741
O = TypeVar("O")  # noqa: E741
T = TypeVar("T")


class EventKind(enum.Enum):
    """Whether an event is the invocation or the completion of an operation."""

    CALL = "call"
    RETURN = "return"


@dataclass
class Event(Generic[T]):
    """One half of an operation; ``value`` is its input or its output."""

    kind: EventKind
    value: T
    id: int


@dataclass
class Operation(Generic[I, O]):
    """A completed operation with its invocation and response times."""

    input: I
    call: int
    output: O
    finish: int


class Model(ABC, Generic[S, I, O]):
    """A sequential specification against which histories are checked."""

    def partition(self, history: Sequence[Operation[I, O]]) -> list[list[Operation[I, O]]]:
        """Split a history so it is linearizable iff every part is."""
        return [list(history)]

    def partition_event(self, history: Sequence[Event]) -> list[list[Event]]:
        """Split an event history so it is linearizable iff every part is."""
        return [list(history)]

    @abstractmethod
    def init(self) -> S:
        """Initial state of the system."""

    @abstractmethod
    def step(self, state: S, input: I, output: O) -> tuple[bool, S]:
        """Whether the step is allowed, and the resulting state.

        Must not mutate ``state``.
        """

    def equal(self, state1: S, state2: S) -> bool:
        """Equality on states."""
        return state1 == state2