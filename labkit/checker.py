"""Linearizability checking of operation and event histories."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, NamedTuple, Sequence

from labkit.bitset import Bitset
from labkit.model import Event, EventKind, Model, Operation


class _Entry(NamedTuple):
    kind: EventKind
    value: Any
    id: int
    time: int


@dataclass(eq=False)
class _Node:
    value: Any
    id: int
    match: _Node | None = None
    next: _Node | None = None
    prev: _Node | None = None


def _entries_from_operations(history: Sequence[Operation]) -> list[_Entry]:
    entries = []
    for op_id, operation in enumerate(history):
        entries.append(_Entry(EventKind.CALL, operation.input, op_id, operation.call))
        entries.append(
            _Entry(EventKind.RETURN, operation.output, op_id, operation.finish)
        )
    entries.sort(key=lambda entry: entry.time)
    return entries


def _renumber(events: Sequence[Event]) -> list[Event]:
    ids: dict[int, int] = {}
    return [
        Event(event.kind, event.value, ids.setdefault(event.id, len(ids)))
        for event in events
    ]


def _entries_from_events(events: Sequence[Event]) -> list[_Entry]:
    return [_Entry(event.kind, event.value, event.id, -1) for event in events]


def _link(entries: Sequence[_Entry]) -> _Node:
    """Build the doubly linked history behind a sentinel head node."""
    head: _Node | None = None
    returns: dict[int, _Node] = {}
    for entry in reversed(entries):
        node = _Node(entry.value, entry.id)
        if entry.kind is EventKind.CALL:
            node.match = returns.get(entry.id)
        else:
            returns[entry.id] = node
        node.next = head
        if head is not None:
            head.prev = node
        head = node
    sentinel = _Node(None, -1, next=head)
    if head is not None:
        head.prev = sentinel
    return sentinel


def _lift(entry: _Node) -> None:
    entry.prev.next = entry.next
    entry.next.prev = entry.prev
    match = entry.match
    match.prev.next = match.next
    if match.next is not None:
        match.next.prev = match.prev


def _unlift(entry: _Node) -> None:
    match = entry.match
    match.prev.next = match
    if match.next is not None:
        match.next.prev = match
    entry.prev.next = entry
    entry.next.prev = entry


def _check_single(model: Model, entries: Sequence[_Entry], kill: threading.Event) -> bool:
    linearized = Bitset(len(entries) // 2)
    cache: dict[Bitset, list[Any]] = {}
    calls: list[tuple[_Node, Any]] = []
    state = model.init()
    head = _link(entries)
    entry = head.next
    while head.next is not None:
        if kill.is_set():
            return False
        if entry.match is not None:
            ok, new_state = model.step(state, entry.value, entry.match.value)
            if ok:
                candidate = linearized.copy()
                candidate.set(entry.id)
                seen = cache.setdefault(candidate, [])
                if not any(model.equal(new_state, old) for old in seen):
                    seen.append(new_state)
                    calls.append((entry, state))
                    state = new_state
                    linearized.set(entry.id)
                    _lift(entry)
                    entry = head.next
                    continue
            entry = entry.next
        else:
            if not calls:
                return False
            entry, state = calls.pop()
            linearized.clear(entry.id)
            _unlift(entry)
            entry = entry.next
    return True


def _seconds(timeout: float | timedelta) -> float | None:
    if isinstance(timeout, timedelta):
        timeout = timeout.total_seconds()
    return timeout if timeout > 0 else None


def _check_all(
    model: Model,
    builders: list[Callable[[], list[_Entry]]],
    timeout: float | timedelta,
) -> bool:
    if not builders:
        return True
    kill = threading.Event()
    results: queue.Queue = queue.Queue()

    def work(build: Callable[[], list[_Entry]]) -> None:
        try:
            results.put((None, _check_single(model, build(), kill)))
        except BaseException as exc:  # re-raised in the waiting thread
            results.put((exc, False))

    threads = [
        threading.Thread(target=work, args=(build,), daemon=True) for build in builders
    ]
    for thread in threads:
        thread.start()
    try:
        return _wait(results, kill, len(threads), _seconds(timeout))
    finally:
        for thread in threads:
            thread.join()


def _wait(
    results: queue.Queue, kill: threading.Event, count: int, timeout: float | None
) -> bool:
    ok = True
    while True:
        try:
            error, result = results.get(timeout=timeout)
        except queue.Empty:
            kill.set()
            break
        if error is not None:
            kill.set()
            raise error
        ok = ok and result
        if not ok:
            kill.set()
            break
        count -= 1
        if count == 0:
            break
    return ok


def check_operations(
    model: Model, history: Sequence[Operation], timeout: float | timedelta = 0.0
) -> bool:
    """Whether a history of timed operations is linearizable under ``model``.

    A ``timeout`` of zero waits without limit; when the timeout expires the
    check answers ``True``, which may be a false positive.
    """
    return _check_all(
        model,
        [
            lambda part=part: _entries_from_operations(part)
            for part in model.partition(history)
        ],
        timeout,
    )


def check_events(
    model: Model, history: Sequence[Event], timeout: float | timedelta = 0.0
) -> bool:
    """Whether an ordered history of call and return events is linearizable.

    A ``timeout`` of zero waits without limit; when the timeout expires the
    check answers ``True``, which may be a false positive.
    """
    return _check_all(
        model,
        [
            lambda part=part: _entries_from_events(_renumber(part))
            for part in model.partition_event(history)
        ],
        timeout,
    )