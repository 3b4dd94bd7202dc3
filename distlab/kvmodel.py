"""Sequential model of a versioned key/value store and a log of client operations."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

__all__ = [
    "KvOp",
    "KvInput",
    "KvOutput",
    "KvState",
    "Operation",
    "OpLog",
    "partition",
    "init_state",
    "step",
    "describe_operation",
]


class KvOp(IntEnum):
    """Kind of a recorded operation."""

    GET = 0
    PUT = 1


@dataclass(frozen=True)
class KvInput:
    """What a client asked for."""

    op: int
    key: str
    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class KvOutput:
    """What a client got back."""

    value: str = ""
    version: int = 0
    err: str = ""


@dataclass(frozen=True)
class KvState:
    """State of a single key in the model."""

    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class Operation:
    """One client operation with its call and return times in nanoseconds."""

    input: KvInput
    output: KvOutput
    call_time: int = 0
    return_time: int = 0
    client_id: int = 0


class OpLog:
    """Thread-safe, append-only list of operations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._operations: list[Operation] = []

    def append(self, op: Operation) -> None:
        with self._lock:
            self._operations.append(op)

    def read(self) -> list[Operation]:
        """A copy of the operations recorded so far."""
        with self._lock:
            return list(self._operations)

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)


def partition(history: list[Operation]) -> list[list[Operation]]:
    """Split a history by key, in sorted key order, keeping each key's order."""
    by_key: dict[str, list[Operation]] = defaultdict(list)
    for op in history:
        by_key[op.input.key].append(op)
    return [by_key[key] for key in sorted(by_key)]


def init_state() -> KvState:
    """State of a key that was never written."""
    return KvState("", 0)


def step(state: KvState, inp: KvInput, out: KvOutput) -> tuple[bool, Any]:
    """Whether ``out`` is a legal result of ``inp`` in ``state``, and the next state."""
    if inp.op == KvOp.GET:
        return out.value == state.value, state
    if inp.op == KvOp.PUT:
        if state.version == inp.version:
            return out.err in ("OK", "ErrMaybe"), KvState(inp.value, state.version + 1)
        return out.err in ("ErrVersion", "ErrMaybe"), state
    return False, state


def describe_operation(inp: KvInput, out: KvOutput) -> str:
    """Human-readable form of an operation and its result."""
    if inp.op == KvOp.GET:
        return f"get('{inp.key}') -> ('{out.value}', '{out.version}', '{out.err}')"
    if inp.op == KvOp.PUT:
        return f"put('{inp.key}', '{inp.value}', '{inp.version}') -> ('{out.err}')"
    return "<invalid>"