"""Messages exchanged between MapReduce workers and the coordinator.

A call travels over a UNIX-domain stream socket as one JSON object per line:
``{"method": ..., "args": {...}}`` from the worker, answered by either
``{"reply": {...}}`` or ``{"error": "..."}``.
"""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, BinaryIO, TypeVar

__all__ = [
    "SOCK_ENV",
    "EXAMPLE",
    "REPLY_TYPES",
    "TaskType",
    "RPCError",
    "ExampleArgs",
    "ExampleReply",
    "coordinator_sock",
    "to_wire",
    "from_wire",
    "write_message",
    "read_message",
]

SOCK_ENV = "MR_COORDINATOR_SOCK"
EXAMPLE = "Coordinator.Example"

T = TypeVar("T")


class TaskType(IntEnum):
    """Kind of task handed to a worker, or reported back as finished."""

    NONE = 0
    MAP = 1
    REDUCE = 2


class RPCError(Exception):
    """A call failed: the coordinator refused it or the connection broke."""


@dataclass
class ExampleArgs:
    """What a worker sends: the task it just finished (-1 for none) and its id."""

    task_id: int = 0
    task_type: int = TaskType.NONE
    worker_id: int = 0


@dataclass
class ExampleReply:
    """What the coordinator answers: the next task, if any, and whether to exit."""

    task_type: int = TaskType.NONE
    task_id: int = 0
    filename: str = ""
    n_reduce: int = 0
    please_exit: bool = False
    worker_id: int = 0


REPLY_TYPES: dict[str, type] = {EXAMPLE: ExampleReply}


def coordinator_sock() -> str:
    """Path of the coordinator's UNIX-domain socket.

    The ``MR_COORDINATOR_SOCK`` environment variable overrides the default
    per-user path under /var/tmp.
    """
    override = os.environ.get(SOCK_ENV)
    if override:
        return override
    return f"/var/tmp/5840-mr-{os.getuid()}"


def to_wire(value: Any) -> dict[str, Any]:
    """The fields of a message dataclass as a JSON-ready dict."""
    return dataclasses.asdict(value)


def from_wire(cls: type[T], data: dict[str, Any]) -> T:
    """Build a message dataclass from a dict, ignoring unknown fields."""
    names = {f.name for f in dataclasses.fields(cls)}
    return cls(**{key: item for key, item in data.items() if key in names})


def write_message(stream: BinaryIO, message: dict[str, Any]) -> None:
    """Write one message as a JSON line and flush it."""
    stream.write(json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n")
    stream.flush()


def read_message(stream: BinaryIO) -> dict[str, Any] | None:
    """Read one message; None at end of stream."""
    line = stream.readline()
    if not line:
        return None
    if not line.endswith(b"\n"):
        raise RPCError("truncated message")
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise RPCError(f"malformed message: {exc}") from exc
    if not isinstance(message, dict):
        raise RPCError("malformed message: not an object")
    return message