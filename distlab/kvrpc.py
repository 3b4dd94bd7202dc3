"""Request and reply types shared by key/value clerks and servers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

Tversion = int


class Err(str, Enum):
    """Outcome of a key/value operation."""

    OK = "OK"
    ERR_NO_KEY = "ErrNoKey"
    ERR_VERSION = "ErrVersion"
    # Returned by a clerk only.
    ERR_MAYBE = "ErrMaybe"
    # Used by replicated and sharded services.
    ERR_WRONG_LEADER = "ErrWrongLeader"
    ERR_WRONG_GROUP = "ErrWrongGroup"

    def __str__(self) -> str:
        return self.value


@dataclass
class PutArgs:
    """Arguments of a conditional put."""

    key: str = ""
    value: str = ""
    version: Tversion = 0


@dataclass
class PutReply:
    """Reply to a put; ``err`` is None until the server fills it in."""

    err: Err | None = None


@dataclass
class GetArgs:
    """Arguments of a get."""

    key: str = ""


@dataclass
class GetReply:
    """Reply to a get: the value, its version and the outcome."""

    value: str = ""
    version: Tversion = 0
    err: Err | None = None