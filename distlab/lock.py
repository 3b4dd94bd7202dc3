"""A distributed lock built on a versioned key/value clerk."""

from __future__ import annotations

import random
import string
import time
from typing import Protocol

from distlab.kvrpc import Err, Tversion

__all__ = ["Lock", "rand_value", "make_keys"]

_LETTERS = string.ascii_lowercase + string.ascii_uppercase


class _KVClerk(Protocol):
    def get(self, key: str) -> tuple[str, Tversion, Err]: ...

    def put(self, key: str, value: str, version: Tversion) -> Err: ...


def rand_value(n: int) -> str:
    """A random string of ``n`` ASCII letters."""
    return "".join(random.choice(_LETTERS) for _ in range(n))


def make_keys(n: int) -> list[str]:
    """Keys ``k0`` .. ``k{n-1}``."""
    return [f"k{i}" for i in range(n)]


class Lock:
    """A lock stored under one key: empty when free, the holder's id when held."""

    def __init__(self, ck: _KVClerk, name: str, retry_interval: float = 0.1) -> None:
        self._ck = ck
        self.name = name
        self.owner = rand_value(8)
        self._retry_interval = retry_interval

    def _value(self) -> str:
        return self._ck.get(self.name)[0]

    def acquire(self) -> None:
        """Block until this lock object holds the lock."""
        while True:
            value, version, _ = self._ck.get(self.name)
            if value == "":
                err = self._ck.put(self.name, self.owner, version)
                if err in (Err.OK, Err.ERR_MAYBE) and self._value() == self.owner:
                    return
            elif value == self.owner:
                return
            time.sleep(self._retry_interval)

    def release(self) -> None:
        """Free the lock if this lock object holds it."""
        while True:
            value, version, _ = self._ck.get(self.name)
            if value == self.owner:
                err = self._ck.put(self.name, "", version)
                if err in (Err.OK, Err.ERR_MAYBE) and self._value() == "":
                    return
            elif value == "":
                return
            time.sleep(self._retry_interval)

    def __enter__(self) -> Lock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()