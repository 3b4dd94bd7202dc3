"""Single key/value server with versioned conditional puts, and its clerk."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from distlab.kvrpc import Err, GetArgs, GetReply, PutArgs, PutReply, Tversion
from distlab.labrpc import RPCLost

__all__ = ["KVServer", "Clerk", "RETRY_INTERVAL"]

RETRY_INTERVAL = 0.1  # seconds between attempts after a lost RPC


class _Endpoint(Protocol):
    def call(self, svc_meth: str, args: Any) -> Any: ...


@dataclass(frozen=True)
class _Entry:
    value: str
    version: Tversion


class KVServer:
    """In-memory store in which every key carries a version number."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._mem: dict[str, _Entry] = {}

    def get(self, args: GetArgs) -> GetReply:
        """Return the value and version of ``args.key``, or ErrNoKey."""
        with self._lock:
            entry = self._mem.get(args.key)
        if entry is None:
            return GetReply(err=Err.ERR_NO_KEY)
        return GetReply(value=entry.value, version=entry.version, err=Err.OK)

    def put(self, args: PutArgs) -> PutReply:
        """Install the value if the versions match.

        A missing key is created (at version 1) only when ``args.version`` is
        0; otherwise ErrNoKey. A version mismatch on an existing key gives
        ErrVersion.
        """
        with self._lock:
            entry = self._mem.get(args.key)
            if entry is None:
                if args.version != 0:
                    return PutReply(err=Err.ERR_NO_KEY)
                self._mem[args.key] = _Entry(args.value, 1)
                return PutReply(err=Err.OK)
            if args.version != entry.version:
                return PutReply(err=Err.ERR_VERSION)
            self._mem[args.key] = _Entry(args.value, entry.version + 1)
            return PutReply(err=Err.OK)

    def kill(self) -> None:
        """Nothing to stop for a single in-memory server."""


class Clerk:
    """Client of a KVServer that retries lost RPCs."""

    def __init__(self, end: _Endpoint, retry_interval: float = RETRY_INTERVAL) -> None:
        self._end = end
        self._retry_interval = retry_interval

    def get(self, key: str) -> tuple[str, Tversion, Err]:
        """Fetch ``(value, version, err)`` for a key, retrying until a reply arrives."""
        args = GetArgs(key=key)
        while True:
            try:
                reply = self._end.call("KVServer.get", args)
            except RPCLost:
                time.sleep(self._retry_interval)
                continue
            return reply.value, reply.version, reply.err

    def put(self, key: str, value: str, version: Tversion) -> Err:
        """Conditionally update a key.

        ErrVersion on the first attempt is reported as is; ErrVersion after a
        resend becomes ErrMaybe, since the earlier attempt may have been
        applied with its reply lost.
        """
        args = PutArgs(key=key, value=value, version=version)
        retried = False
        while True:
            try:
                reply = self._end.call("KVServer.put", args)
            except RPCLost:
                retried = True
                time.sleep(self._retry_interval)
                continue
            if reply.err != Err.ERR_VERSION:
                return reply.err
            return Err.ERR_MAYBE if retried else Err.ERR_VERSION