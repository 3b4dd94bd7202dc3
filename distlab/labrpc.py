"""In-process RPC over a simulated network.

The network can lose requests and replies, delay messages, and disconnect
particular client end-points. Arguments and replies travel encoded with
:mod:`distlab.labgob`, so a handler never shares objects with its caller.

A :class:`Network` holds client end-points and servers. A :class:`Server`
bundles one or more :class:`Service` objects, each wrapping a receiver whose
public one-argument methods become RPC handlers: ``handler(args) -> reply``.
``ClientEnd.call("Receiver.method", args)`` returns the handler's reply, or
raises :class:`RPCLost` when no reply arrived.
"""

from __future__ import annotations

import io
import queue
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from distlab.labgob import LabDecoder, LabEncoder

__all__ = [
    "SHORT_DELAY",
    "LONG_DELAY",
    "MAX_DELAY",
    "RPCLost",
    "RPCDispatchError",
    "ClientEnd",
    "Network",
    "Server",
    "Service",
]

SHORT_DELAY = 27  # ms
LONG_DELAY = 7000  # ms
MAX_DELAY = LONG_DELAY + 100

_POLL_INTERVAL = 0.1
_CO_VARARGS = 0x04


class RPCLost(ConnectionError):
    """No reply was received: the request or reply was lost, or the server is gone."""


class RPCDispatchError(LookupError):
    """The requested service or method does not exist on the server."""


def _encode(value: Any) -> bytes:
    buf = io.BytesIO()
    LabEncoder(buf).encode(value)
    return buf.getvalue()


def _decode(payload: bytes) -> Any:
    return LabDecoder(io.BytesIO(payload)).decode()


@dataclass(frozen=True)
class _Request:
    endname: Hashable
    svc_meth: str
    payload: bytes


@dataclass(frozen=True)
class _Outcome:
    payload: bytes = b""
    error: BaseException | None = None


class ClientEnd:
    """A client end-point that talks to whichever server it is connected to."""

    def __init__(self, endname: Hashable, network: Network) -> None:
        self.endname = endname
        self._network = network

    def call(self, svc_meth: str, args: Any) -> Any:
        """Send an RPC such as ``"Raft.append_entries"`` and wait for the reply.

        Raises RPCLost if no reply was received.
        """
        return self._network._send(self.endname, svc_meth, args)


class Network:
    """A simulated network of client end-points and servers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._rng_lock = threading.Lock()
        self._rng = random.Random()
        self._reliable = True
        self._long_delays = False
        self._long_reordering = False
        self._ends: dict[Hashable, ClientEnd] = {}
        self._enabled: dict[Hashable, bool] = {}
        self._servers: dict[Hashable, Server | None] = {}
        self._connections: dict[Hashable, Hashable] = {}
        self._done = threading.Event()
        self._count = 0
        self._bytes = 0

    def cleanup(self) -> None:
        """Shut the network down; later calls fail at once."""
        self._done.set()

    def reliable(self, yes: bool) -> None:
        with self._lock:
            self._reliable = yes

    def is_reliable(self) -> bool:
        with self._lock:
            return self._reliable

    def long_reordering(self, yes: bool) -> None:
        with self._lock:
            self._long_reordering = yes

    def long_delays(self, yes: bool) -> None:
        with self._lock:
            self._long_delays = yes

    def is_long_delays(self) -> bool:
        with self._lock:
            return self._long_delays

    def make_end(self, endname: Hashable) -> ClientEnd:
        """Create a disabled, unconnected client end-point."""
        with self._lock:
            if endname in self._ends:
                raise ValueError(f"end {endname!r} already exists")
            end = ClientEnd(endname, self)
            self._ends[endname] = end
            self._enabled[endname] = False
            self._connections[endname] = None
            return end

    def delete_end(self, endname: Hashable) -> None:
        with self._lock:
            if endname not in self._ends:
                raise KeyError(f"end {endname!r} doesn't exist")
            del self._ends[endname]
            self._enabled.pop(endname, None)
            self._connections.pop(endname, None)

    def add_server(self, servername: Hashable, server: Server) -> None:
        with self._lock:
            self._servers[servername] = server

    def delete_server(self, servername: Hashable) -> None:
        with self._lock:
            self._servers[servername] = None

    def connect(self, endname: Hashable, servername: Hashable) -> None:
        """Connect a client end-point to a server."""
        with self._lock:
            self._connections[endname] = servername

    def enable(self, endname: Hashable, enabled: bool) -> None:
        with self._lock:
            self._enabled[endname] = enabled

    def get_count(self, servername: Hashable) -> int:
        """Number of RPCs the named server has received."""
        with self._lock:
            server = self._servers.get(servername)
        if server is None:
            raise KeyError(f"no server {servername!r}")
        return server.get_count()

    def get_total_count(self) -> int:
        with self._stats_lock:
            return self._count

    def get_total_bytes(self) -> int:
        with self._stats_lock:
            return self._bytes

    def _randrange(self, n: int) -> int:
        with self._rng_lock:
            return self._rng.randrange(n)

    def _add_bytes(self, n: int) -> None:
        with self._stats_lock:
            self._bytes += n

    def _read_endname_info(self, endname: Hashable) -> tuple[bool, Hashable, Server | None, bool, bool]:
        with self._lock:
            enabled = self._enabled.get(endname, False)
            servername = self._connections.get(endname)
            server = self._servers.get(servername) if servername is not None else None
            return enabled, servername, server, self._reliable, self._long_reordering

    def _is_server_dead(self, endname: Hashable, servername: Hashable, server: Server) -> bool:
        with self._lock:
            return not self._enabled.get(endname, False) or self._servers.get(servername) is not server

    def _send(self, endname: Hashable, svc_meth: str, args: Any) -> Any:
        if self._done.is_set():
            raise RPCLost("network has been shut down")
        payload = _encode(args)
        with self._stats_lock:
            self._count += 1
            self._bytes += len(payload)
        reply = self._process(_Request(endname, svc_meth, payload))
        return _decode(reply)

    @staticmethod
    def _run_handler(server: Server, req: _Request, results: queue.Queue) -> None:
        try:
            results.put(_Outcome(payload=server._dispatch(req.svc_meth, req.payload)))
        except BaseException as exc:  # handed back to the caller
            results.put(_Outcome(error=exc))

    def _process(self, req: _Request) -> bytes:
        enabled, servername, server, reliable, long_reordering = self._read_endname_info(req.endname)

        if not (enabled and servername is not None and server is not None):
            # Simulate no reply and an eventual timeout.
            if self.is_long_delays():
                ms = self._randrange(LONG_DELAY)
            else:
                ms = self._randrange(100)
            self._done.wait(ms / 1000)
            raise RPCLost("no reply from server")

        if not reliable:
            time.sleep(self._randrange(SHORT_DELAY) / 1000)
            if self._randrange(1000) < 100:
                raise RPCLost("request dropped")

        # Run the handler in its own thread so that a killed server
        # yields a failure instead of blocking the caller.
        results: queue.Queue = queue.Queue(maxsize=1)
        threading.Thread(target=self._run_handler, args=(server, req, results), daemon=True).start()

        outcome: _Outcome | None = None
        dead = False
        while outcome is None and not dead:
            try:
                outcome = results.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                dead = self._is_server_dead(req.endname, servername, server)

        # Never reply once the server has been deleted, so a caller cannot
        # see success for work persisted into a superseded state.
        dead = self._is_server_dead(req.endname, servername, server)
        if outcome is None or dead:
            raise RPCLost("server was killed")
        if outcome.error is not None:
            raise outcome.error
        if not reliable and self._randrange(1000) < 100:
            raise RPCLost("reply dropped")
        if long_reordering and self._randrange(900) < 600:
            ms = 200 + self._randrange(1 + self._randrange(2000))
            time.sleep(ms / 1000)
        self._add_bytes(len(outcome.payload))
        return outcome.payload


class Server:
    """A collection of services sharing one RPC dispatcher."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, Service] = {}
        self._count = 0

    def add_service(self, service: Service) -> None:
        with self._lock:
            self._services[service.name] = service

    def get_count(self) -> int:
        """Number of RPCs this server has received."""
        with self._lock:
            return self._count

    def _dispatch(self, svc_meth: str, payload: bytes) -> bytes:
        with self._lock:
            self._count += 1
            service_name, _, method_name = svc_meth.rpartition(".")
            service = self._services.get(service_name)
            choices = sorted(self._services)
        if service is None:
            raise RPCDispatchError(
                f"unknown service {service_name!r} in {svc_meth!r}; expecting one of {choices}"
            )
        return service._dispatch(method_name, payload, svc_meth)


def _is_handler(fn: Callable[..., Any]) -> bool:
    """True if fn takes exactly one positional argument besides its receiver."""
    func = getattr(fn, "__func__", fn)
    code = getattr(func, "__code__", None)
    if code is None:
        return False
    if code.co_flags & _CO_VARARGS:
        return False
    receiver_args = 1 if func is not fn else 0
    kwdefaults = getattr(func, "__kwdefaults__", None) or {}
    kwonly = code.co_varnames[code.co_argcount : code.co_argcount + code.co_kwonlyargcount]
    if any(name not in kwdefaults for name in kwonly):
        return False
    return code.co_argcount - receiver_args == 1


def _class_attribute(cls: type, name: str) -> Any:
    for klass in cls.__mro__:
        if name in klass.__dict__:
            return klass.__dict__[name]
    return None


class Service:
    """An object whose public one-argument methods can be called by RPC."""

    def __init__(self, receiver: Any, name: str | None = None) -> None:
        self.name = name or type(receiver).__name__
        self._methods: dict[str, Callable[[Any], Any]] = {}
        for attr in dir(type(receiver)):
            if attr.startswith("_"):
                continue
            if isinstance(_class_attribute(type(receiver), attr), property):
                continue
            bound = getattr(receiver, attr)
            if callable(bound) and not isinstance(bound, type) and _is_handler(bound):
                self._methods[attr] = bound

    def _dispatch(self, method_name: str, payload: bytes, svc_meth: str) -> bytes:
        method = self._methods.get(method_name)
        if method is None:
            raise RPCDispatchError(
                f"unknown method {method_name!r} in {svc_meth!r}; expecting one of {sorted(self._methods)}"
            )
        reply = method(_decode(payload))
        return _encode(reply)