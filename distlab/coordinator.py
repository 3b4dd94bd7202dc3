"""MapReduce coordinator: hands out map and reduce tasks and tracks their completion."""

from __future__ import annotations

import contextlib
import os
import random
import socketserver
import threading
import time
from typing import Any, Callable, Iterable

from distlab.mrrpc import (
    EXAMPLE,
    ExampleArgs,
    ExampleReply,
    RPCError,
    TaskType,
    coordinator_sock,
    from_wire,
    read_message,
    to_wire,
    write_message,
)

__all__ = ["TASK_TIMEOUT", "Coordinator", "make_coordinator"]

TASK_TIMEOUT = 10  # seconds before an unfinished task is handed out again


class _RequestHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        coordinator: Coordinator = self.server.coordinator  # type: ignore[attr-defined]
        try:
            while True:
                try:
                    message = read_message(self.rfile)
                except RPCError as exc:
                    write_message(self.wfile, {"error": str(exc)})
                    return
                if message is None:
                    return
                write_message(self.wfile, coordinator._handle(message))
        except OSError:
            return


class _UnixServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, path: str, coordinator: Coordinator) -> None:
        self.coordinator = coordinator
        super().__init__(path, _RequestHandler)


class Coordinator:
    """Assigns map tasks (one per input file), then reduce tasks, to workers."""

    def __init__(self, files: Iterable[str], n_reduce: int, clock: Callable[[], float] = time.time) -> None:
        self.filenames = list(files)
        self.n_reduce = n_reduce
        self._available_map = list(range(len(self.filenames)))
        self._available_reduce = list(range(n_reduce))
        self._done_map: set[int] = set()
        self._done_reduce: set[int] = set()
        self._map_started: dict[int, int] = {}
        self._reduce_started: dict[int, int] = {}
        self._please_exit = False
        self._clock = clock
        self._rng = random.Random()
        self._cond = threading.Condition()
        self._server: _UnixServer | None = None
        self._thread: threading.Thread | None = None
        self._sockname: str | None = None

    def _now(self) -> int:
        return int(self._clock())

    def _requeue_stale(self, started: dict[int, int], available: list[int]) -> None:
        now = self._now()
        for task_id, stamp in list(started.items()):
            if now - stamp > TASK_TIMEOUT:
                del started[task_id]
                available.append(task_id)

    def example(self, args: ExampleArgs) -> ExampleReply:
        """Record the task the worker finished and hand it the next one."""
        reply = ExampleReply()
        with self._cond:
            reply.worker_id = args.worker_id or self._rng.randrange(1, 2**63)
            if args.task_id != -1:
                if args.task_type == TaskType.MAP:
                    self._map_started.pop(args.task_id, None)
                    self._done_map.add(args.task_id)
                elif args.task_type == TaskType.REDUCE:
                    self._reduce_started.pop(args.task_id, None)
                    self._done_reduce.add(args.task_id)
            if len(self._done_reduce) == self.n_reduce:
                self._please_exit = True
                self._cond.notify_all()
            reply.please_exit = self._please_exit

            if len(self._done_map) == len(self.filenames):
                if not self._available_reduce:
                    self._requeue_stale(self._reduce_started, self._available_reduce)
                if not self._available_reduce:
                    return reply
                task_id = self._available_reduce.pop()
                reply.task_type = TaskType.REDUCE
                reply.task_id = task_id
                reply.n_reduce = self.n_reduce
                self._reduce_started[task_id] = self._now()
            else:
                if not self._available_map:
                    self._requeue_stale(self._map_started, self._available_map)
                if not self._available_map:
                    return reply
                task_id = self._available_map.pop()
                reply.task_type = TaskType.MAP
                reply.task_id = task_id
                reply.filename = self.filenames[task_id]
                reply.n_reduce = self.n_reduce
                self._map_started[task_id] = self._now()
        return reply

    def _handle(self, message: dict[str, Any]) -> dict[str, Any]:
        method = message.get("method")
        if method != EXAMPLE:
            return {"error": f"rpc: can't find method {method}"}
        try:
            args = from_wire(ExampleArgs, message.get("args") or {})
        except (TypeError, AttributeError) as exc:
            return {"error": f"rpc: bad arguments: {exc}"}
        return {"reply": to_wire(self.example(args))}

    def serve(self) -> None:
        """Listen for worker calls on the coordinator socket in a background thread."""
        if self._server is not None:
            raise RuntimeError("coordinator is already serving")
        sockname = coordinator_sock()
        with contextlib.suppress(FileNotFoundError):
            os.remove(sockname)
        server = _UnixServer(sockname, self)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        self._server, self._thread, self._sockname = server, thread, sockname

    def done(self) -> bool:
        """Block until every reduce task has finished, then return True."""
        with self._cond:
            self._cond.wait_for(lambda: len(self._done_reduce) >= self.n_reduce)
            print("coordinator: condition is being signaled")
            self._please_exit = True
            return True

    def close(self) -> None:
        """Stop serving and remove the socket."""
        server, thread, sockname = self._server, self._thread, self._sockname
        self._server = self._thread = self._sockname = None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join()
        if sockname is not None:
            with contextlib.suppress(FileNotFoundError):
                os.remove(sockname)

    def __enter__(self) -> Coordinator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def make_coordinator(files: Iterable[str], n_reduce: int) -> Coordinator:
    """Create a coordinator for the input files and start serving."""
    coordinator = Coordinator(files, n_reduce)
    coordinator.serve()
    return coordinator