import os
import shutil
import socket
import tempfile
import threading

import pytest

from distlab.coordinator import TASK_TIMEOUT, Coordinator, make_coordinator
from distlab.mrrpc import (
    EXAMPLE,
    SOCK_ENV,
    ExampleArgs,
    ExampleReply,
    TaskType,
    from_wire,
    read_message,
    to_wire,
    write_message,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def sock_path(monkeypatch):
    path = tempfile.mkdtemp(prefix="mr", dir="/tmp")
    sock = os.path.join(path, "coord.sock")
    monkeypatch.setenv(SOCK_ENV, sock)
    yield sock
    shutil.rmtree(path, ignore_errors=True)


def report(c, reply):
    return c.example(ExampleArgs(task_id=reply.task_id, task_type=reply.task_type, worker_id=reply.worker_id))


def raw_call(sock, message):
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
        s.connect(sock)
        with s.makefile("rwb") as stream:
            write_message(stream, message)
            return read_message(stream)


def test_first_request_gets_last_map_task():
    files = ["x.txt", "y.txt"]
    c = Coordinator(files, 2)
    reply = c.example(ExampleArgs(task_id=-1))
    assert reply.task_type == TaskType.MAP
    assert reply.task_id == len(files) - 1
    assert reply.filename == files[-1]
    assert reply.n_reduce == 2
    assert reply.worker_id > 0
    assert reply.please_exit is False


def test_worker_id_is_kept():
    c = Coordinator(["x"], 1)
    reply = c.example(ExampleArgs(task_id=-1, worker_id=77))
    assert reply.worker_id == 77


def test_no_task_when_all_maps_in_progress():
    c = Coordinator(["x"], 1)
    c.example(ExampleArgs(task_id=-1))
    reply = c.example(ExampleArgs(task_id=-1))
    assert reply.task_type == TaskType.NONE


def test_full_lifecycle():
    files = ["x", "y"]
    c = Coordinator(files, 2)
    m1 = c.example(ExampleArgs(task_id=-1))
    m2 = c.example(ExampleArgs(task_id=-1, worker_id=m1.worker_id))
    assert {m1.task_id, m2.task_id} == set(range(len(files)))
    assert {m1.filename, m2.filename} == set(files)

    idle = report(c, m1)
    assert idle.task_type == TaskType.NONE

    r1 = report(c, m2)
    assert r1.task_type == TaskType.REDUCE
    r2 = c.example(ExampleArgs(task_id=-1, worker_id=r1.worker_id))
    assert r2.task_type == TaskType.REDUCE
    assert {r1.task_id, r2.task_id} == {0, 1}
    assert r1.n_reduce == 2

    mid = report(c, r1)
    assert mid.please_exit is False
    assert mid.task_type == TaskType.NONE

    last = report(c, r2)
    assert last.please_exit is True
    assert last.task_type == TaskType.NONE
    assert c.done() is True


def test_no_files_goes_straight_to_reduce():
    c = Coordinator([], 1)
    reply = c.example(ExampleArgs(task_id=-1))
    assert reply.task_type == TaskType.REDUCE
    assert reply.task_id == 0


def test_zero_reduce_tasks_means_exit():
    c = Coordinator([], 0)
    reply = c.example(ExampleArgs(task_id=-1))
    assert reply.please_exit is True
    assert c.done() is True


def test_stale_map_task_is_reassigned():
    clock = FakeClock()
    c = Coordinator(["x", "y"], 1, clock=clock)
    c.example(ExampleArgs(task_id=-1))
    c.example(ExampleArgs(task_id=-1))
    clock.now += TASK_TIMEOUT
    assert c.example(ExampleArgs(task_id=-1)).task_type == TaskType.NONE
    clock.now += 1
    again = c.example(ExampleArgs(task_id=-1))
    assert again.task_type == TaskType.MAP
    assert again.filename == ["x", "y"][again.task_id]


def test_stale_reduce_task_is_reassigned():
    clock = FakeClock()
    c = Coordinator(["x"], 1, clock=clock)
    m = c.example(ExampleArgs(task_id=-1))
    r = report(c, m)
    assert r.task_type == TaskType.REDUCE
    assert c.example(ExampleArgs(task_id=-1)).task_type == TaskType.NONE
    clock.now += TASK_TIMEOUT + 1
    again = c.example(ExampleArgs(task_id=-1))
    assert again.task_type == TaskType.REDUCE
    assert again.task_id == r.task_id


def test_done_blocks_until_reduces_finish():
    c = Coordinator(["x"], 1)
    result = []
    t = threading.Thread(target=lambda: result.append(c.done()), daemon=True)
    t.start()
    t.join(0.2)
    assert t.is_alive()
    m = c.example(ExampleArgs(task_id=-1))
    r = report(c, m)
    report(c, r)
    t.join(5)
    assert result == [True]


def test_serve_answers_calls(sock_path):
    with Coordinator(["in.txt"], 3) as c:
        c.serve()
        response = raw_call(sock_path, {"method": EXAMPLE, "args": to_wire(ExampleArgs(task_id=-1))})
        reply = from_wire(ExampleReply, response["reply"])
        assert reply.task_type == TaskType.MAP
        assert reply.filename == "in.txt"
        assert reply.n_reduce == 3


def test_unknown_method_gets_error(sock_path):
    with Coordinator(["in.txt"], 1) as c:
        c.serve()
        response = raw_call(sock_path, {"method": "Coordinator.Nope", "args": {}})
        assert "error" in response
        assert "reply" not in response


def test_close_removes_socket(sock_path):
    c = make_coordinator(["in.txt"], 1)
    assert os.path.exists(sock_path)
    reply = c.example(ExampleArgs(task_id=-1))
    assert reply.task_type == TaskType.MAP
    assert reply.filename == "in.txt"
    c.close()
    assert not os.path.exists(sock_path)


def test_serve_replaces_stale_socket_file(sock_path):
    with open(sock_path, "w") as f:
        f.write("stale")
    with make_coordinator([], 1):
        response = raw_call(sock_path, {"method": EXAMPLE, "args": to_wire(ExampleArgs(task_id=-1))})
        assert response["reply"]["task_type"] == TaskType.REDUCE


def test_serve_twice_raises(sock_path):
    with make_coordinator([], 1) as c:
        with pytest.raises(RuntimeError):
            c.serve()