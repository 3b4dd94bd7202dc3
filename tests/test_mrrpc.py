import io
import os

import pytest

from distlab.mrrpc import (
    EXAMPLE,
    REPLY_TYPES,
    SOCK_ENV,
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


def test_task_type_values_fixed_by_protocol():
    wire = [to_wire(ExampleArgs(task_type=t))["task_type"] for t in (TaskType.NONE, TaskType.MAP, TaskType.REDUCE)]
    assert wire == [0, 1, 2]
    assert from_wire(ExampleArgs, {"task_type": 2}).task_type == TaskType.REDUCE


def test_default_socket_path(monkeypatch):
    monkeypatch.delenv(SOCK_ENV, raising=False)
    assert coordinator_sock() == "/var/tmp/5840-mr-" + str(os.getuid())


def test_socket_path_override(monkeypatch):
    monkeypatch.setenv(SOCK_ENV, "/tmp/some-coordinator.sock")
    assert coordinator_sock() == "/tmp/some-coordinator.sock"


def test_args_round_trip():
    args = ExampleArgs(task_id=3, task_type=TaskType.REDUCE, worker_id=42)
    assert from_wire(ExampleArgs, to_wire(args)) == args


def test_reply_round_trip_through_stream():
    reply = ExampleReply(
        task_type=TaskType.MAP, task_id=2, filename="pg-x.txt", n_reduce=10, please_exit=False, worker_id=9
    )
    buf = io.BytesIO()
    write_message(buf, {"reply": to_wire(reply)})
    buf.seek(0)
    message = read_message(buf)
    assert from_wire(ExampleReply, message["reply"]) == reply
    assert read_message(buf) is None


def test_from_wire_ignores_unknown_fields():
    args = from_wire(ExampleArgs, {"task_id": 5, "bogus": 1})
    assert args == ExampleArgs(task_id=5)


def test_several_messages_in_order():
    buf = io.BytesIO()
    write_message(buf, {"method": "a"})
    write_message(buf, {"method": "b"})
    buf.seek(0)
    assert [read_message(buf)["method"], read_message(buf)["method"]] == ["a", "b"]


def test_malformed_json_raises():
    with pytest.raises(RPCError):
        read_message(io.BytesIO(b"{not json\n"))


def test_non_object_raises():
    with pytest.raises(RPCError):
        read_message(io.BytesIO(b"[1, 2]\n"))


def test_truncated_line_raises():
    with pytest.raises(RPCError):
        read_message(io.BytesIO(b'{"method": "x"}'))


def test_example_reply_type_registered():
    assert REPLY_TYPES[EXAMPLE] is ExampleReply
    reply = ExampleReply(
        task_type=TaskType.REDUCE, task_id=4, filename="", n_reduce=2, please_exit=True, worker_id=1
    )
    assert from_wire(REPLY_TYPES[EXAMPLE], to_wire(reply)) == reply