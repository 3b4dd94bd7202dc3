# distlab

A self-contained toolkit for experimenting with distributed-systems ideas in
plain Python. It has no third-party dependencies.

## What is in it

- **`distlab.labrpc`**: an in-process simulated network. It provides
  `Network`, `ClientEnd`, `Server` and `Service`. The network can drop and
  delay requests and replies, and it can reorder replies by holding them back.
  You can disable endpoints and delete servers while calls are in flight.
  It counts RPCs (`get_count`, `get_total_count`) and bytes
  (`get_total_bytes`). A lost call raises `RPCLost`. An unknown service or
  method raises `RPCDispatchError`.
- **`distlab.labgob`**: a framed encoder and decoder (`LabEncoder`,
  `LabDecoder`) for dataclasses, enums, lists, tuples, dicts, bytes and plain
  values. Register dataclasses and enums with `register` or `register_name`.
  It prints a warning about dataclass fields whose names start with an
  underscore, because those fields are not transmitted. It also prints a
  warning when you decode into an instance that already holds non-default
  values. `error_count()` reports how many such reports were made.
- **`distlab.kvrpc`**: the request and reply types of the key/value service
  (`PutArgs`, `PutReply`, `GetArgs`, `GetReply`) and the `Err` enum.
- **`distlab.kvsrv`**: a versioned key/value server (`KVServer`) and a
  retrying client (`Clerk`).
  - A `put` succeeds only when the caller's version matches the stored one.
  - A `put` to a missing key creates it at version 1, but only when the
    caller's version is 0.
  - When the clerk has had to resend a `put` and then meets a version
    mismatch, it reports `ErrMaybe`.
- **`distlab.lock`**: a `Lock` built on any clerk that has `get` and `put`.
  It can be used as a context manager. The module also has the helpers
  `rand_value(n)` and `make_keys(n)`.
- **`distlab.kvmodel`**: a sequential model of the key/value service for
  checking histories. It provides `KvInput`, `KvOutput`, `KvState`,
  `Operation`, a thread-safe `OpLog`, and the functions `partition`,
  `init_state`, `step` and `describe_operation`.
- **`distlab.mrrpc`** and **`distlab.coordinator`**: the message types and the
  coordinator of a MapReduce job.
  - `make_coordinator(files, n_reduce)` starts a `Coordinator` that serves
    calls on a UNIX-domain socket. The path is given by `coordinator_sock()`.
    You can override it with the `MR_COORDINATOR_SOCK` environment variable.
  - The coordinator hands out one map task per input file. Once every map
    task has finished, it hands out the reduce tasks. It hands out a task
    again if the task has been outstanding for more than ten seconds.
  - `done()` blocks until every reduce task has finished. `close()` stops
    the server and removes the socket.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Example

```python
from distlab.labrpc import Network, Server, Service
from distlab.kvsrv import KVServer, Clerk
from distlab.kvrpc import Err

net = Network()
server = Server()
server.add_service(Service(KVServer()))
net.add_server("kv", server)

end = net.make_end("client")
net.connect("client", "kv")
net.enable("client", True)

ck = Clerk(end)
assert ck.put("k", "v", 0) == Err.OK
print(ck.get("k"))   # ('v', 1, <Err.OK: 'OK'>)
net.cleanup()
```

## Coordinator protocol

A worker talks to the coordinator over its socket with one JSON object per
line. The call looks like this:

```
{"method": "Coordinator.Example", "args": {...}}
```

Here `args` holds the fields of `ExampleArgs`. Set `task_id` to -1 when no
task has been finished yet.

The coordinator answers in one of two forms:

- `{"reply": {...}}`, holding the fields of `ExampleReply`.
- `{"error": "..."}`.

`ExampleReply.task_type` says what to do next, as a `TaskType` value:

- `MAP`: a map task.
- `REDUCE`: a reduce task.
- `NONE`: no task is available yet.

`please_exit` is true once the job is finished.

## What this package does not do

The package contains the MapReduce coordinator and its wire protocol, but
nothing else on that side:

- There is no worker that runs map and reduce tasks.
- There are no ready-made map and reduce applications.
- There is no single-process MapReduce runner.
- It installs no command-line programs.

To run a job, you need to write your own worker that speaks the protocol
above.