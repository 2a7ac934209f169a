# labkit

Building blocks for distributed-systems coursework in Python. It has no
dependencies outside the standard library.

- **`labkit.codec`**: a small protocol-buffers wire codec. Declare message
  fields with `field(tag, kind, repeated=...)` on a dataclass that derives
  from `Message`, then use `encode(message)` and `decode(message_type, data)`.
  Scalar fields that hold their default value are left out, and repeated
  numeric fields are packed. Failures raise `EncodeError` or `DecodeError`.
- **`labkit.fixture`**: a sample message, `Msg`, and its `MsgType` enum.
- **`labkit.server`**, **`labkit.client`**, **`labkit.service`** and
  **`labkit.network`**: an in-process RPC network. The network can drop
  requests and replies, delay them, reorder them, disconnect clients and kill
  servers.
- **`labkit.errors`**: the `RpcError` family raised by failed calls.
- **`labkit.bitset`**, **`labkit.model`**, **`labkit.models`** and
  **`labkit.checker`**: a linearizability checker, a key/value model
  (`KvModel`) and a parser for Jepsen-style key/value logs (`parse_kv_log`).

## Installation

```
pip install .
```

To install the test dependencies as well:

```
pip install .[test]
```

## An echo service

```python
import asyncio
from dataclasses import dataclass

from labkit.codec import FieldKind, Message, field
from labkit.network import Network
from labkit.server import ServerBuilder
from labkit.service import Service, ServiceClient, add_service, rpc


@dataclass
class Echo(Message):
    x: int = field(1, FieldKind.INT64)


class EchoService(Service, name="echo"):
    @rpc(Echo, Echo)
    async def ping(self, req):
        return req


async def main():
    net = Network()
    builder = ServerBuilder("echo_server")
    add_service(EchoService(), builder)
    net.add_server(builder.build())

    client = ServiceClient(EchoService, net.create_client("client"))
    net.enable("client", True)
    net.connect("client", "echo_server")

    print(await client.ping(Echo(x=777)))


asyncio.run(main())
```

Each method call on a `ServiceClient` sends the request at once and returns
the pending reply. Await it, or block on it with `reply.result(timeout)`.

A new client starts disabled and connected to nothing. Use
`Network.enable` and `Network.connect` to change that. Other settings on
`Network` are:

- `set_reliable(False)`: drops and delays some requests and replies.
- `set_long_delays(True)`: makes requests from disabled clients wait up to
  seven seconds before they time out.
- `set_long_reordering(True)`: holds back some replies for a while.
- `delete_server(name)`: kills a server. Calls still running on it fail with
  `StoppedError`.

`count(server_name)` and `total_count()` report how many requests have been
handled. `Network.create()` returns a network that does not deliver requests
itself, together with its queue of incoming requests.

`RpcHooks` subclasses set on a client with `Client.set_hooks` run around the
dispatch of each of its requests. They can reject a request or replace a
reply.

Failed calls raise a subclass of `labkit.errors.RpcError`:

- `RpcTimeout`
- `StoppedError`
- `UnimplementedError`
- `CanceledError`
- `RpcEncodeError`
- `RpcDecodeError`
- `OtherError`

Two errors compare equal when they are of the same kind and carry the same
details.

## Checking linearizability

```python
from labkit.checker import check_events
from labkit.models import KvModel, parse_kv_log

with open("history.txt") as log:
    events = parse_kv_log(log)

print(check_events(KvModel(), events, 0))
```

`check_operations` does the same for a list of timed `Operation`s. To check a
different system, subclass `labkit.model.Model` and implement `init` and
`step`.

A timeout of `0` means the check runs with no time limit. When the timeout
expires, the check answers `True`, which can be a false positive.

## What it does not do

Everything runs inside one process. There is no real network transport, no
command-line tool, and no storage. The package provides the RPC framework,
the codec and the checker. It does not include consensus or transaction
services built on top of them.

## Running the tests

```
pytest
```