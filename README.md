# iso14229

Building blocks for UDS (ISO 14229) diagnostics over ISO-TP (ISO 15765-2).
The package uses only the Python standard library.

## Modules

- `iso14229.constants`: service identifiers (`ServiceId`), negative response
  codes (`NegativeResponseCode`), session, reset, security-access and other
  sub-function types, result codes (`UDSError`), server events
  (`ServerEvent`), timing defaults such as `CLIENT_DEFAULT_P2_MS`, the `SDU`
  addressing record, `TargetAddressType`, `TpStatus`, and
  `response_sid_of` / `request_sid_of`.
- `iso14229.util`: `millis()` returns the wall-clock time in milliseconds
  truncated to 32 bits. `time_after(a, b)` compares 32-bit timestamps and
  tolerates wrap-around. `security_access_level_is_reserved(level)` reports
  whether a security level is reserved.
- `iso14229.isotp_frames`: PCI types, flow and link status enums, STmin
  conversion (`ms_to_st_min`, `st_min_to_ms`), `pci_type`, and encoders for
  single, first, consecutive and flow-control frames.
- `iso14229.isotp`: `IsoTpLink`, an ISO-TP segmentation and reassembly state
  machine. You drive it with a clock callback and a CAN send callback.
- `iso14229.mock`: `MockNetwork` and `MockTransport`, an in-memory broadcast
  network for tests.
- `iso14229.isotp_c`: `IsoTpCTransport`, a transport built on two
  `IsoTpLink`s, one for physical addressing and one for functional
  addressing. You pass incoming CAN frames to its links yourself.
- `iso14229.socketcan`: `SocketCanTransport`, the same two-link transport on a
  raw Linux CAN socket (`open_can_socket`).
- `iso14229.isotp_sock`: `IsoTpSockTransport`, a transport on Linux kernel
  ISO-TP sockets (`open_isotp_socket`). Build one with
  `IsoTpSockTransport.server(...)` or `IsoTpSockTransport.client(...)`.

Every transport has `poll()`, `peek()`, `send(data, info=None)` and
`ack_recv()`:

- `peek()` returns `(data, sdu)`. When nothing has been received it returns
  empty bytes, and the SDU is `None` for the ISO-TP transports.
- `send` addresses the message physically unless `info.a_ta_type` is
  `TargetAddressType.FUNCTIONAL`.
- The ISO-TP transports raise `ValueError` for functional messages longer
  than 7 bytes.

`SocketCanTransport` and `IsoTpSockTransport` write one line for every message
they send or receive, either to their `log` attribute or to standard output.
Both can be used as context managers, which close their sockets on exit.

## Installation

```
pip install .
```

## A mock network

```python
from iso14229.mock import MockNetwork, default_client_args, default_server_args
from iso14229.constants import SDU, TargetAddressType

now = 0
net = MockNetwork(clock=lambda: now)
client = net.new_transport("client", default_client_args())
server = net.new_transport("server", default_server_args())

client.send(b"\x10\x02", SDU(a_ta_type=TargetAddressType.FUNCTIONAL))
now += 1
server.poll()

data, info = server.peek()
assert data == b"\x10\x02"
assert info.a_ta_type is TargetAddressType.FUNCTIONAL
server.ack_recv()
```

A network can hold at most 16 transports and 8 queued messages. Going past
either limit raises `RuntimeError`. A transport drops a message when it
already holds one that has not been released with `ack_recv()`.
`net.log_to_stdout()` or `net.log_to_file(path)` records each message, and
`net.reset()` detaches all transports and closes the log.

## An ISO-TP link

```python
from iso14229.isotp import IsoTpLink

frames = []
link = IsoTpLink(
    send_arbitration_id=0x7E0,
    send_buf_size=4095,
    receive_buf_size=4095,
    get_ms=lambda: 0,
    send_can=lambda can_id, data: frames.append((can_id, data)),
    debug=print,
)
link.send(b"\x22\xF1\x90")
# frames == [(0x7E0, b"\x03\x22\xf1\x90\x00\x00\x00\x00")]
```

Pass incoming CAN frames to `link.on_can_message(data)`, and call
`link.poll()` regularly. `poll()` sends pending consecutive frames and checks
for timeouts. `link.receive()` returns a completed payload.

Errors are raised as exceptions derived from `IsoTpError`:

- `IsoTpOverflowError` when a payload is larger than the send buffer.
- `IsoTpInProgressError` when a transmission is already running.
- `IsoTpNoDataError` when `receive()` is called with no complete message.

## What the package does not do

The package has no UDS client and no UDS server. It does not build requests,
parse responses, handle services or track sessions. It provides the protocol
constants and the transports on which such a client or server would run.
It installs no command.

## Running the tests

```
pip install ".[test]"
pytest
```