"""In-memory transport for tests: every mock transport shares one broadcast network."""

from __future__ import annotations

import sys
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TextIO

from .constants import SDU, TP_MTU, TP_NOOP_ADDR, TargetAddressType, TpStatus
from .util import millis, time_after

MAX_NUM_TP = 16
NUM_MSGS = 8
_U32_MASK = 0xFFFFFFFF


@dataclass
class MockArgs:
    """Addresses of a mock transport."""

    sa_phys: int  # physical messages are sent from this address
    ta_phys: int  # physical messages are sent to this address
    sa_func: int  # functional messages are sent from this address
    ta_func: int  # functional messages are sent to this address


def default_client_args() -> MockArgs:
    """Addresses of a client talking to the default server."""
    return MockArgs(sa_phys=0x7E8, ta_phys=0x7E0, sa_func=TP_NOOP_ADDR, ta_func=0x7DF)


def default_server_args() -> MockArgs:
    """Addresses of a server answering the default client."""
    return MockArgs(sa_phys=0x7E0, ta_phys=0x7E8, sa_func=0x7DF, ta_func=TP_NOOP_ADDR)


@dataclass
class _Message:
    data: bytes
    info: SDU
    scheduled_tx_time: int


class MockTransport:
    """A transport attached to a :class:`MockNetwork`."""

    def __init__(self, network: MockNetwork, name: str, args: MockArgs) -> None:
        self._network = network
        self.name = name
        self.sa_phys = args.sa_phys
        self.ta_phys = args.ta_phys
        self.sa_func = args.sa_func
        self.ta_func = args.ta_func
        self.send_tx_delay_ms = 0
        self.recv_buf = b""
        self.recv_info = SDU()

    def peek(self) -> tuple[bytes, SDU]:
        """Return the received message (empty if none) and its addressing."""
        return self.recv_buf, replace(self.recv_info)

    def send(self, data: bytes, info: SDU | None = None) -> int:
        """Queue ``data`` on the network and return its length."""
        return self._network._enqueue(self, bytes(data), info)

    def poll(self) -> TpStatus:
        """Let the network deliver due messages."""
        self._network.poll()
        return TpStatus.IDLE

    def ack_recv(self) -> None:
        """Discard the received message so the next one can arrive."""
        self.recv_buf = b""


class MockNetwork:
    """A broadcast network joining mock transports in the same process."""

    def __init__(self, clock: Callable[[], int] | None = None) -> None:
        self._clock = clock or millis
        self.transports: list[MockTransport] = []
        self._messages: list[_Message] = []
        self._log: TextIO | None = None
        self._owns_log = False

    def _now(self) -> int:
        return self._clock() & _U32_MASK

    def _log_msg(self, prefix: str, data: bytes, info: SDU) -> None:
        if self._log is None:
            return
        kind = "phys" if info.a_ta_type == TargetAddressType.PHYSICAL else "func"
        body = "".join(f"{byte:02x} " for byte in data)
        self._log.write(f"{self._now():06d}, {prefix} sends, 0x{info.a_ta:03x} ({kind}), {body}\n")
        self._log.flush()

    def new_transport(self, name: str | None, args: MockArgs) -> MockTransport:
        """Create a transport attached to this network."""
        if len(self.transports) >= MAX_NUM_TP:
            raise RuntimeError(f"too many transports: at most {MAX_NUM_TP}")
        if name is None:
            name = f"TPMock{len(self.transports)}"
        transport = MockTransport(self, name, args)
        self.transports.append(transport)
        return transport

    def free(self, transport: MockTransport) -> None:
        """Detach ``transport`` from the network."""
        try:
            self.transports.remove(transport)
        except ValueError:
            raise ValueError(f"transport {transport.name} is not attached") from None

    def _enqueue(self, sender: MockTransport, data: bytes, info: SDU | None) -> int:
        if len(self._messages) >= NUM_MSGS:
            raise RuntimeError("too many messages in the queue")
        if len(data) > TP_MTU:
            raise ValueError(f"message of {len(data)} bytes exceeds {TP_MTU}")
        ta_type = (
            TargetAddressType.PHYSICAL if info is None else TargetAddressType(info.a_ta_type)
        )
        if ta_type == TargetAddressType.PHYSICAL:
            ta, sa = sender.ta_phys, sender.sa_phys
        else:
            ta, sa = sender.ta_func, sender.sa_func
        sdu = SDU(a_ta=ta, a_sa=sa, a_ta_type=ta_type, a_ae=0 if info is None else info.a_ae)
        scheduled = (self._now() + sender.send_tx_delay_ms) & _U32_MASK
        self._messages.append(_Message(data, sdu, scheduled))
        self._log_msg(sender.name, data, sdu)
        return len(data)

    def poll(self) -> None:
        """Deliver every message whose transmit time has passed."""
        pending = []
        for msg in self._messages:
            if not time_after(self._now(), msg.scheduled_tx_time):
                pending.append(msg)
                continue
            for transport in self.transports:
                if msg.info.a_ta not in (transport.sa_phys, transport.sa_func):
                    continue
                if transport.recv_buf:
                    print(
                        f"TPMock: {transport.name} recv buffer is already full. Message dropped",
                        file=sys.stderr,
                    )
                    continue
                transport.recv_buf = msg.data
                transport.recv_info = replace(msg.info)
            self._log_msg("network", msg.data, msg.info)
        self._messages = pending

    def log_to_file(self, filename: str) -> None:
        """Write every message to ``filename``, which is overwritten."""
        if self._log is not None:
            raise RuntimeError("log file is already open")
        if filename is None:
            raise ValueError("filename is None")
        self._log = open(filename, "w", encoding="utf-8")
        self._owns_log = True

    def log_to_stdout(self) -> None:
        """Write every message to standard output unless a log is already set."""
        if self._log is not None:
            return
        self._log = sys.stdout
        self._owns_log = False

    def reset(self) -> None:
        """Detach all transports and close the log."""
        self.transports.clear()
        if self._log is not None and self._owns_log:
            self._log.close()
        self._log = None
        self._owns_log = False