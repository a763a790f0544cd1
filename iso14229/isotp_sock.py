"""Transport over Linux kernel ISO-TP sockets (CAN_ISOTP), one for physical, one for functional."""

from __future__ import annotations

import errno
import logging
import socket
import struct
import sys
from dataclasses import replace
from typing import TextIO

from .constants import ISOTP_MTU, SDU, TargetAddressType, TpStatus
from .isotp_frames import SINGLE_FRAME_DATA_LEN
from .util import millis

logger = logging.getLogger(__name__)

# Values from <linux/can/isotp.h>; not all are exported by the socket module.
_CAN_ISOTP = getattr(socket, "CAN_ISOTP", 6)
_SOL_CAN_BASE = 100
SOL_CAN_ISOTP = _SOL_CAN_BASE + _CAN_ISOTP
CAN_ISOTP_OPTS = 1
CAN_ISOTP_RECV_FC = 2
CAN_ISOTP_LISTEN_MODE = 0x001
CAN_ISOTP_WAIT_TX_DONE = 0x400

# struct can_isotp_fc_options: bs, stmin, wftmax
_FC_OPTIONS = struct.Struct("=BBB")
# struct can_isotp_options: flags, frame_txtime, ext_address, txpad, rxpad, rx_ext_address
_ISOTP_OPTIONS = struct.Struct("=IIBBBB")


def open_isotp_socket(ifname: str, rxid: int, txid: int, functional: bool) -> socket.socket:
    """Open a non-blocking ISO-TP socket on ``ifname`` receiving ``rxid`` and sending ``txid``.

    A functional socket is put in listen mode so it sends no flow control frames.
    """
    sock = socket.socket(socket.AF_CAN, socket.SOCK_DGRAM, _CAN_ISOTP)
    try:
        sock.setblocking(False)
        sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_RECV_FC, _FC_OPTIONS.pack(0x10, 3, 0))
        # wait for tx completion to catch flow control frame timeouts
        flags = CAN_ISOTP_WAIT_TX_DONE
        if functional:
            logger.debug("configuring fd: %d as functional", sock.fileno())
            flags |= CAN_ISOTP_LISTEN_MODE
        sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_OPTS, _ISOTP_OPTIONS.pack(flags, 0, 0, 0, 0, 0))
        sock.bind((ifname, rxid, txid))
    except OSError:
        logger.debug("failed to set up ISO-TP socket on %s", ifname)
        sock.close()
        raise
    return sock


def _recv_once(sock: socket.socket) -> bytes:
    try:
        return sock.recv(ISOTP_MTU)
    except BlockingIOError:
        return b""
    except OSError as exc:
        logger.debug("read failed with errno: %s", exc.errno)
        if exc.errno == errno.EILSEQ:
            logger.debug("Perhaps multiple responses were received?")
        raise


class IsoTpSockTransport:
    """A UDS transport using the kernel's ISO-TP implementation.

    Every message sent or received is logged as one line to :attr:`log`
    (standard output when it is ``None``).
    """

    def __init__(
        self,
        phys_sock: socket.socket,
        func_sock: socket.socket,
        phys_sa: int,
        phys_ta: int,
        func_sa: int = 0,
        func_ta: int = 0,
        tag: str = "",
    ) -> None:
        self.phys_sock = phys_sock
        self.func_sock = func_sock
        self.phys_sa = phys_sa
        self.phys_ta = phys_ta
        self.func_sa = func_sa
        self.func_ta = func_ta
        self.tag = tag
        self.log: TextIO | None = None
        self.recv_buf = b""
        self.recv_info = SDU()

    @classmethod
    def server(
        cls,
        ifname: str,
        source_addr: int,
        target_addr: int,
        source_addr_func: int,
        tag: str = "",
    ) -> IsoTpSockTransport:
        """Open the sockets of a server answering on ``source_addr`` and ``source_addr_func``."""
        phys = open_isotp_socket(ifname, source_addr, target_addr, False)
        try:
            func = open_isotp_socket(ifname, source_addr_func, 0, True)
        except OSError:
            phys.close()
            raise
        transport = cls(phys, func, source_addr, target_addr, source_addr_func, 0, tag)
        logger.debug(
            "%s initialized phys link rx 0x%03x tx 0x%03x func link rx 0x%03x tx 0x%03x",
            tag or "server", source_addr, target_addr, source_addr_func, target_addr,
        )
        return transport

    @classmethod
    def client(
        cls,
        ifname: str,
        source_addr: int,
        target_addr: int,
        target_addr_func: int,
        tag: str = "",
    ) -> IsoTpSockTransport:
        """Open the sockets of a client talking to ``target_addr`` and ``target_addr_func``."""
        phys = open_isotp_socket(ifname, source_addr, target_addr, False)
        try:
            func = open_isotp_socket(ifname, 0, target_addr_func, True)
        except OSError:
            phys.close()
            raise
        transport = cls(phys, func, source_addr, target_addr, 0, target_addr_func, tag)
        logger.debug(
            "%s initialized phys link rx 0x%03x tx 0x%03x func link rx 0x%03x tx 0x%03x",
            tag or "client", source_addr, target_addr, source_addr, target_addr_func,
        )
        return transport

    def __enter__(self) -> IsoTpSockTransport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _write_log(self, line: str) -> None:
        stream = self.log if self.log is not None else sys.stdout
        stream.write(line)
        stream.flush()

    def poll(self) -> TpStatus:
        """Nothing to drive: the kernel does the ISO-TP work."""
        return TpStatus.IDLE

    def peek(self) -> tuple[bytes, SDU | None]:
        """Return the held or newly read message and its addressing, or ``(b"", None)``."""
        if self.recv_buf:
            return self.recv_buf, replace(self.recv_info)

        try:
            data = _recv_once(self.phys_sock)
        except OSError:
            data = b""
        if data:
            info = SDU(a_ta=self.phys_sa, a_sa=self.phys_ta, a_ta_type=TargetAddressType.PHYSICAL)
        else:
            data = _recv_once(self.func_sock)
            if not data:
                return b"", None
            info = SDU(
                a_ta=self.func_sa, a_sa=self.func_ta, a_ta_type=TargetAddressType.FUNCTIONAL
            )

        kind = "phys" if info.a_ta_type == TargetAddressType.PHYSICAL else "func"
        body = "".join(f"{byte:02x} " for byte in data)
        self._write_log(f"{millis():06d}, {self.tag} recv, 0x{info.a_ta:03x} ({kind}), {body}\n")
        self.recv_buf = data
        self.recv_info = info
        return data, replace(info)

    def ack_recv(self) -> None:
        """Discard the held message so the next one can be read."""
        self.recv_buf = b""

    def send(self, data: bytes, info: SDU | None = None) -> int:
        """Send ``data`` physically, or functionally if ``info`` asks so; return bytes written."""
        data = bytes(data)
        ta_type = (
            TargetAddressType.PHYSICAL if info is None else TargetAddressType(info.a_ta_type)
        )
        if ta_type == TargetAddressType.PHYSICAL:
            sock = self.phys_sock
        else:
            if len(data) > SINGLE_FRAME_DATA_LEN:
                raise ValueError("functional request too large")
            sock = self.func_sock
        try:
            return sock.send(data)
        finally:
            kind = "phys" if ta_type == TargetAddressType.PHYSICAL else "func"
            body = "".join(f"{byte:02x} " for byte in data)
            self._write_log(f"{millis():06d}, {self.tag} sends, ({kind}), {body}\n")

    def close(self) -> None:
        """Close both sockets."""
        for sock in (self.phys_sock, self.func_sock):
            try:
                sock.close()
            except OSError as exc:
                logger.error("failed to close socket: %s", exc)