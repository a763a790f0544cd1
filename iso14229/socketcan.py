"""ISO-TP transport over a raw SocketCAN socket, with segmentation done in user space."""

from __future__ import annotations

import logging
import socket
import struct
import sys
from typing import TextIO

from .constants import ISOTP_MTU, SDU, TargetAddressType, TpStatus
from .isotp import IsoTpLink, IsoTpNoDataError
from .isotp_c import peek_link
from .isotp_frames import (
    CAN_FRAME_LEN,
    RET_ERROR,
    RET_OK,
    SINGLE_FRAME_DATA_LEN,
    ReceiveStatus,
    SendStatus,
)
from .util import millis

logger = logging.getLogger(__name__)

# struct can_frame: can_id (u32), can_dlc (u8), 3 bytes padding, data[8]
_CAN_FRAME = struct.Struct("=IB3x8s")


def open_can_socket(ifname: str) -> socket.socket:
    """Open a non-blocking raw CAN socket bound to interface ``ifname``."""
    logger.debug("setting up CAN")
    sock = socket.socket(socket.PF_CAN, socket.SOCK_RAW, socket.CAN_RAW)
    try:
        sock.setblocking(False)
        sock.bind((ifname,))
    except OSError:
        sock.close()
        raise
    return sock


def _format_line(tag: str, verb: str, ta: int, ta_type: TargetAddressType, data: bytes) -> str:
    kind = "phys" if ta_type == TargetAddressType.PHYSICAL else "func"
    body = "".join(f"{byte:02x} " for byte in data)
    return f"{millis():06d}, {tag} {verb}, 0x{ta:03x} ({kind}), {body}\n"


class SocketCanTransport:
    """A UDS transport with a physical and a functional ISO-TP link on one CAN socket.

    Every message sent or received is logged as one line to :attr:`log`
    (standard output when it is ``None``).
    """

    def __init__(
        self,
        ifname: str,
        source_addr: int,
        target_addr: int,
        source_addr_func: int,
        target_addr_func: int,
        tag: str = "",
        sock: socket.socket | None = None,
    ) -> None:
        self.tag = tag
        self.log: TextIO | None = None
        self.phys_sa = source_addr
        self.phys_ta = target_addr
        self.func_sa = source_addr_func
        self.func_ta = target_addr
        self.sock = sock if sock is not None else open_can_socket(ifname)
        self.phys_link = IsoTpLink(
            target_addr, ISOTP_MTU, ISOTP_MTU, millis, self._send_can, logger.debug
        )
        self.func_link = IsoTpLink(
            target_addr_func, ISOTP_MTU, ISOTP_MTU, millis, self._send_can, logger.debug
        )

    def __enter__(self) -> SocketCanTransport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _write_log(self, line: str) -> None:
        stream = self.log if self.log is not None else sys.stdout
        stream.write(line)
        stream.flush()

    def _send_can(self, arbitration_id: int, frame: bytes) -> int:
        packed = _CAN_FRAME.pack(arbitration_id, len(frame), bytes(frame))
        try:
            written = self.sock.send(packed)
        except OSError as exc:
            logger.error("Write err: %s", exc)
            return RET_ERROR
        if written != len(packed):
            logger.error("Write err: short write of %d bytes", written)
            return RET_ERROR
        return RET_OK

    def _receive_frames(self) -> None:
        while True:
            try:
                raw = self.sock.recv(_CAN_FRAME.size)
            except BlockingIOError:
                return
            except OSError as exc:
                logger.error("read: %s", exc)
                return
            if not raw:
                return
            if len(raw) < _CAN_FRAME.size:
                continue
            can_id, dlc, payload = _CAN_FRAME.unpack(raw)
            data = payload[:min(dlc, CAN_FRAME_LEN)]
            if can_id == self.phys_sa:
                logger.debug("phys recvd can %s", data.hex(","))
                self.phys_link.on_can_message(data)
            elif can_id == self.func_sa:
                if self.phys_link.receive_status != ReceiveStatus.IDLE:
                    logger.debug(
                        "func frame received but cannot process because link is not idle"
                    )
                    return
                self.func_link.on_can_message(data)

    def poll(self) -> TpStatus:
        """Read pending CAN frames, drive the physical link and report its send state."""
        self._receive_frames()
        self.phys_link.poll()
        if self.phys_link.send_status == SendStatus.IN_PROGRESS:
            return TpStatus.SEND_IN_PROGRESS
        return TpStatus.IDLE

    def peek(self) -> tuple[bytes, SDU | None]:
        """Return a received message and its addressing, or ``(b"", None)``."""
        data = peek_link(self.phys_link)
        if data:
            info = SDU(a_ta=self.phys_sa, a_sa=self.phys_ta, a_ta_type=TargetAddressType.PHYSICAL)
        else:
            data = peek_link(self.func_link)
            if not data:
                return b"", None
            info = SDU(
                a_ta=self.func_sa, a_sa=self.func_ta, a_ta_type=TargetAddressType.FUNCTIONAL
            )
        self._write_log(_format_line(self.tag, "recv", info.a_ta, info.a_ta_type, data))
        return data, info

    def send(self, data: bytes, info: SDU | None = None) -> int:
        """Send ``data`` physically, or functionally if ``info`` asks so; return its length."""
        data = bytes(data)
        ta_type = (
            TargetAddressType.PHYSICAL if info is None else TargetAddressType(info.a_ta_type)
        )
        ta = self.phys_ta if ta_type == TargetAddressType.PHYSICAL else self.func_ta
        try:
            if ta_type == TargetAddressType.PHYSICAL:
                self.phys_link.send(data)
            else:
                if len(data) > SINGLE_FRAME_DATA_LEN:
                    raise ValueError(
                        f"cannot send more than {SINGLE_FRAME_DATA_LEN} bytes "
                        "via functional addressing"
                    )
                self.func_link.send(data)
        finally:
            self._write_log(_format_line(self.tag, "sends", ta, ta_type, data))
        return len(data)

    def ack_recv(self) -> None:
        """Release the physical link's received message."""
        logger.debug("ack recv")
        try:
            self.phys_link.receive()
        except IsoTpNoDataError:
            pass

    def close(self) -> None:
        """Close the CAN socket."""
        self.sock.close()