"""Transport over two ISO-TP links (physical and functional) fed with CAN frames by the user."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from .constants import ISOTP_MTU, SDU, TargetAddressType, TpStatus
from .isotp import IsoTpLink, IsoTpNoDataError
from .isotp_frames import SINGLE_FRAME_DATA_LEN, ReceiveStatus, SendStatus
from .util import millis


@dataclass
class IsoTpCConfig:
    """Addresses and callbacks of an :class:`IsoTpCTransport`.

    ``send_can(arbitration_id, frame)`` transmits one CAN frame.
    """

    source_addr: int
    target_addr: int
    source_addr_func: int
    target_addr_func: int
    send_can: Callable[[int, bytes], int | None]
    debug: Callable[[str], None] | None = None


def peek_link(link: IsoTpLink) -> bytes:
    """Return the complete message held by ``link``, or empty bytes if there is none."""
    if link.receive_status == ReceiveStatus.FULL:
        return bytes(link.receive_buffer[:link.receive_size])
    return b""


class IsoTpCTransport:
    """A UDS transport built from a physical and a functional ISO-TP link.

    Incoming CAN frames are passed to ``phys_link.on_can_message`` or
    ``func_link.on_can_message`` by the caller.
    """

    def __init__(self, config: IsoTpCConfig, get_ms: Callable[[], int] | None = None) -> None:
        get_ms = get_ms or millis
        self.phys_sa = config.source_addr
        self.phys_ta = config.target_addr
        self.func_sa = config.source_addr_func
        self.func_ta = config.target_addr_func
        self.phys_link = IsoTpLink(
            self.phys_ta, ISOTP_MTU, ISOTP_MTU, get_ms, config.send_can, config.debug
        )
        self.func_link = IsoTpLink(
            self.func_ta, ISOTP_MTU, ISOTP_MTU, get_ms, config.send_can, config.debug
        )

    def poll(self) -> TpStatus:
        """Drive the physical link and report whether a send is in progress."""
        self.phys_link.poll()
        if self.phys_link.send_status == SendStatus.IN_PROGRESS:
            return TpStatus.SEND_IN_PROGRESS
        return TpStatus.IDLE

    def peek(self) -> tuple[bytes, SDU | None]:
        """Return a received message and its addressing, or ``(b"", None)``."""
        data = peek_link(self.phys_link)
        if data:
            return data, SDU(
                a_ta=self.phys_sa, a_sa=self.phys_ta, a_ta_type=TargetAddressType.PHYSICAL
            )
        data = peek_link(self.func_link)
        if data:
            return data, SDU(
                a_ta=self.func_sa, a_sa=self.func_ta, a_ta_type=TargetAddressType.FUNCTIONAL
            )
        return b"", None

    def send(self, data: bytes, info: SDU | None = None) -> int:
        """Send ``data`` physically, or functionally if ``info`` asks so; return its length."""
        ta_type = (
            TargetAddressType.PHYSICAL if info is None else TargetAddressType(info.a_ta_type)
        )
        if ta_type == TargetAddressType.PHYSICAL:
            link = self.phys_link
        else:
            if len(data) > SINGLE_FRAME_DATA_LEN:
                raise ValueError(
                    f"cannot send more than {SINGLE_FRAME_DATA_LEN} bytes via functional addressing"
                )
            link = self.func_link
        link.send(bytes(data))
        return len(data)

    def ack_recv(self) -> None:
        """Release the physical link's received message."""
        try:
            self.phys_link.receive()
        except IsoTpNoDataError:
            pass