"""ISO-TP (ISO 15765-2) link: segmentation, reassembly and flow control over CAN frames."""

from collections.abc import Callable

from .isotp_frames import (
    CAN_FRAME_LEN,
    CONSECUTIVE_FRAME_DATA_LEN,
    DEFAULT_BLOCK_SIZE,
    DEFAULT_RESPONSE_TIMEOUT,
    DEFAULT_ST_MIN,
    FIRST_FRAME_DATA_LEN,
    FLOW_CONTROL_LEN,
    FRAME_PADDING,
    INVALID_BS,
    MAX_WFT_NUMBER,
    RET_ERROR,
    RET_INPROGRESS,
    RET_LENGTH,
    RET_NO_DATA,
    RET_OK,
    RET_OVERFLOW,
    RET_WRONG_SN,
    FlowStatus,
    PciType,
    ProtocolResult,
    ReceiveStatus,
    SendStatus,
    encode_consecutive_frame,
    encode_first_frame,
    encode_flow_control,
    encode_single_frame,
    st_min_to_ms,
)
from .util import time_after

_U32_MASK = 0xFFFFFFFF

SendCan = Callable[[int, bytes], "int | None"]


class IsoTpError(Exception):
    """An ISO-TP link operation failed; ``code`` holds the link return code."""

    def __init__(self, message: str, code: int = RET_ERROR) -> None:
        super().__init__(message)
        self.code = code


class IsoTpOverflowError(IsoTpError):
    """The payload does not fit in the link's send buffer."""

    def __init__(self, message: str) -> None:
        super().__init__(message, RET_OVERFLOW)


class IsoTpInProgressError(IsoTpError):
    """A multi-frame transmission is still in progress."""

    def __init__(self, message: str) -> None:
        super().__init__(message, RET_INPROGRESS)


class IsoTpNoDataError(IsoTpError):
    """No complete message has been received."""

    def __init__(self, message: str) -> None:
        super().__init__(message, RET_NO_DATA)


def _no_debug(message: str) -> None:
    return None


class IsoTpLink:
    """One ISO-TP connection between this node and a peer on a CAN bus.

    ``send_can(arbitration_id, frame)`` transmits one CAN frame and returns
    ``None`` or ``RET_OK`` on success, any other integer on failure.
    ``get_ms()`` returns the current time in milliseconds.
    """

    def __init__(
        self,
        send_arbitration_id: int,
        send_buf_size: int,
        receive_buf_size: int,
        get_ms: Callable[[], int],
        send_can: SendCan,
        debug: Callable[[str], None] | None = None,
    ) -> None:
        self.send_arbitration_id = send_arbitration_id
        self.send_buf_size = send_buf_size
        self.receive_buf_size = receive_buf_size
        self._get_ms = get_ms
        self._send_can = send_can
        self._debug = debug or _no_debug

        self.send_buffer = b""
        self.send_size = 0
        self.send_offset = 0
        self.send_sn = 0
        self.send_bs_remain = 0
        self.send_st_min = 0
        self.send_wtf_count = 0
        self.send_timer_st = 0
        self.send_timer_bs = 0
        self.send_protocol_result = ProtocolResult.OK
        self.send_status = SendStatus.IDLE

        self.receive_buffer = bytearray(receive_buf_size)
        self.receive_size = 0
        self.receive_offset = 0
        self.receive_sn = 0
        self.receive_bs_count = 0
        self.receive_timer_cr = 0
        self.receive_protocol_result = ProtocolResult.OK
        self.receive_status = ReceiveStatus.IDLE

    # -- helpers -------------------------------------------------------------

    def _now(self) -> int:
        return self._get_ms() & _U32_MASK

    def _deadline(self, delay_ms: int) -> int:
        return (self._now() + delay_ms) & _U32_MASK

    def _transmit(self, arbitration_id: int, frame: bytes) -> int:
        ret = self._send_can(arbitration_id, frame)
        return RET_OK if ret is None else ret

    def _send_flow_control(self, flow_status: FlowStatus, block_size: int, st_min_ms: int) -> int:
        frame = encode_flow_control(flow_status, block_size, st_min_ms, FRAME_PADDING)
        return self._transmit(self.send_arbitration_id, frame)

    def _send_consecutive_frame(self) -> int:
        chunk = self.send_buffer[
            self.send_offset:self.send_offset + CONSECUTIVE_FRAME_DATA_LEN
        ]
        frame = encode_consecutive_frame(self.send_sn, chunk, FRAME_PADDING)
        ret = self._transmit(self.send_arbitration_id, frame)
        if ret == RET_OK:
            self.send_offset += len(chunk)
            self.send_sn = (self.send_sn + 1) & 0x0F
        return ret

    # -- sending -------------------------------------------------------------

    def send(self, payload: bytes) -> None:
        """Send ``payload`` to the link's own arbitration id."""
        self.send_with_id(self.send_arbitration_id, payload)

    def send_with_id(self, arbitration_id: int, payload: bytes) -> None:
        """Start sending ``payload``; the first or only frame goes to ``arbitration_id``.

        A single frame is sent at once; further frames of a multi-frame
        message are sent by :meth:`poll`.
        """
        size = len(payload)
        if size > self.send_buf_size:
            self._debug("Message size too large. Increase the send buffer size\n")
            raise IsoTpOverflowError(
                f"attempted to send {size} bytes; max size is {self.send_buf_size}"
            )
        if self.send_status == SendStatus.IN_PROGRESS:
            self._debug("Abort previous message, transmission in progress.\n")
            raise IsoTpInProgressError("transmission in progress")

        self.send_buffer = bytes(payload)
        self.send_size = size
        self.send_offset = 0

        if size < CAN_FRAME_LEN:
            ret = self._transmit(arbitration_id, encode_single_frame(self.send_buffer, FRAME_PADDING))
        else:
            ret = self._transmit(arbitration_id, encode_first_frame(size, self.send_buffer))
            if ret == RET_OK:
                self.send_offset = FIRST_FRAME_DATA_LEN
                self.send_sn = 1
                self.send_bs_remain = 0
                self.send_st_min = 0
                self.send_wtf_count = 0
                self.send_timer_st = self._now()
                self.send_timer_bs = self._deadline(DEFAULT_RESPONSE_TIMEOUT)
                self.send_protocol_result = ProtocolResult.OK
                self.send_status = SendStatus.IN_PROGRESS
        if ret != RET_OK:
            raise IsoTpError(f"CAN frame transmission failed with code {ret}", ret)

    # -- receiving -----------------------------------------------------------

    def _receive_single_frame(self, frame: bytes, length: int) -> int:
        sf_dl = frame[0] & 0x0F
        if sf_dl == 0 or sf_dl > length - 1:
            self._debug("Single-frame length too small.")
            return RET_LENGTH
        self.receive_buffer[:sf_dl] = frame[1:1 + sf_dl]
        self.receive_size = sf_dl
        return RET_OK

    def _receive_first_frame(self, frame: bytes, length: int) -> int:
        if length != CAN_FRAME_LEN:
            self._debug("First frame should be 8 bytes in length.")
            return RET_LENGTH
        payload_length = ((frame[0] & 0x0F) << 8) + frame[1]
        if payload_length <= 7:
            self._debug("Should not use multiple frame transmission.")
            return RET_LENGTH
        if payload_length > self.receive_buf_size:
            self._debug("Multi-frame response too large for receiving buffer.")
            return RET_OVERFLOW
        self.receive_buffer[:FIRST_FRAME_DATA_LEN] = frame[2:2 + FIRST_FRAME_DATA_LEN]
        self.receive_size = payload_length
        self.receive_offset = FIRST_FRAME_DATA_LEN
        self.receive_sn = 1
        return RET_OK

    def _receive_consecutive_frame(self, frame: bytes, length: int) -> int:
        if self.receive_sn != frame[0] & 0x0F:
            return RET_WRONG_SN
        remaining = min(self.receive_size - self.receive_offset, CONSECUTIVE_FRAME_DATA_LEN)
        if remaining > length - 1:
            self._debug("Consecutive frame too short.")
            return RET_LENGTH
        start = self.receive_offset
        self.receive_buffer[start:start + remaining] = frame[1:1 + remaining]
        self.receive_offset += remaining
        self.receive_sn = (self.receive_sn + 1) & 0x0F
        return RET_OK

    def _receive_flow_control_frame(self, length: int) -> int:
        if length < FLOW_CONTROL_LEN:
            self._debug("Flow control frame too short.")
            return RET_LENGTH
        return RET_OK

    def on_can_message(self, data: bytes) -> None:
        """Handle one CAN frame addressed to this link."""
        length = len(data)
        if length < 2 or length > CAN_FRAME_LEN:
            return
        frame = bytes(data).ljust(CAN_FRAME_LEN, b"\x00")
        kind = frame[0] >> 4

        if kind == PciType.SINGLE:
            self.receive_protocol_result = (
                ProtocolResult.UNEXP_PDU
                if self.receive_status == ReceiveStatus.IN_PROGRESS
                else ProtocolResult.OK
            )
            if self._receive_single_frame(frame, length) == RET_OK:
                self.receive_status = ReceiveStatus.FULL

        elif kind == PciType.FIRST_FRAME:
            self.receive_protocol_result = (
                ProtocolResult.UNEXP_PDU
                if self.receive_status == ReceiveStatus.IN_PROGRESS
                else ProtocolResult.OK
            )
            ret = self._receive_first_frame(frame, length)
            if ret == RET_OVERFLOW:
                self.receive_protocol_result = ProtocolResult.BUFFER_OVFLW
                self.receive_status = ReceiveStatus.IDLE
                self._send_flow_control(FlowStatus.OVERFLOW, 0, 0)
            elif ret == RET_OK:
                self.receive_status = ReceiveStatus.IN_PROGRESS
                self.receive_bs_count = DEFAULT_BLOCK_SIZE
                self._send_flow_control(FlowStatus.CONTINUE, self.receive_bs_count, DEFAULT_ST_MIN)
                self.receive_timer_cr = self._deadline(DEFAULT_RESPONSE_TIMEOUT)

        elif kind == PciType.CONSECUTIVE_FRAME:
            if self.receive_status != ReceiveStatus.IN_PROGRESS:
                self.receive_protocol_result = ProtocolResult.UNEXP_PDU
                return
            ret = self._receive_consecutive_frame(frame, length)
            if ret == RET_WRONG_SN:
                self.receive_protocol_result = ProtocolResult.WRONG_SN
                self.receive_status = ReceiveStatus.IDLE
            elif ret == RET_OK:
                self.receive_timer_cr = self._deadline(DEFAULT_RESPONSE_TIMEOUT)
                if self.receive_offset >= self.receive_size:
                    self.receive_status = ReceiveStatus.FULL
                else:
                    self.receive_bs_count = (self.receive_bs_count - 1) & 0xFF
                    if self.receive_bs_count == 0:
                        self.receive_bs_count = DEFAULT_BLOCK_SIZE
                        self._send_flow_control(
                            FlowStatus.CONTINUE, self.receive_bs_count, DEFAULT_ST_MIN
                        )

        elif kind == PciType.FLOW_CONTROL_FRAME:
            if self.send_status != SendStatus.IN_PROGRESS:
                return
            if self._receive_flow_control_frame(length) != RET_OK:
                return
            self.send_timer_bs = self._deadline(DEFAULT_RESPONSE_TIMEOUT)
            flow_status = frame[0] & 0x0F
            if flow_status == FlowStatus.OVERFLOW:
                self.send_protocol_result = ProtocolResult.BUFFER_OVFLW
                self.send_status = SendStatus.ERROR
            elif flow_status == FlowStatus.WAIT:
                self.send_wtf_count += 1
                if self.send_wtf_count > MAX_WFT_NUMBER:
                    self.send_protocol_result = ProtocolResult.WFT_OVRN
                    self.send_status = SendStatus.ERROR
            elif flow_status == FlowStatus.CONTINUE:
                block_size = frame[1]
                self.send_bs_remain = INVALID_BS if block_size == 0 else block_size
                self.send_st_min = st_min_to_ms(frame[2])
                self.send_wtf_count = 0

    def receive(self) -> bytes:
        """Return the completely received message and make the link ready for the next one."""
        if self.receive_status != ReceiveStatus.FULL:
            raise IsoTpNoDataError("no complete message received")
        payload = bytes(self.receive_buffer[:self.receive_size])
        self.receive_status = ReceiveStatus.IDLE
        return payload

    # -- periodic work -------------------------------------------------------

    def poll(self) -> None:
        """Send pending consecutive frames and check transfer timeouts."""
        if self.send_status == SendStatus.IN_PROGRESS:
            may_send = self.send_bs_remain == INVALID_BS or self.send_bs_remain > 0
            st_elapsed = self.send_st_min == 0 or time_after(self._now(), self.send_timer_st)
            if may_send and st_elapsed:
                if self._send_consecutive_frame() == RET_OK:
                    if self.send_bs_remain != INVALID_BS:
                        self.send_bs_remain -= 1
                    self.send_timer_bs = self._deadline(DEFAULT_RESPONSE_TIMEOUT)
                    self.send_timer_st = self._deadline(self.send_st_min)
                    if self.send_offset >= self.send_size:
                        self.send_status = SendStatus.IDLE
                else:
                    self.send_status = SendStatus.ERROR

            if time_after(self._now(), self.send_timer_bs):
                self.send_protocol_result = ProtocolResult.TIMEOUT_BS
                self.send_status = SendStatus.ERROR

        if self.receive_status == ReceiveStatus.IN_PROGRESS:
            if time_after(self._now(), self.receive_timer_cr):
                self.receive_protocol_result = ProtocolResult.TIMEOUT_CR
                self.receive_status = ReceiveStatus.IDLE