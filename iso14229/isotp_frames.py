"""ISO-TP (ISO 15765-2) frame layout, status codes and frame encoders."""

from enum import IntEnum

# Maximum number of consecutive frames the receiver accepts before sending flow control.
DEFAULT_BLOCK_SIZE = 8
# Minimum separation time (ms) requested from the sender.
DEFAULT_ST_MIN = 0
# Number of FC.WAIT frames a sender tolerates in a row.
MAX_WFT_NUMBER = 1
# Timeout (ms) while waiting for a frame during a multi-frame transfer.
DEFAULT_RESPONSE_TIMEOUT = 100
# Whether frames are padded to a full CAN frame by default.
FRAME_PADDING = True

# Block size value meaning "send without waiting for further flow control".
INVALID_BS = 0xFFFF

CAN_FRAME_LEN = 8
SINGLE_FRAME_DATA_LEN = 7
FIRST_FRAME_DATA_LEN = 6
CONSECUTIVE_FRAME_DATA_LEN = 7
FLOW_CONTROL_LEN = 3
MAX_MESSAGE_SIZE = 0xFFF

# Return codes of the ISO-TP link operations.
RET_OK = 0
RET_ERROR = -1
RET_INPROGRESS = -2
RET_OVERFLOW = -3
RET_WRONG_SN = -4
RET_NO_DATA = -5
RET_TIMEOUT = -6
RET_LENGTH = -7


class PciType(IntEnum):
    """Protocol control information type, held in the high nibble of byte 0."""

    SINGLE = 0x0
    FIRST_FRAME = 0x1
    CONSECUTIVE_FRAME = 0x2
    FLOW_CONTROL_FRAME = 0x3


class FlowStatus(IntEnum):
    CONTINUE = 0x0
    WAIT = 0x1
    OVERFLOW = 0x2


class SendStatus(IntEnum):
    IDLE = 0
    IN_PROGRESS = 1
    ERROR = 2


class ReceiveStatus(IntEnum):
    IDLE = 0
    IN_PROGRESS = 1
    FULL = 2


class ProtocolResult(IntEnum):
    """Network layer result codes."""

    OK = 0
    TIMEOUT_A = -1
    TIMEOUT_BS = -2
    TIMEOUT_CR = -3
    WRONG_SN = -4
    INVALID_FS = -5
    UNEXP_PDU = -6
    WFT_OVRN = -7
    BUFFER_OVFLW = -8
    ERROR = -9


def ms_to_st_min(ms: int) -> int:
    """Convert a separation time in milliseconds to an STmin byte."""
    return min(ms & 0xFF, 0x7F)


def st_min_to_ms(st_min: int) -> int:
    """Convert an STmin byte to milliseconds; sub-millisecond values round up to 1."""
    if 0xF1 <= st_min <= 0xF9:
        return 1
    if 0 <= st_min <= 0x7F:
        return st_min
    return 0


def pci_type(frame: bytes) -> PciType | None:
    """Return the PCI type of a CAN frame, or None if the type is not an ISO-TP one."""
    if not frame:
        raise ValueError("empty frame has no PCI type")
    try:
        return PciType(frame[0] >> 4)
    except ValueError:
        return None


def _pad(frame: bytes, padding: bool) -> bytes:
    if padding:
        return frame.ljust(CAN_FRAME_LEN, b"\x00")
    return frame


def encode_single_frame(data: bytes, padding: bool = FRAME_PADDING) -> bytes:
    """Encode a payload of at most 7 bytes as a single frame."""
    if len(data) > SINGLE_FRAME_DATA_LEN:
        raise ValueError(
            f"single frame holds at most {SINGLE_FRAME_DATA_LEN} bytes, got {len(data)}"
        )
    header = (PciType.SINGLE << 4) | len(data)
    return _pad(bytes([header]) + bytes(data), padding)


def encode_first_frame(total_size: int, data: bytes) -> bytes:
    """Encode the first frame of a multi-frame message of ``total_size`` bytes.

    ``data`` is the start of the message; its first 6 bytes are carried.
    """
    if total_size <= SINGLE_FRAME_DATA_LEN:
        raise ValueError("messages of 7 bytes or fewer must use a single frame")
    if total_size > MAX_MESSAGE_SIZE:
        raise ValueError(f"message size {total_size} exceeds {MAX_MESSAGE_SIZE}")
    if len(data) < FIRST_FRAME_DATA_LEN:
        raise ValueError(f"first frame needs {FIRST_FRAME_DATA_LEN} data bytes")
    header = bytes([
        (PciType.FIRST_FRAME << 4) | ((total_size >> 8) & 0x0F),
        total_size & 0xFF,
    ])
    return header + bytes(data[:FIRST_FRAME_DATA_LEN])


def encode_consecutive_frame(sn: int, data: bytes, padding: bool = FRAME_PADDING) -> bytes:
    """Encode a consecutive frame with sequence number ``sn`` (taken modulo 16)."""
    if len(data) > CONSECUTIVE_FRAME_DATA_LEN:
        raise ValueError(
            f"consecutive frame holds at most {CONSECUTIVE_FRAME_DATA_LEN} bytes, got {len(data)}"
        )
    header = (PciType.CONSECUTIVE_FRAME << 4) | (sn & 0x0F)
    return _pad(bytes([header]) + bytes(data), padding)


def encode_flow_control(
    flow_status: int,
    block_size: int,
    st_min_ms: int,
    padding: bool = FRAME_PADDING,
) -> bytes:
    """Encode a flow control frame."""
    frame = bytes([
        (PciType.FLOW_CONTROL_FRAME << 4) | (int(flow_status) & 0x0F),
        block_size & 0xFF,
        ms_to_st_min(st_min_ms),
    ])
    return _pad(frame, padding)