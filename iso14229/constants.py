"""Protocol identifiers, codes and default timing parameters for UDS (ISO 14229-1)."""

from dataclasses import dataclass
from enum import IntEnum, IntFlag

UDS_VERSION = "0.7.0"

# ISO-TP maximum transmissible unit (ISO 15765-2:2004 section 5.3.3)
ISOTP_MTU = 4095
TP_MTU = ISOTP_MTU

# Address used by a transport when it should not listen on or send to an address.
TP_NOOP_ADDR = 0xFFFFFFFF

CLIENT_DEFAULT_P2_MS = 150
CLIENT_DEFAULT_P2_STAR_MS = 1500

SERVER_DEFAULT_POWER_DOWN_TIME_MS = 10
SERVER_DEFAULT_P2_MS = 50
SERVER_DEFAULT_P2_STAR_MS = 2000
SERVER_DEFAULT_S3_MS = 3000

# Delay after boot before 0x27 requests are accepted.
SERVER_0x27_BRUTE_FORCE_MITIGATION_BOOT_DELAY_MS = 1000
# Delay after an authentication failure before another 0x27 request is accepted.
SERVER_0x27_BRUTE_FORCE_MITIGATION_AUTH_FAIL_DELAY_MS = 1000

# ISO 14229-1:2013 Table 396: maxNumberOfBlockLength reported by requestDownload.
SERVER_DEFAULT_XFER_DATA_MAX_BLOCKLENGTH = TP_MTU

# ISO 14229-1:2013 Table 2
MAX_DIAGNOSTIC_SERVICES = 0x7F

NEG_RESP_LEN = 3
REQ_LEN_0x10 = 2
RESP_LEN_0x10 = 6
REQ_MIN_LEN_0x11 = 2
RESP_BASE_LEN_0x11 = 2
REQ_MIN_LEN_0x23 = 4
RESP_BASE_LEN_0x23 = 1
RESP_BASE_LEN_0x22 = 1
REQ_BASE_LEN_0x27 = 2
RESP_BASE_LEN_0x27 = 2
REQ_BASE_LEN_0x28 = 3
RESP_LEN_0x28 = 2
REQ_BASE_LEN_0x2E = 3
REQ_MIN_LEN_0x2E = 4
RESP_LEN_0x2E = 3
REQ_MIN_LEN_0x31 = 4
RESP_MIN_LEN_0x31 = 4
REQ_BASE_LEN_0x34 = 3
RESP_BASE_LEN_0x34 = 2
REQ_BASE_LEN_0x35 = 3
RESP_BASE_LEN_0x35 = 2
REQ_BASE_LEN_0x36 = 2
RESP_BASE_LEN_0x36 = 2
REQ_BASE_LEN_0x37 = 1
RESP_BASE_LEN_0x37 = 1
REQ_BASE_LEN_0x38 = 4
RESP_BASE_LEN_0x38 = 3
REQ_MIN_LEN_0x3E = 2
REQ_MAX_LEN_0x3E = 2
RESP_LEN_0x3E = 2
REQ_BASE_LEN_0x85 = 2
RESP_LEN_0x85 = 2


class ServerEvent(IntEnum):
    """Events delivered to a server's handler function."""

    DIAG_SESS_CTRL = 0
    ECU_RESET = 1
    READ_DATA_BY_IDENT = 2
    READ_MEM_BY_ADDR = 3
    COMM_CTRL = 4
    SEC_ACCESS_REQUEST_SEED = 5
    SEC_ACCESS_VALIDATE_KEY = 6
    WRITE_DATA_BY_IDENT = 7
    ROUTINE_CTRL = 8
    REQUEST_DOWNLOAD = 9
    REQUEST_UPLOAD = 10
    TRANSFER_DATA = 11
    REQUEST_TRANSFER_EXIT = 12
    REQUEST_FILE_TRANSFER = 13
    SESSION_TIMEOUT = 14
    DO_SCHEDULED_RESET = 15
    CUSTOM = 16
    ERR = 17
    IDLE = 18
    RESP_RECV = 19


class UDSError(IntEnum):
    """Result codes of client and transport operations."""

    ERR = -1
    OK = 0
    TIMEOUT = 1
    NEG_RESP = 2
    DID_MISMATCH = 3
    SID_MISMATCH = 4
    SUBFUNCTION_MISMATCH = 5
    TPORT = 6
    FILE_IO = 7
    RESP_TOO_SHORT = 8
    BUFSIZ = 9
    INVALID_ARG = 10
    BUSY = 11


class SeqState(IntEnum):
    DONE = 0
    RUNNING = 1
    GOTO_NEXT = 2


class DiagnosticSessionType(IntEnum):
    DEFAULT_SESSION = 0x01
    PROGRAMMING_SESSION = 0x02
    EXTENDED_DIAGNOSTIC = 0x03
    SAFETY_SYSTEM_DIAGNOSTIC = 0x04


class NegativeResponseCode(IntEnum):
    """Response codes (NRC); zero means a positive response."""

    POSITIVE_RESPONSE = 0
    GENERAL_REJECT = 0x10
    SERVICE_NOT_SUPPORTED = 0x11
    SUB_FUNCTION_NOT_SUPPORTED = 0x12
    INCORRECT_MESSAGE_LENGTH_OR_INVALID_FORMAT = 0x13
    RESPONSE_TOO_LONG = 0x14
    BUSY_REPEAT_REQUEST = 0x21
    CONDITIONS_NOT_CORRECT = 0x22
    REQUEST_SEQUENCE_ERROR = 0x24
    NO_RESPONSE_FROM_SUBNET_COMPONENT = 0x25
    FAILURE_PREVENTS_EXECUTION_OF_REQUESTED_ACTION = 0x26
    REQUEST_OUT_OF_RANGE = 0x31
    SECURITY_ACCESS_DENIED = 0x33
    INVALID_KEY = 0x35
    EXCEED_NUMBER_OF_ATTEMPTS = 0x36
    REQUIRED_TIME_DELAY_NOT_EXPIRED = 0x37
    UPLOAD_DOWNLOAD_NOT_ACCEPTED = 0x70
    TRANSFER_DATA_SUSPENDED = 0x71
    GENERAL_PROGRAMMING_FAILURE = 0x72
    WRONG_BLOCK_SEQUENCE_COUNTER = 0x73
    REQUEST_CORRECTLY_RECEIVED_RESPONSE_PENDING = 0x78
    SUB_FUNCTION_NOT_SUPPORTED_IN_ACTIVE_SESSION = 0x7E
    SERVICE_NOT_SUPPORTED_IN_ACTIVE_SESSION = 0x7F
    RPM_TOO_HIGH = 0x81
    RPM_TOO_LOW = 0x82
    ENGINE_IS_RUNNING = 0x83
    ENGINE_IS_NOT_RUNNING = 0x84
    ENGINE_RUN_TIME_TOO_LOW = 0x85
    TEMPERATURE_TOO_HIGH = 0x86
    TEMPERATURE_TOO_LOW = 0x87
    VEHICLE_SPEED_TOO_HIGH = 0x88
    VEHICLE_SPEED_TOO_LOW = 0x89
    THROTTLE_PEDAL_TOO_HIGH = 0x8A
    THROTTLE_PEDAL_TOO_LOW = 0x8B
    TRANSMISSION_RANGE_NOT_IN_NEUTRAL = 0x8C
    TRANSMISSION_RANGE_NOT_IN_GEAR = 0x8D
    ISO_SAE_RESERVED = 0x8E
    BRAKE_SWITCH_NOT_CLOSED = 0x8F
    SHIFTER_LEVER_NOT_IN_PARK = 0x90
    TORQUE_CONVERTER_CLUTCH_LOCKED = 0x91
    VOLTAGE_TOO_HIGH = 0x92
    VOLTAGE_TOO_LOW = 0x93


class ECUResetType(IntEnum):
    HARD_RESET = 1
    KEY_OFF_ON_RESET = 2
    SOFT_RESET = 3
    ENABLE_RAPID_POWER_SHUT_DOWN = 4
    DISABLE_RAPID_POWER_SHUT_DOWN = 5


class SecurityAccessType(IntEnum):
    REQUEST_SEED = 0x01
    SEND_KEY = 0x02


class CommunicationControlType(IntEnum):
    ENABLE_RX_AND_TX = 0
    ENABLE_RX_AND_DISABLE_TX = 1
    DISABLE_RX_AND_ENABLE_TX = 2
    DISABLE_RX_AND_TX = 3


class CommunicationType(IntEnum):
    NORMAL_COMMUNICATION_MESSAGES = 0x1
    NETWORK_MANAGEMENT_COMMUNICATION_MESSAGES = 0x2
    NETWORK_MANAGEMENT_AND_NORMAL_COMMUNICATION_MESSAGES = 0x3


class RoutineControlType(IntEnum):
    START_ROUTINE = 1
    STOP_ROUTINE = 2
    REQUEST_ROUTINE_RESULTS = 3


class FileOperationMode(IntEnum):
    ADD_FILE = 1
    DELETE_FILE = 2
    REPLACE_FILE = 3
    READ_FILE = 4
    READ_DIR = 5


class DTCSettingType(IntEnum):
    ON = 0x01
    OFF = 0x02


class ServiceId(IntEnum):
    """Request service identifiers."""

    DIAGNOSTIC_SESSION_CONTROL = 0x10
    ECU_RESET = 0x11
    CLEAR_DIAGNOSTIC_INFORMATION = 0x14
    READ_DTC_INFORMATION = 0x19
    READ_DATA_BY_IDENTIFIER = 0x22
    READ_MEMORY_BY_ADDRESS = 0x23
    READ_SCALING_DATA_BY_IDENTIFIER = 0x24
    SECURITY_ACCESS = 0x27
    COMMUNICATION_CONTROL = 0x28
    READ_PERIODIC_DATA_BY_IDENTIFIER = 0x2A
    DYNAMICALLY_DEFINE_DATA_IDENTIFIER = 0x2C
    WRITE_DATA_BY_IDENTIFIER = 0x2E
    INPUT_CONTROL_BY_IDENTIFIER = 0x2F
    ROUTINE_CONTROL = 0x31
    REQUEST_DOWNLOAD = 0x34
    REQUEST_UPLOAD = 0x35
    TRANSFER_DATA = 0x36
    REQUEST_TRANSFER_EXIT = 0x37
    REQUEST_FILE_TRANSFER = 0x38
    WRITE_MEMORY_BY_ADDRESS = 0x3D
    TESTER_PRESENT = 0x3E
    ACCESS_TIMING_PARAMETER = 0x83
    SECURED_DATA_TRANSMISSION = 0x84
    CONTROL_DTC_SETTING = 0x85
    RESPONSE_ON_EVENT = 0x86


class TargetAddressType(IntEnum):
    """Whether a message goes to one node (physical) or to many (functional)."""

    PHYSICAL = 0
    FUNCTIONAL = 1


class TpStatus(IntFlag):
    """Status bits reported by a transport's poll."""

    IDLE = 0
    SEND_IN_PROGRESS = 1


@dataclass
class SDU:
    """Addressing information that travels with a transport message."""

    a_ta: int = 0
    a_sa: int = 0
    a_ta_type: TargetAddressType = TargetAddressType.PHYSICAL
    a_ae: int = 0


def response_sid_of(request_sid: int) -> int:
    """Return the positive-response service id for a request service id."""
    return request_sid + 0x40


def request_sid_of(response_sid: int) -> int:
    """Return the request service id for a positive-response service id."""
    return response_sid - 0x40