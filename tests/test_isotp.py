import pytest

from iso14229.isotp import (
    IsoTpError,
    IsoTpInProgressError,
    IsoTpLink,
    IsoTpNoDataError,
    IsoTpOverflowError,
)
from iso14229.isotp_frames import (
    RET_ERROR,
    FlowStatus,
    ProtocolResult,
    ReceiveStatus,
    SendStatus,
    encode_consecutive_frame,
    encode_first_frame,
    encode_flow_control,
    encode_single_frame,
    pci_type,
    PciType,
)


class Clock:
    def __init__(self) -> None:
        self.now = 0

    def __call__(self) -> int:
        return self.now


def make_link(clock, arbitration_id=0x7E0, size=4095):
    sent = []

    def send_can(arbitration_id, frame):
        sent.append((arbitration_id, bytes(frame)))

    link = IsoTpLink(arbitration_id, size, size, clock, send_can)
    return link, sent


def pump(a, b, a_to_b, b_to_a):
    """Deliver queued frames between two links until both queues are empty."""
    while a_to_b or b_to_a:
        while a_to_b:
            b.on_can_message(a_to_b.pop(0))
        while b_to_a:
            a.on_can_message(b_to_a.pop(0))


def test_single_frame_bytes_on_wire():
    clock = Clock()
    link, sent = make_link(clock)
    link.send(b"\x10\x02")
    assert sent == [(0x7E0, bytes([0x02, 0x10, 0x02, 0, 0, 0, 0, 0]))]
    assert link.send_status == SendStatus.IDLE


def test_send_with_id_uses_given_id_for_single_frame():
    clock = Clock()
    link, sent = make_link(clock)
    link.send_with_id(0x7DF, b"\x3e\x00")
    assert sent[0][0] == 0x7DF


def test_first_frame_starts_multi_frame_send():
    clock = Clock()
    link, sent = make_link(clock)
    payload = bytes(range(20))
    link.send(payload)
    assert sent == [(0x7E0, encode_first_frame(20, payload))]
    assert link.send_status == SendStatus.IN_PROGRESS
    # no flow control yet: nothing more is sent
    link.poll()
    assert len(sent) == 1


def test_single_frame_round_trip():
    clock = Clock()
    a_to_b, b_to_a = [], []
    a = IsoTpLink(0x7E0, 4095, 4095, clock, lambda i, f: a_to_b.append(f))
    b = IsoTpLink(0x7E8, 4095, 4095, clock, lambda i, f: b_to_a.append(f))
    a.send(b"\x10\x02")
    pump(a, b, a_to_b, b_to_a)
    assert b.receive_status == ReceiveStatus.FULL
    assert b.receive() == b"\x10\x02"
    assert b.receive_status == ReceiveStatus.IDLE


def test_largest_single_frame_round_trip():
    clock = Clock()
    a_to_b, b_to_a = [], []
    a = IsoTpLink(0x7E0, 4095, 4095, clock, lambda i, f: a_to_b.append(f))
    b = IsoTpLink(0x7E8, 4095, 4095, clock, lambda i, f: b_to_a.append(f))
    msg = bytes([1, 2, 3, 4, 5, 6, 7])
    a.send(msg)
    pump(a, b, a_to_b, b_to_a)
    assert b.receive() == msg


@pytest.mark.parametrize("size", [8, 20, 100, 4095])
def test_multi_frame_round_trip(size):
    clock = Clock()
    a_to_b, b_to_a = [], []
    a = IsoTpLink(0x7E0, 4095, 4095, clock, lambda i, f: a_to_b.append(f))
    b = IsoTpLink(0x7E8, 4095, 4095, clock, lambda i, f: b_to_a.append(f))
    msg = bytearray(size)
    msg[0] = 0x10
    msg[-1] = 0x02
    msg = bytes(msg)
    a.send(msg)
    for _ in range(3000):
        pump(a, b, a_to_b, b_to_a)
        if b.receive_status == ReceiveStatus.FULL:
            break
        a.poll()
        b.poll()
        clock.now += 1
    assert b.receive() == msg
    assert a.send_status == SendStatus.IDLE


def test_receiver_sends_flow_control_every_block():
    clock = Clock()
    a_to_b, b_to_a = [], []
    fc_frames = []

    def b_send(arbitration_id, frame):
        fc_frames.append(bytes(frame))
        b_to_a.append(frame)

    a = IsoTpLink(0x7E0, 4095, 4095, clock, lambda i, f: a_to_b.append(f))
    b = IsoTpLink(0x7E8, 4095, 4095, clock, b_send)
    a.send(bytes(100))
    for _ in range(100):
        pump(a, b, a_to_b, b_to_a)
        a.poll()
        clock.now += 1
    assert b.receive() == bytes(100)
    expected = bytes(encode_flow_control(FlowStatus.CONTINUE, 8, 0))
    assert fc_frames == [expected, expected]


def test_send_too_large_raises_overflow():
    clock = Clock()
    link, sent = make_link(clock, size=16)
    with pytest.raises(IsoTpOverflowError) as exc:
        link.send(bytes(17))
    assert exc.value.code == -3
    assert sent == []


def test_send_while_in_progress_raises():
    clock = Clock()
    link, _ = make_link(clock)
    link.send(bytes(20))
    with pytest.raises(IsoTpInProgressError):
        link.send(b"\x01")


def test_send_can_failure_raises_with_code():
    clock = Clock()
    link = IsoTpLink(0x7E0, 64, 64, clock, lambda i, f: RET_ERROR)
    with pytest.raises(IsoTpError) as exc:
        link.send(bytes(20))
    assert exc.value.code == RET_ERROR
    assert link.send_status == SendStatus.IDLE


def test_receive_without_data_raises():
    clock = Clock()
    link, _ = make_link(clock)
    with pytest.raises(IsoTpNoDataError):
        link.receive()


def test_flow_control_frame_timeout():
    clock = Clock()
    link, _ = make_link(clock)
    link.send(bytes([1, 2, 3, 4, 5, 6, 7, 8]))
    for _ in range(1500):
        link.poll()
        clock.now += 1
    assert link.send_protocol_result == ProtocolResult.TIMEOUT_BS
    assert link.send_status == SendStatus.ERROR


def test_receive_consecutive_frame_timeout():
    clock = Clock()
    link, _ = make_link(clock)
    link.on_can_message(encode_first_frame(20, bytes(20)))
    assert link.receive_status == ReceiveStatus.IN_PROGRESS
    for _ in range(200):
        link.poll()
        clock.now += 1
    assert link.receive_status == ReceiveStatus.IDLE
    assert link.receive_protocol_result == ProtocolResult.TIMEOUT_CR


def test_first_frame_too_large_sends_overflow_flow_control():
    clock = Clock()
    link, sent = make_link(clock, size=16)
    link.on_can_message(encode_first_frame(100, bytes(100)))
    assert link.receive_status == ReceiveStatus.IDLE
    assert link.receive_protocol_result == ProtocolResult.BUFFER_OVFLW
    assert sent == [(0x7E0, encode_flow_control(FlowStatus.OVERFLOW, 0, 0))]


def test_first_frame_acknowledged_with_continue():
    clock = Clock()
    link, sent = make_link(clock)
    link.on_can_message(encode_first_frame(20, bytes(20)))
    assert len(sent) == 1
    assert pci_type(sent[0][1]) == PciType.FLOW_CONTROL_FRAME
    assert sent[0][1][0] & 0x0F == FlowStatus.CONTINUE


def test_wrong_sequence_number_aborts_reception():
    clock = Clock()
    link, _ = make_link(clock)
    link.on_can_message(encode_first_frame(20, bytes(20)))
    link.on_can_message(encode_consecutive_frame(2, bytes(7)))
    assert link.receive_status == ReceiveStatus.IDLE
    assert link.receive_protocol_result == ProtocolResult.WRONG_SN


def test_unexpected_consecutive_frame():
    clock = Clock()
    link, _ = make_link(clock)
    link.on_can_message(encode_consecutive_frame(1, bytes(7)))
    assert link.receive_status == ReceiveStatus.IDLE
    assert link.receive_protocol_result == ProtocolResult.UNEXP_PDU


def test_single_frame_with_zero_length_is_rejected():
    clock = Clock()
    link, _ = make_link(clock)
    link.on_can_message(bytes([0x00, 0x11, 0x22]))
    assert link.receive_status == ReceiveStatus.IDLE


@pytest.mark.parametrize("frame", [b"\x01", bytes(9)])
def test_frames_of_bad_length_are_ignored(frame):
    clock = Clock()
    link, sent = make_link(clock)
    link.on_can_message(frame)
    assert link.receive_status == ReceiveStatus.IDLE
    assert sent == []


def test_unpadded_single_frame_is_accepted():
    clock = Clock()
    link, _ = make_link(clock)
    link.on_can_message(encode_single_frame(b"\xaa\xbb", padding=False))
    assert link.receive() == b"\xaa\xbb"


def test_flow_control_overflow_stops_send():
    clock = Clock()
    link, _ = make_link(clock)
    link.send(bytes(20))
    link.on_can_message(encode_flow_control(FlowStatus.OVERFLOW, 0, 0))
    assert link.send_status == SendStatus.ERROR
    assert link.send_protocol_result == ProtocolResult.BUFFER_OVFLW


def test_too_many_wait_frames_stop_send():
    clock = Clock()
    link, _ = make_link(clock)
    link.send(bytes(20))
    link.on_can_message(encode_flow_control(FlowStatus.WAIT, 0, 0))
    assert link.send_status == SendStatus.IN_PROGRESS
    link.on_can_message(encode_flow_control(FlowStatus.WAIT, 0, 0))
    assert link.send_status == SendStatus.ERROR
    assert link.send_protocol_result == ProtocolResult.WFT_OVRN


def test_flow_control_ignored_when_not_sending():
    clock = Clock()
    link, _ = make_link(clock)
    link.on_can_message(encode_flow_control(FlowStatus.OVERFLOW, 0, 0))
    assert link.send_status == SendStatus.IDLE


def test_block_size_limits_consecutive_frames():
    clock = Clock()
    link, sent = make_link(clock)
    link.send(bytes(100))
    link.on_can_message(encode_flow_control(FlowStatus.CONTINUE, 2, 0))
    for _ in range(10):
        link.poll()
    consecutive = [f for _, f in sent if pci_type(f) == PciType.CONSECUTIVE_FRAME]
    assert len(consecutive) == 2
    assert link.send_status == SendStatus.IN_PROGRESS


def test_separation_time_is_respected():
    clock = Clock()
    link, sent = make_link(clock)
    link.send(bytes(100))
    link.on_can_message(encode_flow_control(FlowStatus.CONTINUE, 0, 5))
    link.poll()
    assert len(sent) == 1  # same millisecond as the first frame
    clock.now += 1
    link.poll()
    assert len(sent) == 2
    for _ in range(5):
        clock.now += 1
        link.poll()
    assert len(sent) == 2
    clock.now += 1
    link.poll()
    assert len(sent) == 3


def test_consecutive_frame_sequence_numbers_wrap():
    clock = Clock()
    link, sent = make_link(clock)
    link.send(bytes(200))
    link.on_can_message(encode_flow_control(FlowStatus.CONTINUE, 0, 0))
    for _ in range(40):
        link.poll()
    sns = [f[0] & 0x0F for _, f in sent if pci_type(f) == PciType.CONSECUTIVE_FRAME]
    assert sns[:16] == list(range(1, 16)) + [0]
    assert link.send_status == SendStatus.IDLE