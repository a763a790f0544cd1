import struct
from collections import deque

import pytest

from iso14229.constants import SDU, TargetAddressType, TpStatus
from iso14229.isotp import IsoTpError
from iso14229.socketcan import SocketCanTransport

FRAME = struct.Struct("=IB3x8s")

SRV_SA = 0x7E8
SRV_TA = 0x7E0
SRV_SA_FUNC = 0x7DF


class FakeCanSocket:
    def __init__(self):
        self.incoming = deque()
        self.sent = []
        self.closed = False
        self.short_write = False

    def recv(self, size):
        if not self.incoming:
            raise BlockingIOError()
        return self.incoming.popleft()

    def send(self, data):
        self.sent.append(bytes(data))
        return len(data) - 1 if self.short_write else len(data)

    def close(self):
        self.closed = True

    def push(self, can_id, data):
        self.incoming.append(FRAME.pack(can_id, len(data), bytes(data)))

    def sent_frames(self):
        result = []
        for raw in self.sent:
            can_id, dlc, payload = FRAME.unpack(raw)
            result.append((can_id, payload[:dlc]))
        return result


@pytest.fixture
def sock():
    return FakeCanSocket()


@pytest.fixture
def tp(sock):
    return SocketCanTransport("vcan0", SRV_SA, SRV_TA, SRV_SA_FUNC, 0, tag="server", sock=sock)


def test_send_single_frame_writes_padded_can_frame(tp, sock):
    assert tp.send(b"\x10\x02") == 2
    assert sock.sent_frames() == [(SRV_TA, b"\x02\x10\x02\x00\x00\x00\x00\x00")]


def test_send_logs_line(tp, capsys):
    tp.send(b"\x10\x02")
    out = capsys.readouterr().out
    assert "server sends, 0x7e0 (phys), 10 02 \n" in out


def test_functional_send_too_large_raises(tp, sock):
    info = SDU(a_ta_type=TargetAddressType.FUNCTIONAL)
    with pytest.raises(ValueError):
        tp.send(bytes(range(8)), info)
    assert sock.sent == []


def test_functional_send_largest_single_frame(tp, sock):
    info = SDU(a_ta_type=TargetAddressType.FUNCTIONAL)
    assert tp.send(bytes([1, 2, 3, 4, 5, 6, 7]), info) == 7
    (can_id, data), = sock.sent_frames()
    assert can_id == 0
    assert data[1:] == bytes([1, 2, 3, 4, 5, 6, 7])


def test_peek_empty(tp):
    assert tp.poll() == TpStatus.IDLE
    assert tp.peek() == (b"", None)


def test_receive_physical_single_frame(tp, sock):
    sock.push(SRV_SA, b"\x02\x10\x02\x00\x00\x00\x00\x00")
    tp.poll()
    data, info = tp.peek()
    assert data == b"\x10\x02"
    assert info == SDU(a_ta=SRV_SA, a_sa=SRV_TA, a_ta_type=TargetAddressType.PHYSICAL)
    # still held until acknowledged
    assert tp.peek()[0] == b"\x10\x02"
    tp.ack_recv()
    assert tp.peek() == (b"", None)


def test_receive_functional_single_frame(tp, sock, capsys):
    sock.push(SRV_SA_FUNC, b"\x02\x10\x02")
    tp.poll()
    data, info = tp.peek()
    assert data == b"\x10\x02"
    assert info.a_ta_type == TargetAddressType.FUNCTIONAL
    assert info.a_ta == SRV_SA_FUNC
    assert "(func)" in capsys.readouterr().out


def test_frames_for_other_ids_are_ignored(tp, sock):
    sock.push(0x123, b"\x02\x10\x02")
    tp.poll()
    assert tp.peek() == (b"", None)


def test_multi_frame_send_waits_for_flow_control(tp, sock):
    payload = bytes(range(10))
    tp.send(payload)
    assert tp.poll() == TpStatus.SEND_IN_PROGRESS
    assert len(sock.sent) == 1
    sock.push(SRV_SA, b"\x30\x00\x00")
    assert tp.poll() == TpStatus.IDLE
    frames = sock.sent_frames()
    assert len(frames) == 2
    first, second = frames[0][1], frames[1][1]
    assert first[0] >> 4 == 1
    assert second[0] == 0x21
    assert first[2:8] + second[1:5] == payload


def test_multi_frame_receive_sends_flow_control(tp, sock):
    payload = bytes(range(10))
    sock.push(SRV_SA, bytes([0x10, len(payload)]) + payload[:6])
    tp.poll()
    (can_id, fc), = sock.sent_frames()
    assert can_id == SRV_TA
    assert fc[0] >> 4 == 3
    assert tp.peek() == (b"", None)
    sock.push(SRV_SA, b"\x21" + payload[6:])
    tp.poll()
    assert tp.peek()[0] == payload


def test_functional_frame_dropped_while_physical_receive_in_progress(tp, sock):
    sock.push(SRV_SA, bytes([0x10, 10]) + bytes(6))
    tp.poll()
    sock.push(SRV_SA_FUNC, b"\x02\x3e\x00")
    tp.poll()
    assert tp.peek() == (b"", None)


def test_short_write_fails_send(tp, sock):
    sock.short_write = True
    with pytest.raises(IsoTpError):
        tp.send(b"\x10\x02")


def test_close_closes_socket(sock):
    with SocketCanTransport("vcan0", SRV_SA, SRV_TA, SRV_SA_FUNC, 0, sock=sock) as transport:
        assert transport.sock is sock
    assert sock.closed is True