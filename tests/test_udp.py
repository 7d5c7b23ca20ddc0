import copy
import socket
import struct
import threading

import pytest

from bwtest.errors import ErrorCode, IperfError
from bwtest.session import Settings, Stream, TestSession
from bwtest.states import TestState
from bwtest.udp import (
    LEGACY_UDP_CONNECT_REPLY,
    UDP_CONNECT_REPLY,
    UdpHeader,
    udp_accept,
    udp_buffercheck,
    udp_connect,
    udp_init,
    udp_listen,
    udp_recv,
    udp_send,
)

BLK = 64


def _session(**kwargs):
    settings = kwargs.pop("settings", Settings(domain=socket.AF_INET, blksize=BLK))
    kwargs.setdefault("state", TestState.TEST_RUNNING)
    return TestSession(settings=settings, **kwargs)


def _free_udp_port():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def udp_pair():
    tx = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    rx = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    tx.bind(("127.0.0.1", 0))
    rx.bind(("127.0.0.1", 0))
    tx.connect(rx.getsockname())
    rx.connect(tx.getsockname())
    tx.settimeout(5)
    rx.settimeout(5)
    yield tx, rx
    tx.close()
    rx.close()


def _fake_server(packets):
    srv = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    srv.bind(("127.0.0.1", 0))
    srv.settimeout(5)

    def serve():
        _, peer = srv.recvfrom(64)
        for packet in packets:
            srv.sendto(packet, peer)

    thread = threading.Thread(target=serve)
    thread.start()
    return srv, thread


def test_header_pack_64bit_wire_bytes():
    data = UdpHeader(1, 2, 3).pack(True)
    assert data == b"\x00\x00\x00\x01\x00\x00\x00\x02" + b"\x00" * 7 + b"\x03"


@pytest.mark.parametrize("wide", [False, True])
def test_header_round_trip(wide):
    header = UdpHeader(1234, 567890, 42)
    assert UdpHeader.unpack(header.pack(wide), wide) == header


def test_header_sizes_differ_by_counter_width():
    header = UdpHeader(5, 6, 7)
    assert len(header.pack(False)) == 12
    assert len(header.pack(True)) == 16


def test_header_32bit_counter_truncates():
    header = UdpHeader(0, 0, 2**32 + 5)
    assert UdpHeader.unpack(header.pack(False), False).pcount == 5


def test_header_unpack_short_data_raises():
    with pytest.raises(ValueError):
        UdpHeader.unpack(b"\x00" * 8, False)


def test_header_sent_time():
    t = UdpHeader(10, 20, 1).sent_time
    assert (t.secs, t.usecs) == (10, 20)


def test_send_then_recv_counts_bytes(udp_pair):
    tx, rx = udp_pair
    test = _session()
    sender = Stream(test, socket=tx, sender=True)
    receiver = Stream(test, socket=rx)

    assert udp_send(sender) == BLK
    assert sender.packet_count == 1
    assert sender.result.bytes_sent == BLK
    assert sender.result.bytes_sent_this_interval == BLK

    assert udp_recv(receiver) == BLK
    assert receiver.packet_count == 1
    assert receiver.result.bytes_received == BLK
    assert receiver.result.bytes_received_this_interval == BLK
    assert receiver.cnt_error == 0
    assert receiver.outoforder_packets == 0
    assert receiver.jitter == 0.0
    assert UdpHeader.unpack(receiver.buffer, False).pcount == 1


@pytest.mark.parametrize("wide", [False, True])
def test_loss_and_out_of_order(udp_pair, wide):
    tx, rx = udp_pair
    test = _session(udp_counters_64bit=wide)
    sender = Stream(test, socket=tx, sender=True)
    receiver = Stream(test, socket=rx)

    udp_send(sender)  # sequence 1
    sender.packet_count = 3
    udp_send(sender)  # sequence 4
    sender.packet_count = 1
    udp_send(sender)  # sequence 2

    udp_recv(receiver)
    udp_recv(receiver)
    assert receiver.packet_count == 4
    assert receiver.cnt_error == 2

    udp_recv(receiver)
    assert receiver.packet_count == 4
    assert receiver.outoforder_packets == 1
    assert receiver.cnt_error == 1
    assert receiver.jitter >= 0.0


def test_late_receive_not_counted(udp_pair):
    tx, rx = udp_pair
    sending = _session()
    receiving = _session(state=TestState.TEST_START)
    udp_send(Stream(sending, socket=tx))
    receiver = Stream(receiving, socket=rx)
    assert udp_recv(receiver) == BLK
    assert receiver.result.bytes_received == 0
    assert receiver.packet_count == 0


def test_recv_nothing_returns_zero(udp_pair):
    _, rx = udp_pair
    rx.settimeout(0.05)
    receiver = Stream(_session(), socket=rx)
    assert udp_recv(receiver) == 0
    assert receiver.result.bytes_received == 0


def test_buffercheck_defaults_fit_small_blocks():
    test = _session()
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        assert udp_buffercheck(test, sock) is False
    assert test.warnings == []


def test_buffercheck_warns_on_large_block():
    test = _session(settings=Settings(domain=socket.AF_INET, blksize=10_000_000))
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        assert udp_buffercheck(test, sock) is True
    assert any(w.startswith("Block size 10000000 > sending socket buffer size") for w in test.warnings)
    assert any(w.startswith("Block size 10000000 > receiving socket buffer size") for w in test.warnings)


def test_buffercheck_rejects_unreachable_size():
    test = _session(settings=Settings(domain=socket.AF_INET, blksize=BLK, socket_bufsize=2**30))
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        with pytest.raises(IperfError) as info:
            udp_buffercheck(test, sock)
    assert info.value.code in (ErrorCode.SET_BUF, ErrorCode.SET_BUF2)


def test_buffercheck_keeps_existing_json_entries():
    test = _session(json_output=True)
    test.json_start["sndbuf_actual"] = "kept"
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        udp_buffercheck(test, sock)
        rcvbuf = sock.getsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF)
    assert test.json_start["sndbuf_actual"] == "kept"
    assert test.json_start["rcvbuf_actual"] == rcvbuf
    assert test.json_start["sock_bufsize"] == 0


def test_connect_and_accept_handshake():
    port = _free_udp_port()
    server = _session(bind_address="127.0.0.1", server_port=port, json_output=True)
    listener = udp_listen(server)
    server.prot_listener = listener
    server.read_set.add(listener)
    client = _session(server_hostname="127.0.0.1", server_port=port)

    result = {}

    def run_client():
        try:
            result["sock"] = udp_connect(client)
        except Exception as exc:  # reported through the assertion below
            result["error"] = exc

    thread = threading.Thread(target=run_client)
    thread.start()
    sockets = [listener]
    try:
        accepted = udp_accept(server)
        thread.join(10)
        sockets.append(server.prot_listener)
        assert "error" not in result
        client_sock = result["sock"]
        sockets.append(client_sock)

        assert accepted is listener
        assert accepted.getpeername() == client_sock.getsockname()
        assert server.prot_listener is not listener
        assert server.prot_listener in server.read_set
        assert listener not in server.read_set
        assert server.prot_listener.getsockname()[1] == port
        assert {"sock_bufsize", "sndbuf_actual", "rcvbuf_actual"} <= server.json_start.keys()
    finally:
        for sock in sockets:
            if sock is not None:
                sock.close()


def test_connect_accepts_legacy_reply():
    srv, thread = _fake_server([struct.pack("=I", LEGACY_UDP_CONNECT_REPLY)])
    client = _session(server_hostname="127.0.0.1", server_port=srv.getsockname()[1])
    try:
        sock = udp_connect(client)
        thread.join(5)
        assert sock.getpeername() == srv.getsockname()
        sock.close()
    finally:
        srv.close()


def test_connect_reverse_tolerates_early_data():
    reply = struct.pack("=I", UDP_CONNECT_REPLY)
    srv, thread = _fake_server([b"\x00" * BLK, b"\x00" * BLK, reply])
    client = _session(server_hostname="127.0.0.1", server_port=srv.getsockname()[1], reverse=True)
    try:
        sock = udp_connect(client)
        thread.join(5)
        assert sock.getpeername() == srv.getsockname()
        sock.close()
    finally:
        srv.close()


def test_connect_without_reverse_rejects_early_data():
    reply = struct.pack("=I", UDP_CONNECT_REPLY)
    srv, thread = _fake_server([b"\x00" * BLK, reply])
    client = _session(server_hostname="127.0.0.1", server_port=srv.getsockname()[1])
    try:
        with pytest.raises(IperfError) as info:
            udp_connect(client)
        thread.join(5)
        assert info.value.code is ErrorCode.STREAM_READ
    finally:
        srv.close()


def test_connect_fails_when_local_port_taken():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as taken:
        taken.bind(("0.0.0.0", 0))
        port = taken.getsockname()[1]
        client = _session(server_hostname="127.0.0.1", server_port=port, bind_port=port)
        with pytest.raises(IperfError) as info:
            udp_connect(client)
    assert info.value.code is ErrorCode.STREAM_CONNECT


def test_listen_fails_when_port_taken():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as taken:
        taken.bind(("127.0.0.1", 0))
        server = _session(bind_address="127.0.0.1", server_port=taken.getsockname()[1])
        with pytest.raises(IperfError) as info:
            udp_listen(server)
    assert info.value.code is ErrorCode.STREAM_LISTEN


def test_accept_without_listener_raises():
    with pytest.raises(IperfError) as info:
        udp_accept(_session())
    assert info.value.code is ErrorCode.STREAM_ACCEPT


def test_init_leaves_session_unchanged():
    test = _session(reverse=True)
    before = copy.deepcopy(test)
    assert udp_init(test) is None
    assert test == before