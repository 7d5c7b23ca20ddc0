"""UDP data streams: datagram headers, loss and jitter tracking, and the
connect/accept handshake that stands in for a connection."""

from __future__ import annotations

import contextlib
import logging
import socket
import struct
from dataclasses import dataclass

from . import ptime
from .errors import ErrorCode, IperfError, NetHardError, NetSoftError
from .net import netannounce, netdial, nrecv_no_select, nwrite
from .session import DebugLevel, Stream, TestSession
from .states import TestState
from .tcp import _log_app_pacing, _set_pacing

logger = logging.getLogger(__name__)

UDP_CONNECT_MSG = 0x36373839
"""Word a client sends to announce a new UDP stream."""

UDP_CONNECT_REPLY = 0x39383736
"""Word the server answers with once the stream is accepted."""

LEGACY_UDP_CONNECT_REPLY = 987654321
"""Reply word used by older servers; still accepted by clients."""

UDP_BUFFER_EXTRA = 1024
"""Headroom added to the block size when socket buffers must be enlarged."""

MAX_REVERSE_OUT_OF_ORDER_PACKETS = 2
"""Data packets tolerated ahead of the connect reply in reverse mode."""

_RECV_TIMEOUT_SECS = 30
_MSG_TRUNC = getattr(socket, "MSG_TRUNC", 0)
_WORD = struct.Struct("=I")
_HEADER_32 = struct.Struct("!III")
_HEADER_64 = struct.Struct("!IIQ")
_U32 = 0xFFFFFFFF
_U64 = 0xFFFFFFFFFFFFFFFF
_CONNECT_REPLIES = (UDP_CONNECT_REPLY, LEGACY_UDP_CONNECT_REPLY)


def _layout(counters_64bit: bool) -> struct.Struct:
    return _HEADER_64 if counters_64bit else _HEADER_32


@dataclass(frozen=True)
class UdpHeader:
    """Send time and sequence number carried at the start of each datagram."""

    secs: int
    usecs: int
    pcount: int

    def pack(self, counters_64bit: bool) -> bytes:
        """Encode in network byte order; the counter is 32 or 64 bits wide."""
        counter_mask = _U64 if counters_64bit else _U32
        return _layout(counters_64bit).pack(
            self.secs & _U32, self.usecs & _U32, self.pcount & counter_mask
        )

    @classmethod
    def unpack(cls, data, counters_64bit: bool) -> UdpHeader:
        """Decode a header from the start of ``data``.

        Raises :class:`ValueError` if ``data`` is too short.
        """
        layout = _layout(counters_64bit)
        if len(data) < layout.size:
            raise ValueError(f"need {layout.size} bytes for a UDP header, got {len(data)}")
        return cls(*layout.unpack_from(bytes(data[: layout.size])))

    @property
    def sent_time(self) -> ptime.IperfTime:
        return ptime.IperfTime(self.secs, self.usecs)


def _track_sequence(stream: Stream, pcount: int) -> None:
    test = stream.test
    expected = stream.packet_count + 1
    if pcount >= expected:
        if pcount > expected:
            stream.cnt_error += (pcount - 1) - stream.packet_count
            if test.debug_level >= DebugLevel.INFO:
                logger.debug(
                    "LOST %d PACKETS - received packet %d but expected sequence %d on stream %s",
                    pcount - stream.packet_count + 1,
                    pcount,
                    expected,
                    stream.socket,
                )
        stream.packet_count = pcount
        return

    # Sequence went backward: an out-of-order arrival offsets an earlier loss.
    stream.outoforder_packets += 1
    if stream.cnt_error > 0:
        stream.cnt_error -= 1
    if test.debug_level >= DebugLevel.INFO:
        logger.debug(
            "OUT OF ORDER - received packet %d but expected sequence %d on stream %s",
            pcount,
            expected,
            stream.socket,
        )


def _update_jitter(stream: Stream, sent_time: ptime.IperfTime, first_packet: bool) -> None:
    elapsed, _ = ptime.now().diff(sent_time)
    transit = elapsed.in_secs()
    if first_packet:
        stream.prev_transit = transit
    delta = abs(transit - stream.prev_transit)
    stream.prev_transit = transit
    stream.jitter += (delta - stream.jitter) / 16.0


def udp_recv(stream: Stream) -> int:
    """Receive one datagram and update counters, loss and jitter.

    Returns the datagram length, or 0 when nothing was read. Counters are
    only updated while the test is running.
    """
    test = stream.test
    size = stream.settings.blksize
    flags = 0
    if test.settings.skip_rx_copy and _MSG_TRUNC:
        flags = _MSG_TRUNC
        size = _HEADER_64.size

    data = nrecv_no_select(stream.socket, size, flags)
    count = data.length
    if count <= 0:
        return count
    stream.buffer[: len(data)] = data

    if test.state != TestState.TEST_RUNNING:
        if test.debug_level >= DebugLevel.INFO:
            logger.debug("Late receive, state = %d", test.state)
        return count

    first_packet = stream.result.bytes_received == 0
    stream.result.add_received(count)

    raw = bytes(stream.buffer[: _HEADER_64.size]).ljust(_HEADER_64.size, b"\0")
    header = UdpHeader.unpack(raw, test.udp_counters_64bit)
    if test.debug_level >= DebugLevel.DEBUG:
        logger.debug("pcount %d packet_count %d", header.pcount, stream.packet_count)

    _track_sequence(stream, header.pcount)
    _update_jitter(stream, header.sent_time, first_packet)
    return count


def udp_send(stream: Stream) -> int:
    """Stamp and send one datagram; return the number of bytes sent.

    A datagram that could not be sent does not consume a sequence number.
    """
    test = stream.test
    size = stream.settings.blksize
    before = ptime.now()
    stream.packet_count += 1

    header = UdpHeader(before.secs, before.usecs, stream.packet_count).pack(test.udp_counters_64bit)
    stream.buffer[: len(header)] = header

    try:
        sent = nwrite(stream.socket, memoryview(stream.buffer)[:size])
    except NetSoftError as exc:
        stream.packet_count -= 1
        if test.debug_level >= DebugLevel.INFO:
            logger.debug("UDP send failed on NET_SOFTERROR. errno=%s", exc.strerror or exc)
        raise
    except NetHardError:
        stream.packet_count -= 1
        raise

    if sent <= 0:
        stream.packet_count -= 1

    stream.result.add_sent(sent)
    if test.debug_level >= DebugLevel.DEBUG:
        logger.debug("sent %d bytes of %d, total %d", sent, size, stream.result.bytes_sent)
    return sent


def udp_buffercheck(test: TestSession, sock: socket.socket) -> bool:
    """Set and verify socket buffer sizes.

    Returns True when a buffer may be too small to hold one block. Raises
    :class:`IperfError` if the sizes cannot be set or read back, or come out
    smaller than requested.
    """
    settings = test.settings
    wanted = settings.socket_bufsize
    if wanted:
        for option in (socket.SO_RCVBUF, socket.SO_SNDBUF):
            try:
                sock.setsockopt(socket.SOL_SOCKET, option, wanted)
            except OSError as exc:
                raise IperfError(ErrorCode.SET_BUF, str(exc)) from exc

    too_small = False
    actual = {}
    for option, name, role in (
        (socket.SO_SNDBUF, "SNDBUF", "sending"),
        (socket.SO_RCVBUF, "RCVBUF", "receiving"),
    ):
        try:
            size = sock.getsockopt(socket.SOL_SOCKET, option)
        except OSError as exc:
            raise IperfError(ErrorCode.SET_BUF, str(exc)) from exc
        if test.debug:
            logger.debug("%s is %d, expecting %d", name, size, wanted)
        if wanted and wanted > size:
            raise IperfError(ErrorCode.SET_BUF2, f"{name} is {size}, expected {wanted}")
        if settings.blksize > size:
            test.warn(f"Block size {settings.blksize} > {role} socket buffer size {size}")
            too_small = True
        actual[name] = size

    if test.json_output:
        test.add_json_start("sock_bufsize", wanted, overwrite=False)
        test.add_json_start("sndbuf_actual", actual["SNDBUF"], overwrite=False)
        test.add_json_start("rcvbuf_actual", actual["RCVBUF"], overwrite=False)
    return too_small


def _prepare_socket(test: TestSession, sock: socket.socket) -> None:
    """Check buffers, enlarging default-sized ones that are too small, and pace."""
    if udp_buffercheck(test, sock) and test.settings.socket_bufsize == 0:
        bufsize = test.settings.blksize + UDP_BUFFER_EXTRA
        test.warn(f"Increasing socket buffer size to {bufsize}")
        test.settings.socket_bufsize = bufsize
        udp_buffercheck(test, sock)
    _set_pacing(test, sock)
    _log_app_pacing(test)


def udp_accept(test: TestSession) -> socket.socket:
    """Turn the waiting stream listener into a data socket for a new client.

    The listener is connected to the client that just announced itself, a
    fresh listener takes its place, and the client is sent the reply word.
    """
    sock = test.prot_listener
    if sock is None:
        raise IperfError(ErrorCode.STREAM_ACCEPT, "no stream listener")
    try:
        _, peer = sock.recvfrom(_WORD.size)
        sock.connect(peer)
    except OSError as exc:
        raise IperfError(ErrorCode.STREAM_ACCEPT, str(exc)) from exc

    _prepare_socket(test, sock)

    test.read_set.discard(sock)
    try:
        replacement = netannounce(
            test.settings.domain, socket.SOCK_DGRAM, test.bind_address, test.bind_dev, test.server_port
        )
    except OSError as exc:
        test.prot_listener = None
        raise IperfError(ErrorCode.STREAM_LISTEN, str(exc)) from exc
    test.prot_listener = replacement
    test.read_set.add(replacement)

    try:
        sock.send(_WORD.pack(UDP_CONNECT_REPLY))
    except OSError as exc:
        raise IperfError(ErrorCode.STREAM_WRITE, str(exc)) from exc
    return sock


def udp_listen(test: TestSession) -> socket.socket:
    """Open a socket that waits for clients to announce UDP streams."""
    try:
        return netannounce(
            test.settings.domain, socket.SOCK_DGRAM, test.bind_address, test.bind_dev, test.server_port
        )
    except OSError as exc:
        raise IperfError(ErrorCode.STREAM_LISTEN, str(exc)) from exc


def _set_receive_timeout(sock: socket.socket) -> None:
    option = getattr(socket, "SO_RCVTIMEO", None)
    if option is None:
        return
    with contextlib.suppress(OSError):
        sock.setsockopt(socket.SOL_SOCKET, option, struct.pack("@ll", _RECV_TIMEOUT_SECS, 0))


def _await_reply(test: TestSession, sock: socket.socket) -> None:
    limit = _WORD.size
    if test.reverse:
        limit += MAX_REVERSE_OUT_OF_ORDER_PACKETS * test.settings.blksize

    word = bytes(_WORD.size)
    received = 0
    while True:
        try:
            data = sock.recv(_WORD.size)
        except OSError as exc:
            raise IperfError(ErrorCode.STREAM_READ, str(exc)) from exc
        word = data + word[len(data):]
        value = _WORD.unpack(word)[0]
        received += len(data)
        if test.debug:
            logger.debug(
                "Connect received for Socket %s, sz=%d, buf=%x, i=%d, max_len_wait_for_reply=%d",
                sock,
                len(data),
                value,
                received,
                limit,
            )
        if value in _CONNECT_REPLIES or received >= limit:
            break

    if value not in _CONNECT_REPLIES:
        raise IperfError(ErrorCode.STREAM_READ, "no connect reply from server")


def udp_connect(test: TestSession) -> socket.socket:
    """Open a UDP stream to the server and wait for it to be accepted."""
    settings = test.settings
    try:
        sock = netdial(
            settings.domain,
            socket.SOCK_DGRAM,
            test.bind_address,
            test.bind_dev,
            test.bind_port,
            test.server_hostname,
            test.server_port,
            -1,
        )
    except OSError as exc:
        raise IperfError(ErrorCode.STREAM_CONNECT, str(exc)) from exc

    try:
        _prepare_socket(test, sock)
        _set_receive_timeout(sock)
        if test.debug:
            logger.debug("Sending Connect message to Socket %s", sock)
        try:
            sock.send(_WORD.pack(UDP_CONNECT_MSG))
        except OSError as exc:
            raise IperfError(ErrorCode.STREAM_WRITE, str(exc)) from exc
        _await_reply(test, sock)
    except BaseException:
        sock.close()
        raise
    return sock


def udp_init(test: TestSession) -> None:
    """Prepare UDP streams at test start; UDP needs no extra preparation."""
    return None