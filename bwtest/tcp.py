"""TCP data streams: sending, receiving, listening and connecting."""

from __future__ import annotations

import errno
import logging
import socket
import struct
import sys

from .errors import ErrorCode, IperfError, NetHardError
from .net import create_socket, nread, nrecv_no_select, nsendfile, nwrite
from .session import COOKIE_SIZE, Stream, TestSession
from .states import TestState, state_to_text

logger = logging.getLogger(__name__)

_IS_LINUX = sys.platform.startswith("linux")
_MAX_BACKLOG = 2**31 - 1
_HAVE_V6ONLY = hasattr(socket, "IPV6_V6ONLY") and not sys.platform.startswith("openbsd")
_MSG_TRUNC = getattr(socket, "MSG_TRUNC", 0)
_SO_MAX_PACING_RATE = getattr(socket, "SO_MAX_PACING_RATE", 47 if _IS_LINUX else None)
_TCP_USER_TIMEOUT = getattr(socket, "TCP_USER_TIMEOUT", None)
_IPPROTO_MPTCP = getattr(socket, "IPPROTO_MPTCP", None)

# IPv6 flow label management (Linux).
_IPV6_FLOWLABEL_MGR = 32
_IPV6_FLOWINFO_SEND = 33
_IPV6_FLOWINFO_FLOWLABEL = 0x000FFFFF
_IPV6_FL_A_GET = 0
_IPV6_FL_F_CREATE = 1
_IPV6_FL_S_ANY = 255

_ACCESS_DENIED_BYTE = struct.pack("b", TestState.ACCESS_DENIED)


def tcp_recv(stream: Stream) -> int:
    """Read one block from the stream's socket into its buffer.

    Returns the number of bytes consumed. Bytes are only counted while the
    test is running. Raises :class:`NetHardError` on socket errors.
    """
    test = stream.test
    flags = _MSG_TRUNC if test.settings.skip_rx_copy else 0
    data = nrecv_no_select(stream.socket, stream.settings.blksize, flags)
    stream.buffer[: len(data)] = data
    count = data.length

    if test.state == TestState.TEST_RUNNING:
        stream.result.add_received(count)
    elif test.debug:
        logger.debug("Late receive, state = %d-%s", test.state, state_to_text(test.state))
    return count


def tcp_send(stream: Stream) -> int:
    """Send the pending part of one block; return the number of bytes sent.

    Raises :class:`NetSoftError` or :class:`NetHardError` as the write does.
    """
    test = stream.test
    if not stream.pending_size:
        stream.pending_size = stream.settings.blksize

    if test.zerocopy:
        sent = nsendfile(stream.buffer_fd, stream.socket, stream.pending_size)
    else:
        sent = nwrite(stream.socket, memoryview(stream.buffer)[: stream.pending_size])

    stream.pending_size -= sent
    stream.result.add_sent(sent)

    if test.debug_level >= 4:
        logger.debug(
            "sent %d bytes of %d, pending %d, total %d",
            sent,
            stream.settings.blksize,
            stream.pending_size,
            stream.result.bytes_sent,
        )
    return sent


def _cookie_key(cookie: bytes) -> bytes:
    return bytes(cookie[:COOKIE_SIZE]).split(b"\0", 1)[0]


def _set_pacing(test: TestSession, sock: socket.socket) -> None:
    if not test.settings.fqrate or _SO_MAX_PACING_RATE is None:
        return
    fqrate = test.settings.fqrate // 8
    if fqrate <= 0:
        return
    if test.debug:
        logger.debug("Setting fair-queue socket pacing to %d", fqrate)
    try:
        sock.setsockopt(socket.SOL_SOCKET, _SO_MAX_PACING_RATE, struct.pack("=Q", fqrate))
    except OSError:
        test.warn("Unable to set socket pacing")


def _log_app_pacing(test: TestSession) -> None:
    rate = test.settings.rate // 8
    if rate > 0 and test.debug:
        logger.debug("Setting application pacing to %d", rate)


def tcp_accept(test: TestSession) -> socket.socket:
    """Accept a data connection on the test's listener and check its cookie.

    A connection carrying the wrong cookie is refused with ACCESS_DENIED and
    closed; the closed socket is still returned so the caller can skip it.
    """
    if test.listener is None:
        raise IperfError(ErrorCode.STREAM_CONNECT, "no listener")
    try:
        sock, _ = test.listener.accept()
    except OSError as exc:
        raise IperfError(ErrorCode.STREAM_CONNECT, str(exc)) from exc

    _set_pacing(test, sock)

    try:
        cookie = nread(sock, COOKIE_SIZE)
    except NetHardError as exc:
        sock.close()
        raise IperfError(ErrorCode.RECV_COOKIE, str(exc)) from exc

    if _cookie_key(test.cookie) != _cookie_key(cookie):
        try:
            nwrite(sock, _ACCESS_DENIED_BYTE)
        except OSError as exc:
            logger.error(
                "failed to send access denied from busy server to new connecting client, errno = %s",
                exc.errno,
            )
        sock.close()
    return sock


def _setopt(sock: socket.socket, level: int, option: int, value, code: ErrorCode) -> None:
    try:
        sock.setsockopt(level, option, value)
    except OSError as exc:
        sock.close()
        raise IperfError(code, str(exc)) from exc


def _apply_tcp_options(test: TestSession, sock: socket.socket) -> None:
    settings = test.settings
    if test.no_delay:
        _setopt(sock, socket.IPPROTO_TCP, socket.TCP_NODELAY, 1, ErrorCode.SET_NODELAY)
    if settings.mss:
        _setopt(sock, socket.IPPROTO_TCP, socket.TCP_MAXSEG, settings.mss, ErrorCode.SET_MSS)
    if settings.socket_bufsize:
        _setopt(sock, socket.SOL_SOCKET, socket.SO_RCVBUF, settings.socket_bufsize, ErrorCode.SET_BUF)
        _setopt(sock, socket.SOL_SOCKET, socket.SO_SNDBUF, settings.socket_bufsize, ErrorCode.SET_BUF)


def _verify_buffers(test: TestSession, sock: socket.socket) -> tuple[int, int]:
    """Read back the socket buffer sizes and check them against the request."""
    wanted = test.settings.socket_bufsize
    actual = []
    for option, name in ((socket.SO_SNDBUF, "SNDBUF"), (socket.SO_RCVBUF, "RCVBUF")):
        try:
            size = sock.getsockopt(socket.SOL_SOCKET, option)
        except OSError as exc:
            sock.close()
            raise IperfError(ErrorCode.SET_BUF, str(exc)) from exc
        if test.debug:
            logger.debug("%s is %d, expecting %d", name, size, wanted)
        if wanted and wanted > size:
            sock.close()
            raise IperfError(ErrorCode.SET_BUF2, f"{name} is {size}, expected {wanted}")
        actual.append(size)
    return actual[0], actual[1]


def _record_buffers(test: TestSession, sndbuf: int, rcvbuf: int, overwrite: bool) -> None:
    if not test.json_output:
        return
    test.add_json_start("sock_bufsize", test.settings.socket_bufsize, overwrite)
    test.add_json_start("sndbuf_actual", sndbuf, overwrite)
    test.add_json_start("rcvbuf_actual", rcvbuf, overwrite)


def _recreate_listener(test: TestSession) -> socket.socket:
    old = test.listener
    if old is not None:
        test.read_set.discard(old)
        old.close()

    domain = test.settings.domain
    family = socket.AF_INET6 if domain == socket.AF_UNSPEC and not test.bind_address else domain
    try:
        info = socket.getaddrinfo(
            test.bind_address, str(test.server_port), family, socket.SOCK_STREAM, 0, socket.AI_PASSIVE
        )[0]
    except OSError as exc:
        raise IperfError(ErrorCode.STREAM_LISTEN, str(exc)) from exc
    res_family, sockaddr = info[0], info[4]

    proto = _IPPROTO_MPTCP if test.mptcp and _IPPROTO_MPTCP is not None else 0
    try:
        sock = socket.socket(res_family, socket.SOCK_STREAM, proto)
    except OSError as exc:
        raise IperfError(ErrorCode.STREAM_LISTEN, str(exc)) from exc

    _apply_tcp_options(test, sock)
    _log_app_pacing(test)
    _setopt(sock, socket.SOL_SOCKET, socket.SO_REUSEADDR, 1, ErrorCode.REUSE_ADDR)

    if _HAVE_V6ONLY and res_family == socket.AF_INET6 and domain in (socket.AF_UNSPEC, socket.AF_INET):
        v6only = 0 if domain == socket.AF_UNSPEC else 1
        _setopt(sock, socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, v6only, ErrorCode.V6_ONLY)

    try:
        sock.bind(sockaddr)
        sock.listen(_MAX_BACKLOG)
    except OSError as exc:
        sock.close()
        raise IperfError(ErrorCode.STREAM_LISTEN, str(exc)) from exc

    test.listener = sock
    return sock


def tcp_listen(test: TestSession) -> socket.socket:
    """Prepare the listener for TCP data connections and return it.

    When no-delay, MPTCP, MSS or a buffer size is requested, the listener is
    replaced by a fresh one carrying those options.
    """
    settings = test.settings
    if test.no_delay or test.mptcp or settings.mss or settings.socket_bufsize:
        sock = _recreate_listener(test)
    else:
        sock = test.listener
        if sock is None:
            raise IperfError(ErrorCode.STREAM_LISTEN, "no listener")

    sndbuf, rcvbuf = _verify_buffers(test, sock)
    _record_buffers(test, sndbuf, rcvbuf, overwrite=True)
    return sock


def _set_flowlabel(test: TestSession, sock: socket.socket, server_addr):
    if sock.family != socket.AF_INET6:
        sock.close()
        raise IperfError(ErrorCode.SET_FLOW, "flow label requires IPv6")
    if not _IS_LINUX:
        sock.close()
        raise IperfError(ErrorCode.SET_FLOW, "flow labels are not supported on this platform")

    label = test.settings.flowlabel & _IPV6_FLOWINFO_FLOWLABEL
    dst = socket.inet_pton(socket.AF_INET6, server_addr[0].split("%", 1)[0])
    request = struct.pack(
        "!16sIBBHHHI", dst, label, _IPV6_FL_A_GET, _IPV6_FL_S_ANY, 0, 0, 0, 0
    )
    # flr_flags is a host-order field; patch it in after the network-order pack.
    request = request[:22] + struct.pack("=H", _IPV6_FL_F_CREATE) + request[24:]
    _setopt(sock, socket.IPPROTO_IPV6, _IPV6_FLOWLABEL_MGR, request, ErrorCode.SET_FLOW)
    _setopt(sock, socket.IPPROTO_IPV6, _IPV6_FLOWINFO_SEND, 1, ErrorCode.SET_FLOW)
    return (server_addr[0], server_addr[1], label, *server_addr[3:])


def tcp_connect(test: TestSession) -> socket.socket:
    """Open a TCP data connection to the server and send the test cookie."""
    settings = test.settings
    proto = _IPPROTO_MPTCP if test.mptcp and _IPPROTO_MPTCP is not None else 0
    try:
        sock, server_addr = create_socket(
            settings.domain,
            socket.SOCK_STREAM,
            proto,
            test.bind_address,
            test.bind_dev,
            test.bind_port,
            test.server_hostname,
            test.server_port,
        )
    except OSError as exc:
        raise IperfError(ErrorCode.STREAM_CONNECT, str(exc)) from exc

    _apply_tcp_options(test, sock)
    if settings.snd_timeout and _TCP_USER_TIMEOUT is not None:
        _setopt(sock, socket.IPPROTO_TCP, _TCP_USER_TIMEOUT, settings.snd_timeout, ErrorCode.SET_USER_TIMEOUT)

    sndbuf, rcvbuf = _verify_buffers(test, sock)
    _record_buffers(test, sndbuf, rcvbuf, overwrite=False)

    if settings.flowlabel:
        server_addr = _set_flowlabel(test, sock, server_addr)

    _set_pacing(test, sock)
    _log_app_pacing(test)

    err = sock.connect_ex(server_addr)
    if err and err != errno.EINPROGRESS:
        sock.close()
        raise IperfError(ErrorCode.STREAM_CONNECT, errno.errorcode.get(err, str(err)))

    try:
        nwrite(sock, bytes(test.cookie[:COOKIE_SIZE]).ljust(COOKIE_SIZE, b"\0"))
    except OSError as exc:
        sock.close()
        raise IperfError(ErrorCode.SEND_COOKIE, str(exc)) from exc
    return sock