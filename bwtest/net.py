"""Socket helpers: dialing, listening and robust reads and writes."""

from __future__ import annotations

import errno
import os
import select
import socket
import sys

from . import ptime
from .errors import NetHardError, NetSoftError

NREAD_READ_TIMEOUT = 10
"""Seconds :func:`nrecv` waits for each batch of data to arrive."""

NREAD_OVERALL_TIMEOUT = 30
"""Approximate upper bound, in seconds, on one :func:`nrecv` call."""

_IFNAMSIZ = 16
_MAX_BACKLOG = 2**31 - 1
_RETRY_LATER = (BlockingIOError, InterruptedError, TimeoutError)
_HAVE_V6ONLY = hasattr(socket, "IPV6_V6ONLY") and not sys.platform.startswith("openbsd")


class Received(bytes):
    """Data read from a socket.

    ``length`` is the number of bytes consumed from the socket. It equals
    ``len(self)`` except when ``MSG_TRUNC`` reported more than was copied.
    """

    def __new__(cls, data: bytes = b"", length: int | None = None) -> Received:
        obj = super().__new__(cls, data)
        obj.length = len(obj) if length is None else length
        return obj


def _fileno(obj: socket.socket | int) -> int:
    return obj if isinstance(obj, int) else obj.fileno()


def _bind_to_device(sock: socket.socket, bind_dev: str) -> None:
    option = getattr(socket, "SO_BINDTODEVICE", None)
    if option is None:
        raise OSError(errno.ENOPROTOOPT, "binding to a device is not supported on this platform")
    name = bind_dev.encode().ljust(_IFNAMSIZ, b"\0")[:_IFNAMSIZ]
    sock.setsockopt(socket.SOL_SOCKET, option, name)


def _wait_writable(sock: socket.socket, timeout_ms: int) -> bool:
    timeout = None if timeout_ms < 0 else timeout_ms / 1000
    _, writable, _ = select.select([], [sock], [], timeout)
    return bool(writable)


def timeout_connect(sock: socket.socket, address, timeout: int) -> None:
    """Connect ``sock`` to ``address`` within ``timeout`` milliseconds.

    A timeout of -1 waits as long as the socket's own blocking mode does.
    Raises :class:`TimeoutError` when the time runs out and :class:`OSError`
    for any other connection failure. The socket's blocking mode is restored.
    """
    saved = sock.gettimeout()
    if timeout != -1:
        sock.setblocking(False)
    try:
        err = sock.connect_ex(address)
        if err == errno.EINPROGRESS:
            if not _wait_writable(sock, timeout):
                raise TimeoutError(errno.ETIMEDOUT, os.strerror(errno.ETIMEDOUT))
            err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if err:
            raise OSError(err, os.strerror(err))
    finally:
        if timeout != -1:
            sock.settimeout(saved)


def create_socket(domain, type, proto, local, bind_dev, local_port, server, port):
    """Create a socket aimed at ``server``:``port``, bound locally if asked.

    Returns ``(sock, server_address)``. The socket is bound to ``local``
    (with ``local_port`` if non-zero), or to the wildcard address and
    ``local_port`` when only a port is given.
    """
    local_addr = None
    if local:
        local_addr = socket.getaddrinfo(local, None, domain, type)[0][4]
    server_info = socket.getaddrinfo(server, str(port), domain, type)[0]
    family, server_addr = server_info[0], server_info[4]

    sock = socket.socket(family, type, proto)
    try:
        if bind_dev:
            _bind_to_device(sock, bind_dev)
        if local_addr is not None:
            if local_port:
                local_addr = (local_addr[0], local_port, *local_addr[2:])
            sock.bind(local_addr)
        elif local_port:
            if family == socket.AF_INET:
                sock.bind(("0.0.0.0", local_port))
            elif family == socket.AF_INET6:
                sock.bind(("::", local_port, 0, 0))
            else:
                raise OSError(errno.EAFNOSUPPORT, os.strerror(errno.EAFNOSUPPORT))
    except BaseException:
        sock.close()
        raise
    return sock, server_addr


def netdial(domain, proto, local, bind_dev, local_port, server, port, timeout):
    """Open a socket of type ``proto`` and connect it to ``server``:``port``.

    ``timeout`` is in milliseconds, -1 for none. A connection still in
    progress is not an error.
    """
    sock, server_addr = create_socket(domain, proto, 0, local, bind_dev, local_port, server, port)
    try:
        timeout_connect(sock, server_addr, timeout)
    except OSError as exc:
        if exc.errno != errno.EINPROGRESS:
            sock.close()
            raise
    return sock


def netannounce(domain, proto, local, bind_dev, port):
    """Open a socket of type ``proto`` bound to ``local``:``port``.

    Stream sockets are put into listening state. With no address family
    and no local address an IPv6 socket is made that also accepts IPv4.
    """
    family = socket.AF_INET6 if domain == socket.AF_UNSPEC and not local else domain
    info = socket.getaddrinfo(local, str(port), family, proto, 0, socket.AI_PASSIVE)[0]
    res_family, sockaddr = info[0], info[4]

    sock = socket.socket(res_family, proto, 0)
    try:
        if bind_dev:
            _bind_to_device(sock, bind_dev)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if (
            _HAVE_V6ONLY
            and res_family == socket.AF_INET6
            and domain in (socket.AF_UNSPEC, socket.AF_INET6)
        ):
            v6only = 0 if domain == socket.AF_UNSPEC else 1
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, v6only)
        sock.bind(sockaddr)
        if proto == socket.SOCK_STREAM:
            sock.listen(_MAX_BACKLOG)
    except BaseException:
        sock.close()
        raise
    return sock


def _wait_readable(sock: socket.socket, timeout: float) -> bool:
    try:
        readable, _, _ = select.select([sock], [], [], timeout)
    except (OSError, ValueError) as exc:
        code = getattr(exc, "errno", None) or errno.EBADF
        raise NetHardError(code, str(exc)) from exc
    return bool(readable)


def _receive(sock: socket.socket, count: int, flags: int, wait: bool) -> Received:
    buf = bytearray(count)
    view = memoryview(buf)
    total = 0
    nleft = count
    deadline = None
    while nleft > 0:
        try:
            if flags:
                r = sock.recv_into(view[total:], nleft, flags)
            else:
                r = sock.recv_into(view[total:], nleft)
        except _RETRY_LATER:
            break
        except OSError as exc:
            raise NetHardError(exc.errno, exc.strerror or str(exc)) from exc
        if r == 0:
            break
        total += r
        nleft -= r

        if nleft > 0 and wait:
            current = ptime.now()
            if deadline is None:
                deadline = current.add_usecs(int(NREAD_OVERALL_TIMEOUT * 1_000_000))
            if deadline.compare(current) < 0:
                break
            if not _wait_readable(sock, NREAD_READ_TIMEOUT):
                break
    view.release()
    return Received(bytes(buf[: min(total, count)]), total)


def nrecv(sock: socket.socket, count: int, flags: int) -> Received:
    """Read up to ``count`` bytes, waiting a bounded time for them.

    Returns what arrived before the peer closed, a read timeout expired or
    the overall time limit passed; nothing if no data came at all.
    Raises :class:`NetHardError` on socket errors.
    """
    if not _wait_readable(sock, NREAD_READ_TIMEOUT):
        return Received(b"")
    return _receive(sock, count, flags, wait=True)


def nread(sock: socket.socket, count: int) -> Received:
    """:func:`nrecv` without receive flags."""
    return nrecv(sock, count, 0)


def nrecv_no_select(sock: socket.socket, count: int, flags: int) -> Received:
    """Read up to ``count`` bytes without waiting for readiness first.

    Stops when the peer closes or the socket would block.
    Raises :class:`NetHardError` on socket errors.
    """
    return _receive(sock, count, flags, wait=False)


def nread_no_select(sock: socket.socket, count: int) -> Received:
    """:func:`nrecv_no_select` without receive flags."""
    return nrecv_no_select(sock, count, 0)


def nwrite(sock: socket.socket, data) -> int:
    """Write all of ``data``; return the number of bytes written.

    If the socket would block after part of the data went out, the partial
    count is returned. Raises :class:`NetSoftError` when nothing could be
    written for a transient reason and :class:`NetHardError` otherwise.
    """
    view = memoryview(data)
    count = view.nbytes
    sent = 0
    while sent < count:
        try:
            r = sock.send(view[sent:])
        except _RETRY_LATER as exc:
            if sent == 0:
                raise NetSoftError(exc.errno, str(exc)) from exc
            return sent
        except OSError as exc:
            if exc.errno == errno.ENOBUFS:
                raise NetSoftError(exc.errno, exc.strerror or str(exc)) from exc
            raise NetHardError(exc.errno, exc.strerror or str(exc)) from exc
        if r == 0:
            raise NetSoftError(errno.EAGAIN, "no data could be written")
        sent += r
    return count


def has_sendfile() -> bool:
    """Whether zero-copy file sending is available."""
    return hasattr(os, "sendfile")


def nsendfile(fromfd, sock: socket.socket, count: int) -> int:
    """Send ``count`` bytes from the start of file ``fromfd`` to ``sock``.

    Error handling follows :func:`nwrite`.
    """
    if not has_sendfile():
        raise NetHardError(errno.ENOSYS, os.strerror(errno.ENOSYS))
    in_fd = _fileno(fromfd)
    out_fd = _fileno(sock)
    nleft = count
    while nleft > 0:
        offset = count - nleft
        try:
            r = os.sendfile(out_fd, in_fd, offset, nleft)
        except _RETRY_LATER as exc:
            if nleft == count:
                raise NetSoftError(exc.errno, str(exc)) from exc
            return count - nleft
        except OSError as exc:
            if exc.errno in (errno.ENOBUFS, errno.ENOMEM):
                raise NetSoftError(exc.errno, exc.strerror or str(exc)) from exc
            raise NetHardError(exc.errno, exc.strerror or str(exc)) from exc
        if r == 0:
            raise NetSoftError(errno.EAGAIN, "no data could be sent")
        nleft -= r
    return count


def setnonblocking(sock, nonblocking: bool) -> None:
    """Switch a socket or descriptor between blocking and non-blocking mode."""
    if isinstance(sock, int):
        os.set_blocking(sock, not nonblocking)
    else:
        sock.setblocking(not nonblocking)


def getsockdomain(sock: socket.socket) -> socket.AddressFamily:
    """Address family of a socket; raises :class:`OSError` if it is unusable."""
    sock.getsockname()
    return socket.AddressFamily(sock.family)