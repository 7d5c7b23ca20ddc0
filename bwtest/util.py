"""Assorted helpers: entropy, cookies, timevals, CPU usage and JSON building."""

from __future__ import annotations

import errno
import logging
import os
import platform
import select
import socket
import threading
import time
from typing import IO, Any, Iterable

from . import ptime
from .session import COOKIE_SIZE

logger = logging.getLogger(__name__)

_COOKIE_CHARS = b"abcdefghijklmnopqrstuvwxyz234567"
_SYSTEM_INFO_MAX = 1023


def readentropy(size: int) -> bytes:
    """Return ``size`` bytes from the system's random source.

    Failure to read the random source propagates as :class:`OSError`.
    """
    if size <= 0:
        return b""
    return os.urandom(size)


def fill_with_repeating_pattern(size: int) -> bytes:
    """Return ``size`` bytes of the repeating digits ``0123456789``."""
    if size <= 0:
        return b""
    digits = b"0123456789"
    repeats, extra = divmod(size, len(digits))
    return digits * repeats + digits[:extra]


def make_cookie() -> bytes:
    """Generate a test cookie: random lower-case/digit characters ending in NUL.

    The result is exactly ``COOKIE_SIZE`` bytes long, as sent on the wire.
    """
    raw = readentropy(COOKIE_SIZE)
    body = bytes(_COOKIE_CHARS[b % len(_COOKIE_CHARS)] for b in raw[: COOKIE_SIZE - 1])
    return body + b"\0"


def _fileno(sock: socket.socket | int) -> int:
    return sock if isinstance(sock, int) else sock.fileno()


def is_closed(sock: socket.socket | int) -> bool:
    """Tell whether a socket (or raw descriptor) has been closed."""
    try:
        fd = _fileno(sock)
    except OSError:
        return True
    if fd < 0:
        return True
    try:
        select.select([fd], [], [], 0)
    except OSError as exc:
        return exc.errno == errno.EBADF
    except ValueError:
        return True
    return False


def timeval_to_double(tv: tuple[int, int]) -> float:
    """Convert a ``(seconds, microseconds)`` pair to seconds.

    Microseconds are divided with integer division, so only whole
    seconds held in the microsecond field contribute.
    """
    sec, usec = tv
    return float(sec + usec // 1_000_000)


def timeval_equals(tv0: tuple[int, int], tv1: tuple[int, int]) -> bool:
    """Whether two ``(seconds, microseconds)`` pairs are identical."""
    return tuple(tv0) == tuple(tv1)


def timeval_diff(tv0: tuple[int, int], tv1: tuple[int, int]) -> float:
    """Absolute difference in seconds between two ``(sec, usec)`` pairs."""
    t0 = tv0[0] + tv0[1] / 1_000_000.0
    t1 = tv1[0] + tv1[1] / 1_000_000.0
    return abs(t0 - t1)


class CpuMeter:
    """Measures this process's CPU use between :meth:`start` and :meth:`sample`."""

    def __init__(self) -> None:
        self.start()

    def start(self) -> None:
        """Begin a new measurement period."""
        self._last = ptime.now()
        self._clock = time.process_time()
        times = os.times()
        self._user = times.user
        self._system = times.system

    def sample(self) -> tuple[float, float, float]:
        """Return (total, user, system) CPU use as percentages of elapsed time."""
        current = ptime.now()
        clock = time.process_time()
        times = os.times()

        elapsed, _ = current.diff(self._last)
        timediff = float(elapsed.in_usecs())
        if timediff <= 0:
            return 0.0, 0.0, 0.0

        userdiff = (times.user - self._user) * 1_000_000.0
        systemdiff = (times.system - self._system) * 1_000_000.0
        clockdiff = (clock - self._clock) * 1_000_000.0
        return (
            clockdiff / timediff * 100,
            userdiff / timediff * 100,
            systemdiff / timediff * 100,
        )


def get_system_info() -> str:
    """Describe the host: system, node, release, version and machine."""
    uts = platform.uname()
    info = f"{uts.system} {uts.node} {uts.release} {uts.version} {uts.machine}"
    return info[:_SYSTEM_INFO_MAX]


def _optional_features() -> list[str]:
    features = []
    if hasattr(os, "sched_setaffinity"):
        features.append("CPU affinity setting")
    if hasattr(socket, "IPV6_FLOWLABEL_MGR"):
        features.append("IPv6 flow label")
    if hasattr(socket, "TCP_CONGESTION"):
        features.append("TCP congestion algorithm setting")
    if hasattr(os, "sendfile"):
        features.append("sendfile / zerocopy")
    if hasattr(socket, "SO_MAX_PACING_RATE"):
        features.append("socket pacing")
    if hasattr(socket, "SO_BINDTODEVICE"):
        features.append("bind to device")
    if any(hasattr(socket, name) for name in ("IP_MTU_DISCOVER", "IP_DONTFRAG", "IP_DONTFRAGMENT")):
        features.append("support IPv4 don't fragment")
    if threading is not None:
        features.append("POSIX threads")
    return features


def get_optional_features() -> str:
    """List the optional capabilities available on this platform."""
    features = _optional_features()
    listed = ", ".join(features) if features else "None"
    return f"Optional features available: {listed}"


def json_printf(fmt: str, *args: Any) -> dict[str, Any]:
    """Build a JSON-ready dict from a ``name: %x`` style format.

    Conversions: ``%b`` boolean, ``%d`` integer, ``%f`` float, ``%s`` string.
    A colon ends a field name and blanks are ignored. An unknown conversion,
    a missing argument or a ``None`` string raises :class:`ValueError`.
    """
    converters = {"b": bool, "d": int, "f": float, "s": str}
    result: dict[str, Any] = {}
    name: list[str] = []
    values = iter(args)
    chars = iter(fmt)
    for ch in chars:
        if ch in " :":
            continue
        if ch != "%":
            name.append(ch)
            continue
        spec = next(chars, "")
        convert = converters.get(spec)
        if convert is None:
            raise ValueError(f"unsupported conversion %{spec} in {fmt!r}")
        try:
            value = next(values)
        except StopIteration:
            raise ValueError(f"missing argument for %{spec} in {fmt!r}") from None
        if spec == "s" and value is None:
            raise ValueError("string value must not be None")
        result["".join(name)] = convert(value)
        name.clear()
    return result


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


_TYPE_CHECKS = {
    bool: lambda v: isinstance(v, bool),
    str: lambda v: isinstance(v, str),
    int: _is_number,
    float: _is_number,
    list: lambda v: isinstance(v, list),
}


def get_object_item_type(obj: dict[str, Any], key: str, expected_type: type) -> Any:
    """Return ``obj[key]`` if present and of the expected JSON type, else None.

    ``expected_type`` is one of ``bool``, ``str``, ``int``/``float`` (any
    number) or ``list``. Type mismatches are logged as errors.
    """
    if key not in obj:
        return None
    check = _TYPE_CHECKS.get(expected_type)
    if check is None:
        logger.error("unsupported type")
        return None
    value = obj[key]
    if check(value):
        return value
    logger.error("get_object_item_type mismatch %s", key)
    return None


def dump_fdset(stream: IO[str], label: str, nfds: int, fds: Iterable[socket.socket | int]) -> None:
    """Write the descriptors below ``nfds`` in ``fds`` as ``label: [a, b]``."""
    members = set()
    for item in fds:
        try:
            members.add(_fileno(item))
        except OSError:
            continue
    shown = ", ".join(str(fd) for fd in range(nfds) if fd in members)
    stream.write(f"{label}: [{shown}]\n")