"""Error types raised by the test machinery."""

from __future__ import annotations

from enum import Enum


class ErrorCode(Enum):
    """Failure causes; each value is a human-readable description."""

    INIT_TEST = "test initialization failed"
    LISTEN = "unable to start listener for connections"
    ACCEPT = "unable to accept connection from client"
    SET_NODELAY = "unable to set TCP NODELAY"
    SET_MSS = "unable to set TCP MSS"
    SET_BUF = "unable to set socket buffer size"
    SET_BUF2 = "socket buffer size not set correctly"
    REUSE_ADDR = "unable to reuse address on socket"
    V6_ONLY = "unable to set/reset IPV6_V6ONLY socket option"
    SET_USER_TIMEOUT = "unable to set TCP USER_TIMEOUT"
    SET_FLOW = "unable to set IPv6 flow label"
    SET_CONGESTION = "unable to set TCP_CONGESTION"
    SEND_COOKIE = "unable to send cookie to server"
    RECV_COOKIE = "unable to receive cookie at server"
    STREAM_CONNECT = "unable to connect stream"
    STREAM_LISTEN = "unable to start stream listener"
    STREAM_ACCEPT = "unable to accept stream connection"
    STREAM_WRITE = "unable to write to stream socket"
    STREAM_READ = "unable to read from stream socket"
    SELECT = "select failed"

    @property
    def description(self) -> str:
        return self.value


class IperfError(Exception):
    """A test-level failure identified by an :class:`ErrorCode`."""

    def __init__(self, code: ErrorCode, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.detail:
            return f"{self.code.description}: {self.detail}"
        return self.code.description


class NetSoftError(OSError):
    """A transient network failure; the operation may be retried."""

    status = -1


class NetHardError(OSError):
    """A fatal network failure on a socket."""

    status = -2