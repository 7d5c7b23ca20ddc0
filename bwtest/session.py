"""State shared by a test session and its data streams."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from .states import TestState

logger = logging.getLogger(__name__)

COOKIE_SIZE = 37
DEFAULT_TCP_BLKSIZE = 128 * 1024


class DebugLevel(IntEnum):
    """Verbosity thresholds for debugging output."""

    ERROR = 1
    WARN = 2
    INFO = 3
    DEBUG = 4


@dataclass
class Settings:
    """Per-test parameters that also apply to each stream."""

    domain: int = socket.AF_UNSPEC
    blksize: int = DEFAULT_TCP_BLKSIZE
    socket_bufsize: int = 0
    mss: int = 0
    rate: int = 0
    fqrate: int = 0
    bitrate_limit: int = 0
    snd_timeout: int = 0
    flowlabel: int = 0
    skip_rx_copy: bool = False


@dataclass
class StreamResult:
    """Byte counters of one stream, total and for the current interval."""

    bytes_sent: int = 0
    bytes_received: int = 0
    bytes_sent_this_interval: int = 0
    bytes_received_this_interval: int = 0

    def add_sent(self, count: int) -> None:
        self.bytes_sent += count
        self.bytes_sent_this_interval += count

    def add_received(self, count: int) -> None:
        self.bytes_received += count
        self.bytes_received_this_interval += count


@dataclass
class TestSession:
    """One test: its settings, sockets, state and collected output."""

    __test__ = False

    settings: Settings = field(default_factory=Settings)
    state: int = TestState.RESET
    cookie: bytes = b""
    server_hostname: str | None = None
    server_port: int = 5201
    bind_address: str | None = None
    bind_dev: str | None = None
    bind_port: int = 0
    listener: socket.socket | None = None
    prot_listener: socket.socket | None = None
    no_delay: bool = False
    mptcp: bool = False
    zerocopy: bool = False
    reverse: bool = False
    udp_counters_64bit: bool = False
    congestion: str | None = None
    json_output: bool = False
    json_start: dict[str, Any] = field(default_factory=dict)
    debug: bool = False
    debug_level: int = 0
    read_set: set = field(default_factory=set)
    write_set: set = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        """Record and log a non-fatal problem."""
        self.warnings.append(message)
        logger.warning("%s", message)

    def add_json_start(self, key: str, value: Any, overwrite: bool = True) -> bool:
        """Store ``value`` under ``key`` in the start section of JSON output.

        With ``overwrite`` false an existing entry is kept. Returns whether
        the value was stored.
        """
        if not overwrite and key in self.json_start:
            return False
        self.json_start[key] = value
        return True


@dataclass
class Stream:
    """A single data connection belonging to a test."""

    test: TestSession
    socket: socket.socket | None = None
    sender: bool = False
    settings: Settings | None = None
    result: StreamResult = field(default_factory=StreamResult)
    buffer: bytearray | None = None
    buffer_fd: int | None = None
    pending_size: int = 0
    packet_count: int = 0
    cnt_error: int = 0
    outoforder_packets: int = 0
    prev_transit: float = 0.0
    jitter: float = 0.0
    done: bool = False

    def __post_init__(self) -> None:
        if self.settings is None:
            self.settings = self.test.settings
        if self.buffer is None:
            self.buffer = bytearray(self.settings.blksize)