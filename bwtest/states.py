"""Protocol states exchanged on the control connection."""

from __future__ import annotations

from enum import IntEnum


class TestState(IntEnum):
    """States of a test, as sent in single signed bytes on the wire."""

    __test__ = False

    RESET = 0
    TEST_START = 1
    TEST_RUNNING = 2
    TEST_END = 4
    PARAM_EXCHANGE = 9
    CREATE_STREAMS = 10
    SERVER_TERMINATE = 11
    CLIENT_TERMINATE = 12
    EXCHANGE_RESULTS = 13
    DISPLAY_RESULTS = 14
    IPERF_START = 15
    IPERF_DONE = 16
    ACCESS_DENIED = -1
    SERVER_ERROR = -2


_STATE_TEXT = {
    TestState.RESET: "Test reset",
    TestState.TEST_START: "TEST_START - starting a new test",
    TestState.TEST_RUNNING: "TEST_RUNNING",
    TestState.TEST_END: "TEST_END",
    TestState.PARAM_EXCHANGE: "PARAM_EXCHANGE - Client to Server Parameters Exchange",
    TestState.CREATE_STREAMS: "CREATE_STREAMS",
    TestState.SERVER_TERMINATE: "SERVER_TERMINATE",
    TestState.CLIENT_TERMINATE: "CLIENT_TERMINATE",
    TestState.EXCHANGE_RESULTS: "EXCHANGE_RESULTS",
    TestState.DISPLAY_RESULTS: "DISPLAY_RESULTS",
    TestState.IPERF_START: "IPERF_START - waiting for a new test",
    TestState.IPERF_DONE: "IPERF_DONE",
    TestState.ACCESS_DENIED: "ACCESS_DENIED - Server is busy",
    TestState.SERVER_ERROR: "SERVER_ERROR",
}


def state_to_text(state: int) -> str:
    """Describe a numeric state for debugging output."""
    try:
        return _STATE_TEXT[TestState(state)]
    except ValueError:
        return "Unknown State"