import pytest

from bwtest.states import TestState, state_to_text


def test_known_texts():
    assert state_to_text(TestState.TEST_RUNNING) == "TEST_RUNNING"
    assert state_to_text(0) == "Test reset"
    assert state_to_text(TestState.ACCESS_DENIED) == "ACCESS_DENIED - Server is busy"
    assert state_to_text(TestState.IPERF_START) == "IPERF_START - waiting for a new test"


@pytest.mark.parametrize("state", list(TestState))
def test_int_and_enum_agree(state):
    text = state_to_text(state)
    assert text == state_to_text(int(state))
    assert text != "Unknown State"


@pytest.mark.parametrize("value", [3, 99, -100])
def test_unknown_state(value):
    assert state_to_text(value) == "Unknown State"


@pytest.mark.parametrize("state", list(TestState))
def test_states_fit_signed_byte(state):
    value = int(state)
    assert -128 <= value <= 127
    assert TestState(value) is state
    assert state_to_text(value) == state_to_text(state)