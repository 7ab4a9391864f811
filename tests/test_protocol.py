"""Unit tests for control lines and the session transition table."""

import pytest

from resident import ControlMessage
from resident import MessageCode
from resident import ResidentCrashError
from resident import ResidentProtocolError
from resident import ResidentRemoteError
from resident import SessionState
from resident.protocol import BINARY_MARKER
from resident.protocol import decode_payload
from resident.protocol import encode_payload
from resident.protocol import format_message
from resident.protocol import parse_message
from resident.session import TRANSITIONS
from resident.session import next_state


def test_format_and_parse_plain_message() -> None:
    """Write and read one text control line."""
    line: str = format_message(MessageCode.DONE, "done abc.result")
    assert line == "200 done abc.result\n"
    message: ControlMessage = parse_message(line)
    assert message.code is MessageCode.DONE
    assert message.text == "done abc.result"
    assert message.payload is None


def test_parse_message_without_text() -> None:
    """Accept a line carrying only a code."""
    message: ControlMessage = parse_message("201")
    assert message.code is MessageCode.READY
    assert message.text == ""


def test_format_rejects_multiline_text() -> None:
    """Refuse text that would split the control line."""
    with pytest.raises(ValueError):
        format_message(MessageCode.DONE, "first\nsecond")


def test_parse_rejects_unknown_and_malformed_codes() -> None:
    """Raise protocol errors for unknown or missing codes."""
    with pytest.raises(ResidentProtocolError):
        parse_message("999 unknown")
    with pytest.raises(ResidentProtocolError):
        parse_message("hello world")
    with pytest.raises(ResidentProtocolError):
        parse_message("")


def test_payload_lines_carry_values() -> None:
    """Decode embedded binary payloads and blank the text."""
    error: ResidentRemoteError = ResidentRemoteError("RuntimeError", "hook failed", "Traceback ...")
    text: str = encode_payload(error)
    assert text.startswith(BINARY_MARKER)
    assert "\n" not in text

    message: ControlMessage = parse_message(format_message(MessageCode.CRASHED, text))
    assert message.code is MessageCode.CRASHED
    assert message.text == ""
    assert isinstance(message.payload, ResidentRemoteError) is True
    assert message.payload.remote_message == "hook failed"


def test_decode_payload_rejects_garbage() -> None:
    """Raise protocol errors for corrupt payloads."""
    with pytest.raises(ResidentProtocolError):
        decode_payload(BINARY_MARKER + "not base64!")


def test_crash_error_pickles_code() -> None:
    """Keep the reporting code when a crash error is pickled."""
    error: ResidentCrashError = ResidentCrashError("worker crashed with exit code 3", 501)
    message: ControlMessage = parse_message(format_message(MessageCode.CRASHED, encode_payload(error)))
    assert isinstance(message.payload, ResidentCrashError) is True
    assert message.payload.code == 501
    assert str(message.payload) == "worker crashed with exit code 3"


@pytest.mark.parametrize(
    ("current", "code", "expected"),
    [
        (SessionState.STARTING, MessageCode.READY, SessionState.IDLE),
        (SessionState.BUSY, MessageCode.DONE, SessionState.IDLE),
        (SessionState.BUSY, MessageCode.CONDITION, SessionState.BUSY),
        (SessionState.BUSY, MessageCode.ATTACH_DONE, SessionState.IDLE),
        (SessionState.IDLE, MessageCode.EXITED, SessionState.FINISHED),
        (SessionState.STARTING, MessageCode.CRASHED, SessionState.FINISHED),
        (SessionState.BUSY, MessageCode.DISCONNECTED, SessionState.FINISHED),
    ],
)
def test_allowed_transitions(current: SessionState, code: MessageCode, expected: SessionState) -> None:
    """Follow the transition table for valid messages."""
    assert next_state(current, code) is expected


@pytest.mark.parametrize(
    ("current", "code"),
    [
        (SessionState.IDLE, MessageCode.DONE),
        (SessionState.STARTING, MessageCode.DONE),
        (SessionState.BUSY, MessageCode.READY),
        (SessionState.IDLE, MessageCode.READY),
        (SessionState.FINISHED, MessageCode.CONDITION),
        (SessionState.FINISHED, MessageCode.CRASHED),
    ],
)
def test_rejected_transitions(current: SessionState, code: MessageCode) -> None:
    """Raise protocol errors for messages not valid in the current state."""
    with pytest.raises(ResidentProtocolError, match=f"when session is {current.value}"):
        next_state(current, code)


def test_every_code_has_transitions() -> None:
    """Cover every message code in the transition table."""
    assert set(TRANSITIONS) == set(MessageCode)
