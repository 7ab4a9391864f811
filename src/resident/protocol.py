"""Line-oriented control channel protocol shared by the session and the worker."""

import base64
import binascii
import enum
import pickle

from resident.errors import ResidentProtocolError

BINARY_MARKER: str = "base64::"


class MessageCode(enum.IntEnum):
    """Closed registry of control message codes."""

    DONE = 200
    READY = 201
    ATTACH_DONE = 202
    CONDITION = 301
    EXITED = 500
    CRASHED = 501
    DISCONNECTED = 502


class ControlMessage:
    """One decoded control channel message."""

    code: MessageCode
    text: str
    payload: object

    def __init__(self, code: MessageCode, text: str, payload: object = None) -> None:
        """Initialize a control message.

        :param code: Message code.
        :param text: Message text, with any binary payload already stripped.
        :param payload: Decoded embedded payload, if the text carried one.
        """
        self.code = code
        self.text = text
        self.payload = payload

    def __repr__(self) -> str:
        """Return a debugging representation.

        :returns: Representation string.
        """
        return f"ControlMessage(code={int(self.code)}, text={self.text!r})"


def encode_payload(value: object) -> str:
    """Encode one object as marker-prefixed base64 pickle text.

    :param value: Picklable value.
    :returns: Text safe to embed in a single control line.
    """
    raw: bytes = pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
    encoded: str = base64.b64encode(raw).decode("ascii")
    return BINARY_MARKER + encoded


def decode_payload(text: str) -> object:
    """Decode marker-prefixed base64 pickle text.

    :param text: Encoded text, starting with :data:`BINARY_MARKER`.
    :returns: Decoded value.
    :raises ResidentProtocolError: If the text cannot be decoded.
    """
    if text.startswith(BINARY_MARKER) is False:
        raise ResidentProtocolError("Embedded payload is missing the binary marker")
    body: str = text[len(BINARY_MARKER):]
    try:
        raw: bytes = base64.b64decode(body.encode("ascii"), validate=True)
        return pickle.loads(raw)
    except (binascii.Error, UnicodeEncodeError, pickle.UnpicklingError, EOFError, AttributeError, ValueError) as exc:
        raise ResidentProtocolError("Failed to decode embedded control payload") from exc


def format_message(code: MessageCode, text: str = "") -> str:
    """Format one control line.

    :param code: Message code.
    :param text: Message text; must not contain newlines.
    :returns: Wire line including the trailing newline.
    :raises ValueError: If ``text`` spans multiple lines.
    """
    if "\n" in text:
        raise ValueError("control message text must be a single line")
    return f"{int(code)} {text}\n"


def parse_message(line: str) -> ControlMessage:
    """Parse one control line.

    :param line: Raw line, with or without the trailing newline.
    :returns: Decoded control message.
    :raises ResidentProtocolError: If the code is missing or unknown.
    """
    stripped: str = line.rstrip("\r\n")
    code_text, _, text = stripped.partition(" ")
    if code_text.isdigit() is False:
        raise ResidentProtocolError(f"Malformed control message: {stripped!r}")

    try:
        code: MessageCode = MessageCode(int(code_text))
    except ValueError as exc:
        raise ResidentProtocolError(f"Unknown message code: `{code_text}`") from exc

    payload: object = None
    if text.startswith(BINARY_MARKER) is True:
        payload = decode_payload(text)
        text = ""
    return ControlMessage(code, text, payload)
