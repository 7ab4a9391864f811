"""Public package API for resident."""

from loguru import logger

from resident.conditions import Condition
from resident.conditions import ConditionRelay
from resident.conditions import RemoteWarning
from resident.errors import ResidentCrashError
from resident.errors import ResidentError
from resident.errors import ResidentInterruptedError
from resident.errors import ResidentProtocolError
from resident.errors import ResidentRemoteError
from resident.errors import ResidentShutdownError
from resident.errors import ResidentStartupError
from resident.errors import ResidentStateError
from resident.options import SessionOptions
from resident.options import session_options
from resident.protocol import ControlMessage
from resident.protocol import MessageCode
from resident.session import CancellationToken
from resident.session import RunningTime
from resident.session import Session
from resident.session import SessionState
from resident.store import CallResult

logger.disable("resident")

__all__: list[str] = [
    "CallResult",
    "CancellationToken",
    "Condition",
    "ConditionRelay",
    "ControlMessage",
    "MessageCode",
    "RemoteWarning",
    "ResidentCrashError",
    "ResidentError",
    "ResidentInterruptedError",
    "ResidentProtocolError",
    "ResidentRemoteError",
    "ResidentShutdownError",
    "ResidentStartupError",
    "ResidentStateError",
    "RunningTime",
    "Session",
    "SessionOptions",
    "SessionState",
    "session_options",
]
