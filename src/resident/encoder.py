"""Encode call requests into self-contained worker instructions."""

import base64
import binascii
import pickle
from collections.abc import Callable
from pathlib import Path

from resident.errors import ResidentProtocolError
from resident.options import ErrorMode
from resident.protocol import MessageCode

INSTRUCTION_PREFIX: str = "#resident-instruction "
FunctionReference = Callable[..., object] | str


class CallPaths:
    """Temp artifact paths owned by one in-flight call."""

    instruction_path: Path
    result_path: Path
    stdout_path: Path | None
    stderr_path: Path | None

    def __init__(
        self,
        instruction_path: Path,
        result_path: Path,
        stdout_path: Path | None = None,
        stderr_path: Path | None = None,
    ) -> None:
        """Initialize call paths.

        :param instruction_path: Pickled ``(function, args, kwargs)`` blob.
        :param result_path: Pickled outcome blob written by the worker.
        :param stdout_path: Optional per-call stdout capture file.
        :param stderr_path: Optional per-call stderr capture file.
        """
        self.instruction_path = instruction_path
        self.result_path = result_path
        self.stdout_path = stdout_path
        self.stderr_path = stderr_path

    def all_paths(self) -> list[Path]:
        """Return every path owned by the call.

        :returns: Existing and not-yet-created paths alike.
        """
        paths: list[Path] = [self.instruction_path, self.result_path]
        if self.stdout_path is not None:
            paths.append(self.stdout_path)
        if self.stderr_path is not None:
            paths.append(self.stderr_path)
        return paths


class ReportInstruction:
    """Ask the worker to write one status line on the control pipe."""

    code: int
    text: str

    def __init__(self, code: MessageCode, text: str) -> None:
        """Initialize a report instruction.

        :param code: Code the worker reports.
        :param text: Text the worker reports.
        """
        self.code = int(code)
        self.text = text


class CallInstruction:
    """Ask the worker to run one call and report its completion."""

    instruction_path: str
    result_path: str
    stdout_path: str | None
    stderr_path: str | None
    error_mode: ErrorMode
    pass_context: bool
    done_text: str

    def __init__(
        self,
        paths: CallPaths,
        error_mode: ErrorMode,
        pass_context: bool,
        done_text: str,
    ) -> None:
        """Initialize a call instruction.

        :param paths: Call artifact paths.
        :param error_mode: Remote error detail level.
        :param pass_context: Whether the worker context is passed as first argument.
        :param done_text: Text of the 200 report emitted on completion.
        """
        self.instruction_path = str(paths.instruction_path)
        self.result_path = str(paths.result_path)
        self.stdout_path = None if paths.stdout_path is None else str(paths.stdout_path)
        self.stderr_path = None if paths.stderr_path is None else str(paths.stderr_path)
        self.error_mode = error_mode
        self.pass_context = pass_context
        self.done_text = done_text


Instruction = ReportInstruction | CallInstruction


class CallRequest:
    """One submitted unit of work."""

    function: FunctionReference
    args: tuple[object, ...]
    kwargs: dict[str, object]
    pass_context: bool
    paths: CallPaths

    def __init__(
        self,
        function: FunctionReference,
        args: list[object] | tuple[object, ...],
        kwargs: dict[str, object] | None,
        paths: CallPaths,
        pass_context: bool = False,
    ) -> None:
        """Initialize a call request.

        :param function: Picklable callable or ``module.path:qualname`` string.
        :param args: Positional arguments.
        :param kwargs: Keyword arguments.
        :param paths: Artifact paths for this call.
        :param pass_context: Whether the worker context is passed as first argument.
        :raises TypeError: If ``args`` is not list-shaped or ``function`` is unusable.
        """
        if isinstance(args, (list, tuple)) is False:
            raise TypeError("args must be a list or tuple")
        if isinstance(function, str) is True:
            try:
                parse_function_reference(function)
            except ValueError as exc:
                raise TypeError(str(exc)) from exc
        elif callable(function) is False:
            raise TypeError("function must be callable or a 'module.path:qualname' string")
        self.function = function
        self.args = tuple(args)
        if kwargs is None:
            self.kwargs = {}
        else:
            self.kwargs = dict(kwargs)
        self.paths = paths
        self.pass_context = pass_context

    @property
    def function_name(self) -> str:
        """Return a printable function name.

        :returns: Qualified name for logging.
        """
        if isinstance(self.function, str) is True:
            return self.function
        module_name: str = getattr(self.function, "__module__", "?")
        qualname: str = getattr(self.function, "__qualname__", repr(self.function))
        return f"{module_name}:{qualname}"


def parse_function_reference(reference: str) -> tuple[str, str]:
    """Parse ``module.path:qualname`` function references.

    :param reference: Raw reference string.
    :returns: Tuple of ``(module_name, qualname)``.
    :raises ValueError: If the reference format is invalid.
    """
    parts: list[str] = reference.split(":")
    if len(parts) != 2:
        raise ValueError("Function reference must use module.path:qualname format")

    module_name: str = parts[0].strip()
    qualname: str = parts[1].strip()
    if len(module_name) == 0:
        raise ValueError("Module path in function reference cannot be empty")
    if len(qualname) == 0:
        raise ValueError("Function name in function reference cannot be empty")
    return module_name, qualname


def encode_instruction(instruction: Instruction) -> str:
    """Encode one instruction as a single stdin line.

    :param instruction: Instruction object.
    :returns: Line including the trailing newline.
    """
    raw: bytes = pickle.dumps(instruction, protocol=pickle.HIGHEST_PROTOCOL)
    return INSTRUCTION_PREFIX + base64.b64encode(raw).decode("ascii") + "\n"


def decode_instruction(line: str) -> Instruction:
    """Decode one instruction line read by the worker.

    :param line: Line starting with :data:`INSTRUCTION_PREFIX`.
    :returns: Decoded instruction.
    :raises ResidentProtocolError: If the line is not a valid instruction.
    """
    stripped: str = line.strip()
    prefix: str = INSTRUCTION_PREFIX.strip()
    if stripped.startswith(prefix) is False:
        raise ResidentProtocolError("Instruction line is missing the instruction prefix")
    body: str = stripped[len(prefix):].strip()
    try:
        instruction: object = pickle.loads(base64.b64decode(body.encode("ascii"), validate=True))
    except (binascii.Error, UnicodeEncodeError, pickle.UnpicklingError, EOFError, AttributeError, ValueError) as exc:
        raise ResidentProtocolError("Failed to decode worker instruction") from exc
    if isinstance(instruction, (ReportInstruction, CallInstruction)) is False:
        raise ResidentProtocolError(f"Unknown instruction type: {type(instruction).__name__}")
    return instruction


def is_instruction_line(line: str) -> bool:
    """Report whether a stdin line carries an encoded instruction.

    :param line: Raw stdin line.
    :returns: ``True`` for instruction lines.
    """
    return line.startswith(INSTRUCTION_PREFIX.strip())


class CallEncoder:
    """Build worker instructions for calls and status reports."""

    _error_mode: ErrorMode

    def __init__(self, error_mode: ErrorMode = "error") -> None:
        """Initialize an encoder.

        :param error_mode: Remote error detail level for encoded calls.
        """
        self._error_mode = error_mode

    def encode_call(self, request: CallRequest) -> str:
        """Write the instruction blob and return the stdin line for ``request``.

        :param request: Call request whose paths were already allocated.
        :returns: Instruction line including the trailing newline.
        :raises TypeError: If the function or arguments cannot be pickled.
        """
        blob: tuple[object, ...] = (request.function, request.args, request.kwargs)
        try:
            raw: bytes = pickle.dumps(blob, protocol=pickle.HIGHEST_PROTOCOL)
        except (pickle.PicklingError, TypeError, AttributeError, ValueError) as exc:
            raise TypeError(f"Cannot send {request.function_name} to the worker: {exc}") from exc
        request.paths.instruction_path.write_bytes(raw)

        done_text: str = f"done {request.paths.result_path.name}"
        instruction: CallInstruction = CallInstruction(
            request.paths,
            self._error_mode,
            request.pass_context,
            done_text,
        )
        return encode_instruction(instruction)

    def encode_report(self, code: MessageCode, text: str) -> str:
        """Return the stdin line asking the worker to report ``code``.

        :param code: Code to report.
        :param text: Text to report.
        :returns: Instruction line including the trailing newline.
        """
        return encode_instruction(ReportInstruction(code, text))
