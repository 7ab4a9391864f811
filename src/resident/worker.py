"""Worker process for resident sessions.

The worker reads its stdin line by line. Lines starting with the instruction
prefix carry an encoded instruction from the session; every other line is raw
Python source fed to an interactive console, which is how ``attach`` drives
the worker. Status lines go to a dedicated control descriptor.
"""

import argparse
import code
import importlib
import os
import pickle
import reprlib
import sys
import traceback
import types
import warnings

from resident.conditions import Condition
from resident.encoder import CallInstruction
from resident.encoder import Instruction
from resident.encoder import ReportInstruction
from resident.encoder import decode_instruction
from resident.encoder import is_instruction_line
from resident.encoder import parse_function_reference
from resident.errors import ResidentRemoteError
from resident.options import ErrorMode
from resident.protocol import MessageCode
from resident.protocol import encode_payload
from resident.protocol import format_message

_THIS_FILE: str = os.path.normcase(os.path.abspath(__file__))
_FRAME_REPR: reprlib.Repr = reprlib.Repr()
_FRAME_REPR.maxstring = 80
_FRAME_REPR.maxother = 80


def _resolve_qualname(root: object, qualname: str) -> object:
    """Resolve a dotted qualname against a root object.

    :param root: Root object.
    :param qualname: Dotted qualname, such as ``Outer.method``.
    :returns: Resolved object.
    """
    current: object = root
    for part in qualname.split("."):
        current = getattr(current, part)
    return current


def _is_worker_frame(frame: types.FrameType) -> bool:
    """Report whether ``frame`` belongs to this module's wrapping code.

    :param frame: Frame to inspect.
    :returns: ``True`` for frames executing this file.
    """
    filename: str = os.path.normcase(os.path.abspath(frame.f_code.co_filename))
    return filename == _THIS_FILE


def _trim_traceback(tb: types.TracebackType | None) -> types.TracebackType | None:
    """Skip leading traceback entries that belong to the worker itself.

    :param tb: Raw traceback.
    :returns: First traceback entry in user code, or ``None``.
    """
    current: types.TracebackType | None = tb
    while current is not None and _is_worker_frame(current.tb_frame) is True:
        current = current.tb_next
    return current


def describe_frame(frame: types.FrameType, lineno: int, include_locals: bool = False) -> str:
    """Format one frame as ``file:line in function``.

    :param frame: Frame object.
    :param lineno: Line number active in the frame.
    :param include_locals: Whether to append abbreviated local values.
    :returns: One-line frame description.
    """
    description: str = f"{frame.f_code.co_filename}:{lineno} in {frame.f_code.co_name}"
    if include_locals is False:
        return description
    local_parts: list[str] = []
    for name, value in frame.f_locals.items():
        local_parts.append(f"{name}={_FRAME_REPR.repr(value)}")
    if len(local_parts) == 0:
        return description
    return description + " [" + ", ".join(local_parts) + "]"


def build_remote_error(exc: BaseException, error_mode: ErrorMode) -> ResidentRemoteError:
    """Convert an exception raised by a call into a picklable error value.

    :param exc: Exception raised by the called function.
    :param error_mode: ``"stack"`` adds local values to the frame details.
    :returns: Remote error value.
    """
    trimmed: types.TracebackType | None = _trim_traceback(exc.__traceback__)
    stacktrace: str = "".join(traceback.format_exception(type(exc), exc, trimmed))
    frames: list[str] = []
    current: types.TracebackType | None = trimmed
    while current is not None:
        frames.append(describe_frame(current.tb_frame, current.tb_lineno, error_mode == "stack"))
        current = current.tb_next
    return ResidentRemoteError(type(exc).__name__, str(exc), stacktrace, frames)


class WorkerContext:
    """Worker-side state passed explicitly to every instruction.

    Functions called with ``pass_context=True`` receive this object as their
    first argument and may use it to signal conditions.
    """

    namespace: dict[str, object]
    _control_fd: int
    _dump: list[tuple[types.FrameType, int]]

    def __init__(self, control_fd: int) -> None:
        """Initialize the context.

        :param control_fd: Writable control descriptor.
        """
        self._control_fd = control_fd
        self.namespace = {"__name__": "__console__", "__doc__": None}
        self._dump = []

    def report(self, code: MessageCode, text: str = "") -> None:
        """Write one status line to the control descriptor.

        :param code: Message code.
        :param text: Message text.
        """
        data: memoryview = memoryview(format_message(code, text).encode("utf-8"))
        while len(data) > 0:
            written: int = os.write(self._control_fd, data)
            data = data[written:]

    def signal_condition(self, condition: Condition) -> None:
        """Send a condition to the session without waiting for it.

        :param condition: Condition to relay.
        """
        self.report(MessageCode.CONDITION, encode_payload(condition))

    def progress(self, message: str, data: object = None) -> None:
        """Send a ``progress`` condition.

        :param message: Progress message.
        :param data: Optional detail payload.
        """
        self.signal_condition(Condition(message, ("progress", "condition"), data))

    def warn(self, message: str) -> None:
        """Send a ``warning`` condition.

        :param message: Warning text.
        """
        self.signal_condition(Condition(message, ("warning", "condition")))

    def forward_warning(
        self,
        message: Warning | str,
        category: type[Warning],
        filename: str,
        lineno: int,
        file: object = None,
        line: str | None = None,
    ) -> None:
        """Send a shown Python warning as a condition; a ``warnings.showwarning`` hook.

        :param message: Warning instance or text.
        :param category: Warning class.
        :param filename: File that issued the warning.
        :param lineno: Line that issued the warning.
        :param file: Unused stream argument of the hook signature.
        :param line: Unused source line argument of the hook signature.
        """
        kinds: tuple[str, ...] = (category.__name__, "warning", "condition")
        data: dict[str, object] = {"category": category.__name__, "filename": filename, "lineno": lineno}
        self.signal_condition(Condition(str(message), kinds, data))

    def store_dump(self, exc: BaseException) -> None:
        """Keep the frames of a failed call for later inspection.

        :param exc: Exception raised by the call.
        """
        self._dump = []
        current: types.TracebackType | None = _trim_traceback(exc.__traceback__)
        while current is not None:
            self._dump.append((current.tb_frame, current.tb_lineno))
            current = current.tb_next

    @property
    def has_dump(self) -> bool:
        """Report whether a failed call left frames to inspect.

        :returns: ``True`` when a dump exists.
        """
        return len(self._dump) > 0

    def dump_frames(self) -> list[tuple[types.FrameType, int]]:
        """Return the dumped frames, outermost first.

        :returns: ``(frame, lineno)`` pairs.
        """
        return list(self._dump)

    def redirect(self, fd: int, path: str) -> int:
        """Point ``fd`` at ``path`` and return a saved copy of the old target.

        :param fd: Descriptor to redirect, ``1`` or ``2``.
        :param path: Capture file path.
        :returns: Saved descriptor for :meth:`restore`.
        """
        saved: int = os.dup(fd)
        target: int = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.dup2(target, fd)
        finally:
            os.close(target)
        return saved

    def restore(self, fd: int, saved: int) -> None:
        """Undo :meth:`redirect`.

        :param fd: Redirected descriptor.
        :param saved: Descriptor returned by :meth:`redirect`.
        """
        try:
            os.dup2(saved, fd)
        finally:
            os.close(saved)


def _flush_standard_streams() -> None:
    """Flush Python-level stdout and stderr buffers."""
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            pass


class WorkerRuntime:
    """Own worker-side stdin handling and call execution."""

    _context: WorkerContext
    _console: code.InteractiveConsole

    def __init__(self, context: WorkerContext) -> None:
        """Initialize worker runtime state.

        :param context: Worker context shared by all instructions.
        """
        self._context = context
        self._console = code.InteractiveConsole(context.namespace)

    def run(self) -> int:
        """Run the stdin loop until stdin closes.

        :returns: Process exit code.
        """
        stdin = sys.stdin.buffer
        while True:
            try:
                raw: bytes = stdin.readline()
            except KeyboardInterrupt:
                continue
            if len(raw) == 0:
                break

            line: str = raw.decode("utf-8", errors="replace")
            try:
                if is_instruction_line(line) is True:
                    self._dispatch(decode_instruction(line))
                else:
                    self._console.push(line.rstrip("\r\n"))
            except KeyboardInterrupt:
                self._console.resetbuffer()
                self._console.write("\nKeyboardInterrupt\n")
        return 0

    def _dispatch(self, instruction: Instruction) -> None:
        """Execute one decoded instruction.

        :param instruction: Instruction from the session.
        """
        if len(self._console.buffer) > 0:
            self._console.push("")

        if isinstance(instruction, ReportInstruction) is True:
            _flush_standard_streams()
            self._context.report(MessageCode(instruction.code), instruction.text)
            return
        if isinstance(instruction, CallInstruction) is True:
            self._execute_call(instruction)

    def _load_call(self, instruction_path: str) -> tuple[object, tuple[object, ...], dict[str, object]]:
        """Load the pickled function and arguments of one call.

        :param instruction_path: Instruction blob path.
        :returns: Tuple of ``(function, args, kwargs)``.
        """
        with open(instruction_path, "rb") as blob_file:
            function, args, kwargs = pickle.load(blob_file)
        if isinstance(function, str) is True:
            module_name, qualname = parse_function_reference(function)
            module: object = importlib.import_module(module_name)
            function = _resolve_qualname(module, qualname)
        return function, args, kwargs

    def _execute_call(self, instruction: CallInstruction) -> None:
        """Run one call, store its outcome and report completion.

        :param instruction: Call instruction.
        """
        context: WorkerContext = self._context
        saved_stdout: int | None = None
        saved_stderr: int | None = None
        outcome: tuple[str, object]
        _flush_standard_streams()
        try:
            if instruction.stdout_path is not None:
                saved_stdout = context.redirect(1, instruction.stdout_path)
            if instruction.stderr_path is not None:
                saved_stderr = context.redirect(2, instruction.stderr_path)
            try:
                function, args, kwargs = self._load_call(instruction.instruction_path)
                with warnings.catch_warnings():
                    warnings.showwarning = context.forward_warning
                    if instruction.pass_context is True:
                        value: object = function(context, *args, **kwargs)  # type: ignore[operator]
                    else:
                        value = function(*args, **kwargs)  # type: ignore[operator]
                outcome = ("result", value)
            except BaseException as exc:
                context.store_dump(exc)
                remote_error: ResidentRemoteError = build_remote_error(exc, instruction.error_mode)
                outcome = ("error", remote_error)
        finally:
            _flush_standard_streams()
            if saved_stdout is not None:
                context.restore(1, saved_stdout)
            if saved_stderr is not None:
                context.restore(2, saved_stderr)

        self._write_outcome(instruction.result_path, outcome)
        context.report(MessageCode.DONE, instruction.done_text)

    def _write_outcome(self, result_path: str, outcome: tuple[str, object]) -> None:
        """Pickle the call outcome into the result blob.

        :param result_path: Result blob path.
        :param outcome: ``("result", value)`` or ``("error", error)``.
        """
        try:
            payload: bytes = pickle.dumps(outcome, protocol=pickle.HIGHEST_PROTOCOL)
        except Exception as exc:
            remote_error: ResidentRemoteError = ResidentRemoteError(
                type(exc).__name__,
                f"Call result could not be pickled: {exc}",
                traceback.format_exc(),
            )
            payload = pickle.dumps(("error", remote_error), protocol=pickle.HIGHEST_PROTOCOL)
        with open(result_path, "wb") as result_file:
            result_file.write(payload)


def worker_entry(control_fd: int, load_hook: str | None = None) -> int:
    """Run the worker until stdin closes.

    Fatal worker errors are reported as a 501 message carrying the error.

    :param control_fd: Writable control descriptor.
    :param load_hook: Optional Python source executed before the stdin loop.
    :returns: Process exit code.
    """
    context: WorkerContext = WorkerContext(control_fd)
    try:
        if load_hook is not None:
            exec(compile(load_hook, "<load_hook>", "exec"), context.namespace)
        runtime: WorkerRuntime = WorkerRuntime(context)
        return runtime.run()
    except Exception as exc:
        remote_error: ResidentRemoteError = build_remote_error(exc, "error")
        try:
            context.report(MessageCode.CRASHED, encode_payload(remote_error))
        except OSError:
            traceback.print_exc()
        return 1
    finally:
        try:
            os.close(control_fd)
        except OSError:
            pass


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse worker command-line arguments.

    :param argv: Optional argument list.
    :returns: Parsed arguments.
    """
    parser = argparse.ArgumentParser(description="resident worker process")
    parser.add_argument("--control-fd", type=int, required=True, help="writable control descriptor")
    parser.add_argument("--load-hook", default=None, help="Python source run before accepting calls")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the worker process.

    :param argv: Optional argument list.
    :returns: Process exit code.
    """
    args: argparse.Namespace = _parse_args(argv)
    return worker_entry(int(args.control_fd), args.load_hook)


if __name__ == "__main__":
    sys.exit(main())
