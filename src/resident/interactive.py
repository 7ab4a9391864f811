"""Interactive tools built on top of a session: traceback, debugger and attach REPL."""

import codeop
import sys
import time
import traceback
from collections.abc import Callable
from typing import TYPE_CHECKING
from typing import Literal
from typing import TextIO

from loguru import logger

from resident.errors import ResidentError
from resident.protocol import ControlMessage
from resident.protocol import MessageCode
from resident.store import CallResult
from resident.worker import WorkerContext
from resident.worker import describe_frame

if TYPE_CHECKING:
    from resident.session import Session

InputFunc = Callable[[str], str]
AttachStatus = Literal["done", "finished", "timeout"]

_DEBUG_HELP: str = (
    "  .where       -- print stack trace\n"
    "  .inspect <n> -- inspect a frame, 0 resets to the global namespace\n"
    "  .help        -- print this message\n"
    "  <cmd>        -- run <cmd> in frame or the global namespace\n"
)


# Functions below run inside the worker; the session passes the worker context.


def _remote_frames(context: WorkerContext) -> list[str]:
    """Describe the dumped frames of the last failed call.

    :param context: Worker context.
    :returns: Frame descriptions, outermost first.
    """
    return [describe_frame(frame, lineno) for frame, lineno in context.dump_frames()]


def _remote_has_dump(context: WorkerContext) -> bool:
    """Report whether a failed call left frames behind.

    :param context: Worker context.
    :returns: ``True`` when a dump exists.
    """
    return context.has_dump


def _remote_evaluate(context: WorkerContext, source: str, frame_number: int) -> tuple[str | None, str | None]:
    """Evaluate ``source`` in a dumped frame or the worker's global namespace.

    Errors are returned rather than raised so the dump being inspected is kept.

    :param context: Worker context.
    :param source: Python source to evaluate or execute.
    :param frame_number: Dumped frame number, ``0`` for the global namespace.
    :returns: Tuple of ``(value repr or None, formatted error or None)``.
    """
    try:
        if frame_number == 0:
            scope_globals: dict[str, object] = context.namespace
            scope_locals: dict[str, object] = context.namespace
        else:
            frames = context.dump_frames()
            if frame_number < 1 or frame_number > len(frames):
                raise IndexError(f"No frame {frame_number}, the dump has {len(frames)} frames")
            target_frame = frames[frame_number - 1][0]
            scope_globals = target_frame.f_globals
            scope_locals = target_frame.f_locals
        try:
            compiled = compile(source, "<debug>", "eval")
        except SyntaxError:
            exec(compile(source, "<debug>", "exec"), scope_globals, scope_locals)
            return None, None
        value: object = eval(compiled, scope_globals, scope_locals)
        return repr(value), None
    except Exception as exc:
        return None, "".join(traceback.format_exception_only(type(exc), exc))


def read_command(prompt: str, input_func: InputFunc = input) -> str:
    """Read one complete Python statement, prompting for continuation lines.

    :param prompt: First-line prompt.
    :param input_func: Prompt reader.
    :returns: Source text without a trailing newline.
    """
    command: str = input_func(prompt)
    while True:
        try:
            compiled: object = codeop.compile_command(command, "<input>", "single")
        except (SyntaxError, ValueError, OverflowError):
            return command
        if compiled is not None:
            return command
        command = command + "\n" + input_func("... ")


def show_traceback(session: "Session") -> list[str]:
    """Return the stack of the last failed call.

    :param session: Idle session.
    :returns: Frame descriptions, outermost first; empty without a dump.
    """
    frames: object = session.run(_remote_frames, pass_context=True)
    if isinstance(frames, list) is False:
        raise ResidentError("Worker returned a malformed traceback")
    return frames


def _print_where(output: TextIO, frames: list[str], frame_number: int) -> None:
    """Print the dumped frames, innermost first.

    :param output: Text stream for output.
    :param frames: Frame descriptions, outermost first.
    :param frame_number: Frame being inspected, ``0`` for none.
    """
    for number in range(len(frames), 0, -1):
        output.write(f"{number}: {frames[number - 1]}\n")
    if frame_number != 0:
        output.write(f"Inspecting frame {frame_number}\n")


def _print_result(output: TextIO, result: CallResult) -> None:
    """Print the output and value of one debugger evaluation.

    :param output: Text stream for output.
    :param result: Result of a ``_remote_evaluate`` call.
    """
    output.write(result.stdout)
    output.write(result.stderr)
    if result.error is not None:
        output.write(f"{result.error}\n")
        return
    value: object = result.result
    if isinstance(value, tuple) is False or len(value) != 2:
        output.write(f"{value!r}\n")
        return
    value_repr, error_text = value
    if error_text is not None:
        output.write(str(error_text))
    elif value_repr is not None:
        output.write(f"{value_repr}\n")


def debug(session: "Session", input_func: InputFunc = input, output: TextIO | None = None) -> None:
    """Inspect the frames of the last failed call in a read-eval-print loop.

    Meta-commands are ``.where``, ``.inspect <n>`` and ``.help``; anything
    else is evaluated in the worker. Interrupt or end-of-file exits.

    :param session: Idle session whose last call failed.
    :param input_func: Prompt reader.
    :param output: Text stream for output; ``sys.stdout`` by default.
    :raises ResidentError: If the worker has no dumped frames.
    """
    out: TextIO = sys.stdout if output is None else output
    has_dump: object = session.run(_remote_has_dump, pass_context=True)
    if has_dump is not True:
        raise ResidentError("Can't find dumped frames, nothing to debug")

    pid: int | None = session.get_pid()
    out.write(f"Debugging in process {pid}, press CTRL+C to quit. Commands:\n{_DEBUG_HELP}\n")
    frames: list[str] = show_traceback(session)
    _print_where(out, frames, 0)
    frame_number: int = 0

    try:
        while True:
            out.write("\n")
            prompt: str = f"resident {pid}"
            if frame_number != 0:
                prompt += f" (frame {frame_number})"
            command: str = read_command(prompt + " > ", input_func)
            stripped: str = command.strip()

            if stripped == ".where":
                _print_where(out, frames, frame_number)
                continue
            if stripped == ".help":
                out.write(f"Debugging in process {pid}, press CTRL+C to quit. Commands:\n{_DEBUG_HELP}")
                continue
            if stripped.startswith(".inspect"):
                parts: list[str] = stripped.split()
                if len(parts) != 2 or parts[1].isdigit() is False:
                    out.write("Cannot parse frame number\n")
                elif int(parts[1]) > len(frames):
                    out.write(f"No frame {parts[1]}, the dump has {len(frames)} frames\n")
                else:
                    frame_number = int(parts[1])
                continue
            if len(stripped) == 0:
                continue

            result: CallResult = session.run_with_output(
                _remote_evaluate,
                [command, frame_number],
                pass_context=True,
            )
            _print_result(out, result)
    except (KeyboardInterrupt, EOFError):
        out.write("\n")


def _drain(session: "Session", output: TextIO) -> None:
    """Echo whatever worker output is already buffered.

    :param session: Attached session.
    :param output: Text stream for output.
    """
    output.write(session.read_output())
    output.write(session.read_error())


def _attach_wait(session: "Session", output: TextIO, timeout: float = -1.0) -> AttachStatus:
    """Echo worker output until the console command reports done.

    :param session: Attached session.
    :param output: Text stream for output.
    :param timeout: Seconds; negative means infinite.
    :returns: ``"done"``, ``"finished"`` if the worker went away, or ``"timeout"``.
    """
    from resident.session import SessionState

    deadline: float | None = None if timeout < 0 else time.monotonic() + timeout
    while True:
        remaining: float = -1.0
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return "timeout"
        statuses = session.poll_io(remaining)
        if statuses["output"] == "ready":
            output.write(session.read_output())
        if statuses["error"] == "ready":
            output.write(session.read_error())
        if statuses["control"] != "ready":
            continue
        message: ControlMessage | CallResult | None = session.read()
        if session.get_state() is SessionState.FINISHED:
            _drain(session, output)
            return "finished"
        if isinstance(message, ControlMessage) is True and message.code is MessageCode.ATTACH_DONE:
            _drain(session, output)
            return "done"


def _interrupt_console(session: "Session", output: TextIO) -> None:
    """Interrupt the running console command and wait for its 202.

    The worker is killed when the command does not finish within the
    session's interrupt grace period.

    :param session: Attached session with a console command in flight.
    :param output: Text stream for output.
    """
    session.interrupt()
    status: AttachStatus = _attach_wait(session, output, session.options.interrupt_grace)
    if status == "timeout":
        logger.warning("attach.interrupt_timeout pid={}, killing worker", session.get_pid())
        session.close(grace=0.0)


def attach(session: "Session", input_func: InputFunc = input, output: TextIO | None = None) -> None:
    """Send raw console input to the worker and echo its output.

    End-of-file leaves the console. An interrupt while a command runs is
    forwarded to the worker before leaving.

    :param session: Session to attach to.
    :param input_func: Prompt reader.
    :param output: Text stream for output; ``sys.stdout`` by default.
    """
    out: TextIO = sys.stdout if output is None else output
    _drain(session, out)
    pid: int | None = session.get_pid()
    command_running: bool = False
    try:
        while True:
            command: str = read_command(f"resident {pid} > ", input_func)
            command_running = True
            session.send_console_input(command)
            status: AttachStatus = _attach_wait(session, out)
            command_running = False
            if status == "finished":
                return
    except KeyboardInterrupt:
        out.write("\n")
        if command_running is True:
            _interrupt_console(session, out)
    except EOFError:
        out.write("\n")
