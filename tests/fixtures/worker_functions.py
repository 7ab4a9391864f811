"""Functions imported only by resident worker processes during tests."""

import os
import signal
import sys
import time
import warnings

from resident.conditions import Condition
from resident.protocol import MessageCode


class WorkerRaisedError(Exception):
    """Custom exception class raised by fixture functions."""


def add(left: int, right: int) -> int:
    """Add two numbers.

    :param left: Left operand.
    :param right: Right operand.
    :returns: Sum.
    """
    return left + right


def one_plus_two() -> int:
    """Return ``1 + 2``.

    :returns: Three.
    """
    return 1 + 2


def echo(*args: object, **kwargs: object) -> dict[str, object]:
    """Return the received arguments.

    :param args: Positional arguments.
    :param kwargs: Keyword arguments.
    :returns: Arguments as a dictionary.
    """
    return {"args": list(args), "kwargs": dict(kwargs)}


def worker_pid() -> int:
    """Return the worker process identifier.

    :returns: Process identifier.
    """
    return os.getpid()


def sleep_then_return(seconds: float, value: object) -> object:
    """Sleep, then return ``value``.

    :param seconds: Seconds to sleep.
    :param value: Value to return.
    :returns: ``value``.
    """
    time.sleep(seconds)
    return value


def stop(message: str) -> None:
    """Raise a custom error.

    :param message: Error message.
    :raises WorkerRaisedError: Always.
    """
    local_marker: str = "inside-stop"
    _ = local_marker
    raise WorkerRaisedError(message)


def nested_failure(message: str) -> None:
    """Fail two frames deep.

    :param message: Error message.
    """
    depth_marker: int = 2
    _ = depth_marker
    stop(message)


def print_then_stop(message: str) -> None:
    """Write to stdout and stderr, then raise.

    :param message: Error message.
    :raises WorkerRaisedError: Always.
    """
    print("some stdout text")
    print("some stderr text", file=sys.stderr)
    raise WorkerRaisedError(message)


def print_and_return(text: str) -> str:
    """Write ``text`` to stdout and return it.

    :param text: Text to print.
    :returns: ``text``.
    """
    print(text)
    return text


def ignore_interrupts_and_sleep(seconds: float) -> str:
    """Ignore SIGINT and sleep.

    :param seconds: Seconds to sleep.
    :returns: A marker string.
    """
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    time.sleep(seconds)
    return "slept"


def exit_hard(code: int) -> None:
    """Exit the worker without cleanup.

    :param code: Exit status.
    """
    os._exit(code)


def kill_self() -> None:
    """Kill the worker with SIGKILL."""
    os.kill(os.getpid(), signal.SIGKILL)


def close_control_channel(context: object) -> None:
    """Close the worker's control descriptor and keep running.

    :param context: Worker context.
    """
    os.close(context._control_fd)  # type: ignore[attr-defined]
    time.sleep(30.0)


def report_progress(context: object, steps: int) -> int:
    """Emit progress conditions.

    :param context: Worker context.
    :param steps: Number of progress conditions.
    :returns: ``steps``.
    """
    for step in range(steps):
        context.progress(f"step {step}", data=step)  # type: ignore[attr-defined]
    return steps


def emit_condition(context: object, message: str, kinds: list[str]) -> str:
    """Emit one condition of the given kinds.

    :param context: Worker context.
    :param message: Condition message.
    :param kinds: Condition kinds.
    :returns: ``message``.
    """
    context.signal_condition(Condition(message, kinds))  # type: ignore[attr-defined]
    return message


def unpicklable_result() -> object:
    """Return a value that cannot be pickled.

    :returns: A lambda.
    """
    return lambda: None


def read_namespace_value(context: object, name: str) -> object:
    """Read one name from the worker's global console namespace.

    :param context: Worker context.
    :param name: Variable name.
    :returns: Stored value.
    """
    return context.namespace.get(name)  # type: ignore[attr-defined]


def report_ready_again(context: object) -> None:
    """Send an out-of-order ready message while a call is running.

    :param context: Worker context.
    """
    context.report(MessageCode.READY, "again")  # type: ignore[attr-defined]


def warn_plainly(message: str) -> str:
    """Issue an ordinary Python warning.

    :param message: Warning text.
    :returns: ``message``.
    """
    warnings.warn(message, UserWarning, stacklevel=1)
    return message


def progress_on_interrupt(context: object, seconds: float) -> str:
    """Sleep, emitting a progress condition if interrupted.

    :param context: Worker context.
    :param seconds: Seconds to sleep.
    :returns: A marker string.
    """

    def _on_interrupt(signum: int, frame: object) -> None:
        context.progress("cleaning up")  # type: ignore[attr-defined]
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, _on_interrupt)
    try:
        time.sleep(seconds)
    finally:
        signal.signal(signal.SIGINT, signal.default_int_handler)
    return "slept"
