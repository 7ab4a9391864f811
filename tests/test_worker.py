"""In-process tests for worker-side helpers and the command-line entry points."""

import os

import pytest

from resident import MessageCode
from resident import ResidentRemoteError
from resident.__main__ import _parse_args as parse_cli_args
from resident.__main__ import main as cli_main
from resident.protocol import parse_message
from resident.worker import WorkerContext
from resident.worker import _parse_args as parse_worker_args
from resident.worker import build_remote_error


def _raise_with_locals(message: str) -> None:
    """Raise a value error with a local variable in scope.

    :param message: Error message.
    :raises ValueError: Always.
    """
    marker: str = "local-value"
    _ = marker
    raise ValueError(message)


def _caught_error(message: str) -> ValueError:
    """Return a raised value error with its traceback.

    :param message: Error message.
    :returns: Raised exception.
    """
    try:
        _raise_with_locals(message)
    except ValueError as exc:
        return exc
    raise AssertionError("expected ValueError")


def test_build_remote_error_keeps_details() -> None:
    """Capture type, message, traceback and frames of a failure."""
    error: ResidentRemoteError = build_remote_error(_caught_error("bad input"), "error")
    assert error.remote_type_name == "ValueError"
    assert error.remote_message == "bad input"
    assert "ValueError: bad input" in error.remote_traceback
    assert "in _raise_with_locals" in error.remote_frames[-1]
    assert "marker=" not in error.remote_frames[-1]


def test_build_remote_error_stack_mode_adds_locals() -> None:
    """Add abbreviated locals to frames in ``stack`` mode."""
    error: ResidentRemoteError = build_remote_error(_caught_error("bad input"), "stack")
    assert "marker='local-value'" in error.remote_frames[-1]


def test_context_reports_on_control_descriptor() -> None:
    """Write one parseable status line per report."""
    read_fd, write_fd = os.pipe()
    try:
        context: WorkerContext = WorkerContext(write_fd)
        context.report(MessageCode.DONE, "done x.result")
        context.warn("careful")
        os.close(write_fd)
        write_fd = -1
        with os.fdopen(read_fd, "r", encoding="utf-8") as reader:
            read_fd = -1
            lines: list[str] = reader.read().splitlines()
    finally:
        for fd in (read_fd, write_fd):
            if fd >= 0:
                os.close(fd)

    assert lines[0] == "200 done x.result"
    warning = parse_message(lines[1])
    assert warning.code is MessageCode.CONDITION
    assert warning.payload.message == "careful"  # type: ignore[attr-defined]
    assert warning.payload.kinds == ("warning", "condition")  # type: ignore[attr-defined]


def test_context_keeps_dumped_frames() -> None:
    """Keep the frames of the last failure, outermost first."""
    context: WorkerContext = WorkerContext(-1)
    assert context.has_dump is False
    context.store_dump(_caught_error("bad input"))
    assert context.has_dump is True
    frames = context.dump_frames()
    assert frames[-1][0].f_code.co_name == "_raise_with_locals"
    assert frames[-1][0].f_locals["marker"] == "local-value"


def test_worker_arguments() -> None:
    """Parse the worker command line."""
    args = parse_worker_args(["--control-fd", "7", "--load-hook", "import json"])
    assert args.control_fd == 7
    assert args.load_hook == "import json"
    with pytest.raises(SystemExit):
        parse_worker_args([])


def test_cli_arguments() -> None:
    """Parse the console command line."""
    args = parse_cli_args(["--load-hook", "x = 1", "--wait-timeout", "5"])
    assert args.load_hook == "x = 1"
    assert args.wait_timeout == 5.0
    defaults = parse_cli_args([])
    assert defaults.load_hook is None
    assert defaults.wait_timeout is None


def test_cli_reports_startup_failure(capsys: pytest.CaptureFixture[str]) -> None:
    """Print start-up errors and exit with status 1."""
    exit_code: int = cli_main(["--load-hook", "raise RuntimeError('cli hook failed')", "--wait-timeout", "30"])
    assert exit_code == 1
    assert "cli hook failed" in capsys.readouterr().err
