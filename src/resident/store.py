"""Temp artifacts of the in-flight call and materialization of its result."""

import pickle
import shutil
import tempfile
import traceback
import uuid
from pathlib import Path

from loguru import logger

from resident.encoder import CallPaths
from resident.errors import ResidentError
from resident.errors import ResidentRemoteError


class CallResult:
    """Outcome of one call, as returned by ``run_with_output``."""

    code: int
    message: str
    result: object
    error: BaseException | None
    stdout: str
    stderr: str

    def __init__(
        self,
        code: int,
        message: str,
        result: object = None,
        error: BaseException | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Initialize a call result.

        :param code: Control message code that ended the call.
        :param message: Control message text.
        :param result: Returned value when the call succeeded.
        :param error: Error when the call failed; the single source of truth for failure.
        :param stdout: Captured standard output.
        :param stderr: Captured standard error.
        """
        self.code = code
        self.message = message
        self.result = result
        self.error = error
        self.stdout = stdout
        self.stderr = stderr

    @property
    def failed(self) -> bool:
        """Report whether the call failed.

        :returns: ``True`` when :attr:`error` is set.
        """
        return self.error is not None

    def __repr__(self) -> str:
        """Return a debugging representation.

        :returns: Representation string.
        """
        return (
            f"CallResult(code={self.code}, message={self.message!r}, "
            + f"result={self.result!r}, error={self.error!r})"
        )


def _read_capture(path: Path | None) -> str:
    """Read one capture file, tolerating missing or unreadable files.

    :param path: Capture file path, or ``None``.
    :returns: File text, or ``""``.
    """
    if path is None:
        return ""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def _unlink_quietly(path: Path) -> None:
    """Delete one file if present.

    :param path: File path.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("store.unlink_failed path={} error={}", path, exc)


def _load_outcome(result_path: Path) -> tuple[object, BaseException | None]:
    """Load the worker's pickled ``(tag, value)`` outcome.

    :param result_path: Result blob path.
    :returns: Tuple of ``(result, error)``.
    """
    try:
        with open(result_path, "rb") as result_file:
            outcome: object = pickle.load(result_file)
    except FileNotFoundError:
        return None, ResidentError("Worker did not produce a result for the call")
    except Exception as exc:
        return None, ResidentRemoteError(
            type(exc).__name__,
            f"Failed to read call result: {exc}",
            traceback.format_exc(),
        )

    if isinstance(outcome, tuple) is False or len(outcome) != 2:
        return None, ResidentError("Malformed call result blob")
    tag, value = outcome
    if tag == "result":
        return value, None
    if tag == "error" and isinstance(value, BaseException) is True:
        return None, value
    return None, ResidentError(f"Malformed call result tag: {tag!r}")


class ResultStore:
    """Own the session temp directory and the paths of the in-flight call."""

    _root: Path
    _paths: CallPaths | None

    def __init__(self, parent_dir: Path | None = None) -> None:
        """Create the private temp directory.

        :param parent_dir: Optional parent directory; the system default otherwise.
        """
        parent: str | None = None if parent_dir is None else str(parent_dir)
        self._root = Path(tempfile.mkdtemp(prefix="resident-", dir=parent))
        self._paths = None

    @property
    def root(self) -> Path:
        """Return the private temp directory.

        :returns: Directory path.
        """
        return self._root

    @property
    def paths(self) -> CallPaths | None:
        """Return the paths of the in-flight call.

        :returns: Call paths, or ``None`` when no call is live.
        """
        return self._paths

    def allocate(self, capture_stdout: bool, capture_stderr: bool) -> CallPaths:
        """Create fresh paths for the next call.

        :param capture_stdout: Whether stdout needs a per-call capture file.
        :param capture_stderr: Whether stderr needs a per-call capture file.
        :returns: Allocated paths.
        :raises ResidentError: If a call still owns artifacts.
        """
        if self._paths is not None:
            raise ResidentError("Previous call artifacts were not collected")
        token: str = uuid.uuid4().hex
        stdout_path: Path | None = None
        if capture_stdout is True:
            stdout_path = self._root / f"{token}.stdout"
        stderr_path: Path | None = None
        if capture_stderr is True:
            stderr_path = self._root / f"{token}.stderr"
        self._paths = CallPaths(
            self._root / f"{token}.call",
            self._root / f"{token}.result",
            stdout_path,
            stderr_path,
        )
        return self._paths

    def collect(self, code: int, message: str, expect_result: bool = True) -> CallResult:
        """Materialize the in-flight call's result and delete its artifacts.

        :param code: Terminal message code.
        :param message: Terminal message text.
        :param expect_result: Whether the result blob should be read.
        :returns: Call result; empty when no call was live.
        """
        paths: CallPaths | None = self._paths
        if paths is None:
            return CallResult(code, message)

        stdout: str = _read_capture(paths.stdout_path)
        stderr: str = _read_capture(paths.stderr_path)
        result: object = None
        error: BaseException | None = None
        if expect_result is True:
            result, error = _load_outcome(paths.result_path)
        self.discard()
        return CallResult(code, message, result=result, error=error, stdout=stdout, stderr=stderr)

    def discard(self) -> None:
        """Delete the in-flight call's artifacts and forget its paths."""
        paths: CallPaths | None = self._paths
        self._paths = None
        if paths is None:
            return
        for path in paths.all_paths():
            _unlink_quietly(path)

    def cleanup(self) -> None:
        """Delete every artifact and the temp directory itself."""
        self.discard()
        shutil.rmtree(self._root, ignore_errors=True)
