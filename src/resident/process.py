"""Thin process layer: spawn a worker with pipes plus one control pipe."""

import codecs
import os
import select
import signal
import subprocess
import time
from pathlib import Path
from typing import BinaryIO
from typing import Literal

PollStatus = Literal["ready", "timeout", "closed", "nopipe"]
_READ_CHUNK_BYTES: int = 65536


def _select_timeout(timeout: float) -> float | None:
    """Translate a resident timeout into a ``select`` timeout.

    :param timeout: Seconds; negative means infinite.
    :returns: ``None`` for infinite waits, otherwise a non-negative float.
    """
    if timeout < 0:
        return None
    return timeout


class _ReadablePipe:
    """Non-blocking reader over one pipe file descriptor."""

    fd: int | None
    at_eof: bool
    _buffer: bytearray

    def __init__(self, fd: int | None) -> None:
        """Initialize the reader.

        :param fd: Pipe read end, or ``None`` when the stream is not piped.
        """
        self.fd = fd
        self.at_eof = fd is None
        self._buffer = bytearray()
        if fd is not None:
            os.set_blocking(fd, False)

    def fill(self) -> int:
        """Move currently available bytes into the buffer.

        :returns: Number of bytes read.
        """
        if self.fd is None or self.at_eof is True:
            return 0
        total: int = 0
        while True:
            try:
                chunk: bytes = os.read(self.fd, _READ_CHUNK_BYTES)
            except BlockingIOError:
                return total
            except OSError:
                self.at_eof = True
                return total
            if len(chunk) == 0:
                self.at_eof = True
                return total
            self._buffer.extend(chunk)
            total += len(chunk)

    def has_line(self) -> bool:
        """Report whether a complete line is buffered.

        :returns: ``True`` when a newline-terminated line is available.
        """
        return b"\n" in self._buffer

    def take_line(self) -> bytes | None:
        """Remove and return one complete buffered line.

        :returns: Line bytes without the newline, or ``None``.
        """
        index: int = self._buffer.find(b"\n")
        if index < 0:
            return None
        line: bytes = bytes(self._buffer[:index])
        del self._buffer[: index + 1]
        return line

    def take_all(self) -> bytes:
        """Remove and return all buffered bytes.

        :returns: Buffered bytes.
        """
        data: bytes = bytes(self._buffer)
        self._buffer.clear()
        return data

    def close(self) -> None:
        """Close the underlying descriptor."""
        fd: int | None = self.fd
        self.fd = None
        self.at_eof = True
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass


class WorkerProcess:
    """Own one spawned worker process and its four streams."""

    _popen: subprocess.Popen[bytes]
    _control: _ReadablePipe
    _output: _ReadablePipe
    _error: _ReadablePipe
    _output_decoder: codecs.IncrementalDecoder
    _error_decoder: codecs.IncrementalDecoder
    _redirect_files: list[BinaryIO]

    def __init__(
        self,
        command: list[str],
        env: dict[str, str] | None = None,
        stdout: Path | None = None,
        stderr: Path | None = None,
        control_fd_flag: str = "--control-fd",
    ) -> None:
        """Spawn the process.

        :param command: Command line; ``control_fd_flag`` and the descriptor are appended.
        :param env: Full child environment, or ``None`` to inherit.
        :param stdout: Optional file receiving stdout instead of a pipe.
        :param stderr: Optional file receiving stderr instead of a pipe.
        :param control_fd_flag: Flag used to tell the child its control descriptor.
        """
        control_read, control_write = os.pipe()
        self._redirect_files = []
        stdout_target: int | BinaryIO = subprocess.PIPE
        if stdout is not None:
            stdout_file: BinaryIO = open(stdout, "ab")
            self._redirect_files.append(stdout_file)
            stdout_target = stdout_file
        stderr_target: int | BinaryIO = subprocess.PIPE
        if stderr is not None:
            stderr_file: BinaryIO = open(stderr, "ab")
            self._redirect_files.append(stderr_file)
            stderr_target = stderr_file

        full_command: list[str] = list(command) + [control_fd_flag, str(control_write)]
        try:
            self._popen = subprocess.Popen(  # noqa: S603
                full_command,
                stdin=subprocess.PIPE,
                stdout=stdout_target,
                stderr=stderr_target,
                env=env,
                pass_fds=(control_write,),
                close_fds=True,
                start_new_session=True,
            )
        except OSError:
            os.close(control_read)
            raise
        finally:
            os.close(control_write)
            for redirect_file in self._redirect_files:
                redirect_file.close()

        self._control = _ReadablePipe(control_read)
        output_fd: int | None = None
        if self._popen.stdout is not None:
            output_fd = self._popen.stdout.fileno()
        error_fd: int | None = None
        if self._popen.stderr is not None:
            error_fd = self._popen.stderr.fileno()
        self._output = _ReadablePipe(output_fd)
        self._error = _ReadablePipe(error_fd)
        self._output_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._error_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pid(self) -> int:
        """Return the worker process identifier.

        :returns: Process identifier.
        """
        return self._popen.pid

    def is_alive(self) -> bool:
        """Report whether the process is still running.

        :returns: ``True`` while the process has not exited.
        """
        return self._popen.poll() is None

    def get_exit_status(self) -> int | None:
        """Return the exit status.

        :returns: Exit code, negative signal number, or ``None`` while alive.
        """
        return self._popen.poll()

    def write_input(self, text: str) -> None:
        """Write all of ``text`` to stdin, retrying partial writes.

        :param text: Text to write.
        :raises BrokenPipeError: If the process closed its stdin.
        """
        stdin = self._popen.stdin
        if stdin is None or stdin.closed is True:
            raise BrokenPipeError("worker stdin is closed")
        data: memoryview = memoryview(text.encode("utf-8"))
        fd: int = stdin.fileno()
        while len(data) > 0:
            _, writable, _ = select.select([], [fd], [], 0.1)
            if len(writable) == 0:
                if self.is_alive() is False:
                    raise BrokenPipeError("worker exited while writing stdin")
                continue
            written: int = os.write(fd, data)
            data = data[written:]

    def close_input(self) -> None:
        """Close the worker's stdin."""
        stdin = self._popen.stdin
        if stdin is None:
            return
        try:
            stdin.close()
        except OSError:
            pass

    def _wait_readable(self, pipes: list[_ReadablePipe], timeout: float) -> list[_ReadablePipe]:
        """Wait until any of ``pipes`` has bytes or EOF.

        :param pipes: Candidate pipes with open descriptors.
        :param timeout: Seconds; negative means infinite.
        :returns: Pipes reported readable.
        """
        open_pipes: list[_ReadablePipe] = [pipe for pipe in pipes if pipe.fd is not None and pipe.at_eof is False]
        if len(open_pipes) == 0:
            return []
        fds: list[int] = [pipe.fd for pipe in open_pipes if pipe.fd is not None]
        try:
            readable, _, _ = select.select(fds, [], [], _select_timeout(timeout))
        except InterruptedError:
            return []
        return [pipe for pipe in open_pipes if pipe.fd in readable]

    def poll_control(self, timeout: float) -> bool:
        """Wait until a complete control line is buffered or the pipe closes.

        :param timeout: Seconds; negative means infinite.
        :returns: ``True`` when :meth:`read_control_line` has something to report.
        """
        deadline: float | None = None
        if timeout >= 0:
            deadline = time.monotonic() + timeout
        while True:
            if self._control.has_line() is True or self._control.at_eof is True:
                return True
            remaining: float = -1.0
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
            readable: list[_ReadablePipe] = self._wait_readable([self._control], remaining)
            if len(readable) > 0:
                self._control.fill()
                continue
            if deadline is not None and time.monotonic() >= deadline:
                return self._control.has_line() is True or self._control.at_eof is True

    def read_control_line(self) -> str | None:
        """Read one control line without blocking.

        :returns: Decoded line, or ``None`` if no complete line is available.
        """
        if self._control.has_line() is False:
            self._control.fill()
        line: bytes | None = self._control.take_line()
        if line is None:
            return None
        return line.decode("utf-8", errors="replace")

    @property
    def control_at_eof(self) -> bool:
        """Report whether the control pipe is closed with no buffered line.

        :returns: ``True`` when no further control lines can arrive.
        """
        return self._control.at_eof is True and self._control.has_line() is False

    def poll_io(self, timeout: float) -> dict[str, PollStatus]:
        """Poll stdout, stderr and the control pipe together.

        :param timeout: Seconds; negative means infinite.
        :returns: Status per stream, keyed ``output``, ``error`` and ``control``.
        """
        streams: dict[str, _ReadablePipe] = {
            "output": self._output,
            "error": self._error,
            "control": self._control,
        }
        has_pending: bool = self._control.has_line() is True
        wait_timeout: float = 0.0 if has_pending is True else timeout
        readable: list[_ReadablePipe] = self._wait_readable(list(streams.values()), wait_timeout)
        if self._control in readable:
            self._control.fill()

        statuses: dict[str, PollStatus] = {}
        for name, pipe in streams.items():
            if pipe.fd is None:
                statuses[name] = "nopipe"
            elif pipe is self._control and pipe.has_line() is True:
                statuses[name] = "ready"
            elif pipe.at_eof is True:
                statuses[name] = "closed"
            elif pipe in readable and pipe is not self._control:
                statuses[name] = "ready"
            else:
                statuses[name] = "timeout"
        if self._control.at_eof is True and self._control.has_line() is False:
            statuses["control"] = "ready"
        return statuses

    def read_output(self) -> str:
        """Read currently available stdout text without blocking.

        :returns: Decoded text, possibly empty.
        """
        self._output.fill()
        return self._output_decoder.decode(self._output.take_all(), final=self._output.at_eof)

    def read_error(self) -> str:
        """Read currently available stderr text without blocking.

        :returns: Decoded text, possibly empty.
        """
        self._error.fill()
        return self._error_decoder.decode(self._error.take_all(), final=self._error.at_eof)

    def interrupt(self) -> bool:
        """Send SIGINT to the worker.

        :returns: ``True`` when the signal was delivered.
        """
        if self.is_alive() is False:
            return False
        try:
            self._popen.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return False
        return True

    def kill(self) -> bool:
        """Force-kill the worker.

        :returns: ``True`` when a kill signal was sent.
        """
        if self.is_alive() is False:
            return False
        try:
            self._popen.kill()
        except ProcessLookupError:
            return False
        return True

    def wait(self, timeout: float) -> bool:
        """Wait for the worker to exit.

        :param timeout: Seconds; negative means infinite.
        :returns: ``True`` when the process has exited.
        """
        try:
            self._popen.wait(timeout=_select_timeout(timeout))
        except subprocess.TimeoutExpired:
            return False
        return True

    def close_streams(self) -> None:
        """Close every pipe owned by this process handle."""
        self.close_input()
        self._control.close()
        # The Popen objects own stdout/stderr; closing them closes the descriptors.
        self._output.fd = None
        self._error.fd = None
        self._output.at_eof = True
        self._error.at_eof = True
        for stream in (self._popen.stdout, self._popen.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass
