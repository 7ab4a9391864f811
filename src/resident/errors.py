"""Custom error types for resident."""


class ResidentError(Exception):
    """Base class for all resident errors."""


class ResidentStartupError(ResidentError):
    """Raised when the worker does not complete its ready handshake."""

    stdout: str
    stderr: str

    def __init__(self, message: str, stdout: str = "", stderr: str = "") -> None:
        """Initialize a startup error.

        :param message: Human-readable failure description.
        :param stdout: Worker standard output collected while waiting.
        :param stderr: Worker standard error collected while waiting.
        """
        self.stdout = stdout
        self.stderr = stderr
        formatted: str = message
        if len(stdout) > 0:
            formatted += f"\nstdout:\n{stdout}"
        if len(stderr) > 0:
            formatted += f"\nstderr:\n{stderr}"
        super().__init__(formatted)


class ResidentProtocolError(ResidentError):
    """Raised for unexpected messages on the control channel."""


class ResidentStateError(ResidentError):
    """Raised when an operation is not allowed in the current session state."""


class ResidentShutdownError(ResidentError):
    """Raised when the worker process cannot be terminated."""


class ResidentCrashError(ResidentError):
    """Reported when the worker exits or drops the control channel mid-session."""

    code: int

    def __init__(self, message: str, code: int) -> None:
        """Initialize a crash error.

        :param message: Crash description.
        :param code: Control message code that reported the crash.
        """
        self.code = code
        super().__init__(message)

    def __reduce__(self) -> object:
        """Keep crash errors picklable.

        :returns: Reduction tuple.
        """
        return (self.__class__, (str(self), self.code))


class ResidentRemoteError(ResidentError):
    """Raised when the function called in the worker raised an exception."""

    remote_type_name: str
    remote_message: str
    remote_traceback: str
    remote_frames: list[str]

    def __init__(
        self,
        remote_type_name: str,
        remote_message: str,
        remote_traceback: str,
        remote_frames: list[str] | None = None,
    ) -> None:
        """Initialize a remote exception wrapper.

        :param remote_type_name: Original remote exception type name.
        :param remote_message: Original remote exception message.
        :param remote_traceback: Original remote traceback text.
        :param remote_frames: Optional per-frame details, outermost first.
        """
        self.remote_type_name = remote_type_name
        self.remote_message = remote_message
        self.remote_traceback = remote_traceback
        if remote_frames is None:
            self.remote_frames = []
        else:
            self.remote_frames = list(remote_frames)
        formatted: str = (
            f"Remote side raised {remote_type_name}: {remote_message}\n"
            + f"Remote traceback:\n{remote_traceback}"
        )
        super().__init__(formatted)

    def __reduce__(self) -> object:
        """Keep remote errors picklable across the result blob.

        :returns: Reduction tuple.
        """
        return (
            self.__class__,
            (
                self.remote_type_name,
                self.remote_message,
                self.remote_traceback,
                self.remote_frames,
            ),
        )


class ResidentInterruptedError(ResidentError):
    """Raised when a blocking call is cancelled through a cancellation token."""

    result: object

    def __init__(self, message: str, result: object = None) -> None:
        """Initialize an interruption error.

        :param message: Interruption description.
        :param result: Partial call result drained after the interrupt, if any.
        """
        self.result = result
        super().__init__(message)
