"""Session supervisor: own one worker process and drive its call state machine."""

import atexit
import enum
import os
import threading
import time
from collections.abc import Callable
from typing import ClassVar
from typing import Literal
from typing import TextIO

from loguru import logger

from resident.conditions import ConditionHandler
from resident.conditions import ConditionRelay
from resident.encoder import CallEncoder
from resident.encoder import CallPaths
from resident.encoder import CallRequest
from resident.encoder import FunctionReference
from resident.errors import ResidentCrashError
from resident.errors import ResidentInterruptedError
from resident.errors import ResidentProtocolError
from resident.errors import ResidentShutdownError
from resident.errors import ResidentStartupError
from resident.errors import ResidentStateError
from resident.options import SessionOptions
from resident.process import PollStatus
from resident.process import WorkerProcess
from resident.protocol import ControlMessage
from resident.protocol import MessageCode
from resident.protocol import parse_message
from resident.store import CallResult
from resident.store import ResultStore

PollResult = Literal["ready", "timeout"]
_CANCEL_CHECK_SECONDS: float = 0.1
_KILL_WAIT_SECONDS: float = 1.0
_EXIT_SETTLE_SECONDS: float = 0.2


class SessionState(str, enum.Enum):
    """Closed set of session states."""

    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    FINISHED = "finished"


_LIVE_STATES: frozenset[SessionState] = frozenset(
    {SessionState.STARTING, SessionState.IDLE, SessionState.BUSY}
)

# Allowed (current state -> next state) moves for each message code.
TRANSITIONS: dict[MessageCode, dict[SessionState, SessionState]] = {
    MessageCode.READY: {SessionState.STARTING: SessionState.IDLE},
    MessageCode.DONE: {SessionState.BUSY: SessionState.IDLE},
    MessageCode.ATTACH_DONE: {state: SessionState.IDLE for state in _LIVE_STATES},
    MessageCode.CONDITION: {state: state for state in _LIVE_STATES},
    MessageCode.EXITED: {state: SessionState.FINISHED for state in _LIVE_STATES},
    MessageCode.CRASHED: {state: SessionState.FINISHED for state in _LIVE_STATES},
    MessageCode.DISCONNECTED: {state: SessionState.FINISHED for state in _LIVE_STATES},
}


def next_state(current: SessionState, code: MessageCode) -> SessionState:
    """Apply the transition table.

    :param current: Current session state.
    :param code: Received message code.
    :returns: State after handling the message.
    :raises ResidentProtocolError: If ``code`` is not valid in ``current``.
    """
    allowed: dict[SessionState, SessionState] = TRANSITIONS[code]
    target: SessionState | None = allowed.get(current)
    if target is None:
        raise ResidentProtocolError(
            f"Got message {int(code)} ({code.name.lower()}) when session is {current.value}"
        )
    return target


class RunningTime:
    """Elapsed times reported by ``get_running_time``."""

    total: float
    current: float | None

    def __init__(self, total: float, current: float | None) -> None:
        """Initialize running times.

        :param total: Seconds since the session started.
        :param current: Seconds since the current or most recent call started.
        """
        self.total = total
        self.current = current

    def __repr__(self) -> str:
        """Return a debugging representation.

        :returns: Representation string.
        """
        return f"RunningTime(total={self.total:.3f}, current={self.current})"


class CancellationToken:
    """Thread-safe flag checked between waits of a blocking call."""

    _event: threading.Event

    def __init__(self) -> None:
        """Initialize an uncancelled token."""
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Report whether cancellation was requested.

        :returns: ``True`` after :meth:`cancel`.
        """
        return self._event.is_set()


def _worker_environment(options: SessionOptions) -> dict[str, str]:
    """Build the worker environment.

    :param options: Session options.
    :returns: Environment mapping for the child.
    """
    env: dict[str, str] = dict(os.environ)
    env.update(options.env)
    python_path: list[str] = list(options.library_paths)
    existing: str | None = env.get("PYTHONPATH")
    if existing:
        python_path.append(existing)
    env["PYTHONPATH"] = os.pathsep.join(python_path)
    return env


def _worker_command(options: SessionOptions) -> list[str]:
    """Build the worker command line.

    :param options: Session options.
    :returns: Command without the control descriptor flag.
    """
    command: list[str] = [options.interpreter, *options.interpreter_args, "-m", "resident.worker"]
    if options.load_hook is not None:
        command.extend(["--load-hook", options.load_hook])
    return command


class Session:
    """Manage one long-lived worker process and its call state machine."""

    _options: SessionOptions
    _state: SessionState
    _process: WorkerProcess | None
    _store: ResultStore | None
    _encoder: CallEncoder
    _conditions: ConditionRelay
    _started_at: float | None
    _call_started_at: float | None
    _current_call: CallRequest | None

    def __init__(
        self,
        options: SessionOptions | None = None,
        wait: bool = True,
        wait_timeout: float | None = None,
        condition_handlers: dict[str, ConditionHandler] | None = None,
    ) -> None:
        """Start a session.

        :param options: Worker start-up options; defaults from the environment otherwise.
        :param wait: Whether to block until the worker is ready.
        :param wait_timeout: Seconds to wait for readiness; ``options.wait_timeout`` by default.
        :param condition_handlers: Per-kind fallback handlers for worker conditions.
        """
        if options is None:
            options = SessionOptions()
        self._options = options
        self._state = SessionState.STARTING
        self._process = None
        self._store = None
        self._encoder = CallEncoder(options.error_mode)
        self._conditions = ConditionRelay(condition_handlers)
        self._started_at = None
        self._call_started_at = None
        self._current_call = None
        self.start(wait=wait, wait_timeout=wait_timeout)

    @property
    def options(self) -> SessionOptions:
        """Return the session options.

        :returns: Options used to start the worker.
        """
        return self._options

    @property
    def conditions(self) -> ConditionRelay:
        """Return the relay used for worker conditions.

        :returns: Condition relay; use ``with session.conditions.handling(fn)``.
        """
        return self._conditions

    def start(self, wait: bool = True, wait_timeout: float | None = None) -> None:
        """Spawn the worker and register the ready handshake.

        :param wait: Whether to block until the worker reports ready.
        :param wait_timeout: Seconds to wait; ``options.wait_timeout`` by default.
        :raises ResidentStateError: If the session was already started.
        :raises ResidentStartupError: If the handshake does not arrive in time.
        """
        if self._process is not None:
            raise ResidentStateError("session already started")

        options: SessionOptions = self._options
        store: ResultStore = ResultStore(options.tmp_dir)
        try:
            self._process = WorkerProcess(
                _worker_command(options),
                env=_worker_environment(options),
                stdout=options.stdout,
                stderr=options.stderr,
            )
        except OSError as exc:
            store.cleanup()
            self._state = SessionState.FINISHED
            logger.warning("session.spawn_failed interpreter={} error={}", options.interpreter, exc)
            raise ResidentStartupError(f"Could not start worker session: {exc}") from exc
        self._store = store
        atexit.register(self._close_at_exit)
        self._write_for_sure(self._encoder.encode_report(MessageCode.READY, "ready to go"))
        self._started_at = time.monotonic()
        self._state = SessionState.STARTING
        logger.info("session.start pid={}", self._process.pid)

        if wait is False:
            return
        timeout: float = options.wait_timeout if wait_timeout is None else wait_timeout
        self._wait_until_ready(timeout)

    def _wait_until_ready(self, timeout: float) -> None:
        """Pump the worker's streams until the ready message arrives.

        :param timeout: Seconds; negative means infinite.
        :raises ResidentStartupError: On timeout or early exit.
        """
        process: WorkerProcess = self._require_process()
        deadline: float | None = None if timeout < 0 else time.monotonic() + timeout
        output_parts: list[str] = []
        error_parts: list[str] = []
        failure: str = "Could not start worker session, timed out"

        while self._state is SessionState.STARTING:
            remaining: float = -1.0
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
            statuses: dict[str, PollStatus] = process.poll_io(remaining)
            if statuses["output"] == "ready":
                output_parts.append(process.read_output())
            if statuses["error"] == "ready":
                error_parts.append(process.read_error())
            if statuses["control"] != "ready":
                continue

            outcome: ControlMessage | CallResult | None = self.read()
            if self._state is SessionState.FINISHED:
                failure = "Could not start worker session, worker exited"
                if isinstance(outcome, CallResult) is True and outcome.error is not None:
                    failure += f": {outcome.error}"
                break

        if self._state is SessionState.IDLE:
            logger.info("session.ready pid={}", process.pid)
            return

        if self._process is not None:
            output_parts.append(process.read_output())
            error_parts.append(process.read_error())
        logger.warning("session.start_failed pid={} reason={}", process.pid, failure)
        self._terminate()
        raise ResidentStartupError(failure, "".join(output_parts), "".join(error_parts))

    def _require_process(self) -> WorkerProcess:
        """Return the worker process.

        :returns: Worker process handle.
        :raises ResidentStateError: If the session has no worker.
        """
        process: WorkerProcess | None = self._process
        if process is None:
            raise ResidentStateError("session finished")
        return process

    def _write_for_sure(self, text: str) -> None:
        """Write text to the worker's stdin.

        :param text: Text to write.
        :raises ResidentStateError: If the worker's stdin is gone.
        """
        process: WorkerProcess = self._require_process()
        try:
            process.write_input(text)
        except (BrokenPipeError, OSError) as exc:
            raise ResidentStateError("session finished, cannot write to worker") from exc

    def send_console_input(self, source: str) -> None:
        """Feed source to the worker's console and ask for a 202 once it ran.

        Both lines go out in one write, so the worker always answers the
        command with :attr:`MessageCode.ATTACH_DONE`.

        :param source: Python source, possibly spanning several lines.
        :raises ResidentStateError: If the worker's stdin is gone.
        """
        report: str = self._encoder.encode_report(MessageCode.ATTACH_DONE, "done")
        self._write_for_sure(source.rstrip("\n") + "\n" + report)

    def call(
        self,
        function: FunctionReference,
        args: list[object] | tuple[object, ...] = (),
        kwargs: dict[str, object] | None = None,
        pass_context: bool = False,
    ) -> None:
        """Start running ``function`` in the worker and return immediately.

        :param function: Picklable callable or ``module.path:qualname`` string.
        :param args: Positional arguments; must be a list or tuple.
        :param kwargs: Optional keyword arguments.
        :param pass_context: Pass the worker context as the first argument.
        :raises ResidentStateError: If the session is not idle.
        :raises TypeError: If the call cannot be encoded.
        """
        if self._state is SessionState.STARTING:
            raise ResidentStateError("session not ready yet")
        if self._state is SessionState.FINISHED:
            raise ResidentStateError("session finished")
        if self._state is SessionState.BUSY:
            raise ResidentStateError("session busy")

        store: ResultStore = self._require_store()
        options: SessionOptions = self._options
        paths: CallPaths = store.allocate(
            capture_stdout=options.stdout is None,
            capture_stderr=options.stderr is None,
        )
        try:
            request: CallRequest = CallRequest(function, args, kwargs, paths, pass_context=pass_context)
            line: str = self._encoder.encode_call(request)
            self._write_for_sure(line)
        except BaseException:
            store.discard()
            raise

        self._current_call = request
        self._call_started_at = time.monotonic()
        self._state = SessionState.BUSY
        logger.debug("session.call pid={} function={}", self.get_pid(), request.function_name)

    def _require_store(self) -> ResultStore:
        """Return the result store.

        :returns: Result store.
        :raises ResidentStateError: If the session is finished.
        """
        store: ResultStore | None = self._store
        if store is None:
            raise ResidentStateError("session finished")
        return store

    def poll(self, timeout: float) -> PollResult:
        """Wait for the control channel to have a message.

        :param timeout: Seconds; negative means infinite.
        :returns: ``"ready"`` or ``"timeout"``.
        """
        process: WorkerProcess | None = self._process
        if process is None:
            return "ready"
        is_ready: bool = process.poll_control(timeout)
        if is_ready is True:
            return "ready"
        return "timeout"

    poll_process = poll

    def read(self) -> ControlMessage | CallResult | None:
        """Read and handle one control message without blocking.

        :returns: A call result for terminal messages, the message itself for
            non-terminal ones, or ``None`` when nothing is available.
        :raises ResidentProtocolError: On unknown codes or invalid transitions.
        """
        if self._state is SessionState.FINISHED:
            return None
        process: WorkerProcess = self._require_process()
        line: str | None = process.read_control_line()
        if line is None:
            if process.control_at_eof is False:
                return None
            line = self._describe_disconnect(process)

        message: ControlMessage = parse_message(line)
        target: SessionState = next_state(self._state, message.code)
        handler: Callable[[Session, ControlMessage, SessionState], ControlMessage | CallResult] = (
            self._MESSAGE_HANDLERS[message.code]
        )
        return handler(self, message, target)

    def _describe_disconnect(self, process: WorkerProcess) -> str:
        """Synthesize a terminal line after the control pipe closed.

        :param process: Worker process handle.
        :returns: Control line describing how the worker went away.
        """
        process.wait(_EXIT_SETTLE_SECONDS)
        if process.is_alive() is True:
            process.kill()
            process.wait(_KILL_WAIT_SECONDS)
            return f"{int(MessageCode.DISCONNECTED)} worker closed the control connection, killed"
        exit_status: int | None = process.get_exit_status()
        if exit_status == 0:
            return f"{int(MessageCode.EXITED)} worker finished cleanly"
        return f"{int(MessageCode.CRASHED)} worker crashed with exit code {exit_status}"

    def _on_done(self, message: ControlMessage, target: SessionState) -> CallResult:
        """Handle call completion.

        :param message: Received message.
        :param target: Next state.
        :returns: Materialized call result.
        """
        self._state = target
        self._current_call = None
        return self._require_store().collect(int(message.code), message.text)

    def _on_ready(self, message: ControlMessage, target: SessionState) -> ControlMessage:
        """Handle the start-up handshake.

        :param message: Received message.
        :param target: Next state.
        :returns: The message.
        """
        self._state = target
        return message

    def _on_attach_done(self, message: ControlMessage, target: SessionState) -> ControlMessage:
        """Handle the end of a raw console command.

        :param message: Received message.
        :param target: Next state.
        :returns: The message.
        """
        self._state = target
        return message

    def _on_condition(self, message: ControlMessage, target: SessionState) -> ControlMessage:
        """Pass through a condition message; ``run`` relays the payload.

        :param message: Received message.
        :param target: Next state, always the current one.
        :returns: The message.
        """
        self._state = target
        return message

    def _on_exit(self, message: ControlMessage, target: SessionState) -> CallResult:
        """Handle the worker going away.

        :param message: Received message.
        :param target: Next state, always ``finished``.
        :returns: Call result, with an error for crashes or an unfinished call.
        """
        had_call: bool = self._current_call is not None
        self._state = target
        self._current_call = None
        store: ResultStore = self._require_store()
        text: str = message.text
        if message.payload is not None:
            text = str(message.payload)

        if message.code is MessageCode.EXITED:
            result: CallResult = store.collect(int(message.code), text, expect_result=had_call)
        else:
            result = store.collect(int(message.code), text, expect_result=False)
            result.error = ResidentCrashError(text, int(message.code))
            if isinstance(message.payload, BaseException) is True:
                result.error.__cause__ = message.payload
        logger.warning("session.exit pid={} code={} message={}", self.get_pid(), int(message.code), text)
        return result

    _MESSAGE_HANDLERS: ClassVar[dict[MessageCode, Callable[..., ControlMessage | CallResult]]] = {
        MessageCode.DONE: _on_done,
        MessageCode.READY: _on_ready,
        MessageCode.ATTACH_DONE: _on_attach_done,
        MessageCode.CONDITION: _on_condition,
        MessageCode.EXITED: _on_exit,
        MessageCode.CRASHED: _on_exit,
        MessageCode.DISCONNECTED: _on_exit,
    }

    def run_with_output(
        self,
        function: FunctionReference,
        args: list[object] | tuple[object, ...] = (),
        kwargs: dict[str, object] | None = None,
        pass_context: bool = False,
        cancel: CancellationToken | None = None,
    ) -> CallResult:
        """Run ``function`` in the worker and return its full result.

        Call-level errors are returned in :attr:`CallResult.error`.

        :param function: Picklable callable or ``module.path:qualname`` string.
        :param args: Positional arguments; must be a list or tuple.
        :param kwargs: Optional keyword arguments.
        :param pass_context: Pass the worker context as the first argument.
        :param cancel: Optional token that interrupts the call when cancelled.
        :returns: Call result including captured output.
        :raises KeyboardInterrupt: After a local interrupt was forwarded to the worker.
        :raises ResidentInterruptedError: After ``cancel`` was cancelled.
        """
        self.call(function, args, kwargs, pass_context=pass_context)
        slice_timeout: float = -1.0 if cancel is None else _CANCEL_CHECK_SECONDS
        try:
            while True:
                if cancel is not None and cancel.cancelled is True:
                    partial: CallResult | None = self._interrupt_and_drain()
                    raise ResidentInterruptedError("Call cancelled", partial)
                if self.poll(slice_timeout) == "timeout":
                    continue
                outcome: ControlMessage | CallResult | None = self.read()
                if isinstance(outcome, CallResult) is True:
                    return outcome
                self._relay_condition(outcome)
        except KeyboardInterrupt:
            self._interrupt_and_drain()
            raise

    def _interrupt_and_drain(self) -> CallResult | None:
        """Interrupt the running call and collect whatever it left behind.

        :returns: The call result if the worker answered, or the crash result after a kill.
        """
        process: WorkerProcess | None = self._process
        if process is None or self._state is not SessionState.BUSY:
            return None
        logger.info("session.interrupt pid={}", process.pid)
        process.interrupt()
        deadline: float = time.monotonic() + self._options.interrupt_grace
        while self._state is SessionState.BUSY:
            remaining: float = deadline - time.monotonic()
            if remaining <= 0 or self.poll(remaining) == "timeout":
                break
            outcome: ControlMessage | CallResult | None = self.read()
            if isinstance(outcome, CallResult) is True:
                return outcome
            self._relay_condition(outcome)

        if self._state is SessionState.BUSY:
            logger.warning("session.interrupt_timeout pid={}, killing worker", process.pid)
            process.kill()
            process.wait(_KILL_WAIT_SECONDS)
            while self._state is not SessionState.FINISHED:
                self.poll(_KILL_WAIT_SECONDS)
                outcome = self.read()
                if isinstance(outcome, CallResult) is True:
                    return outcome
                self._relay_condition(outcome)
        return None

    def _relay_condition(self, outcome: ControlMessage | CallResult | None) -> None:
        """Pass a condition message's payload to the condition relay.

        :param outcome: Value returned by :meth:`read`.
        """
        if isinstance(outcome, ControlMessage) is True and outcome.code is MessageCode.CONDITION:
            self._conditions.relay(outcome.payload)

    def run(
        self,
        function: FunctionReference,
        args: list[object] | tuple[object, ...] = (),
        kwargs: dict[str, object] | None = None,
        pass_context: bool = False,
        cancel: CancellationToken | None = None,
    ) -> object:
        """Run ``function`` in the worker and return its value.

        :param function: Picklable callable or ``module.path:qualname`` string.
        :param args: Positional arguments; must be a list or tuple.
        :param kwargs: Optional keyword arguments.
        :param pass_context: Pass the worker context as the first argument.
        :param cancel: Optional token that interrupts the call when cancelled.
        :returns: The function's return value.
        :raises ResidentRemoteError: If the function raised in the worker.
        :raises ResidentCrashError: If the worker crashed during the call.
        """
        result: CallResult = self.run_with_output(
            function,
            args,
            kwargs,
            pass_context=pass_context,
            cancel=cancel,
        )
        if result.error is not None:
            raise result.error
        return result.result

    def close(self, grace: float | None = None) -> None:
        """Stop the worker and release every resource.

        :param grace: Seconds to wait for a clean exit after closing stdin;
            ``options.close_grace`` by default.
        :raises ResidentShutdownError: If the worker cannot be killed.
        """
        process: WorkerProcess | None = self._process
        if process is None or self._store is None:
            self._state = SessionState.FINISHED
            return
        if grace is None:
            grace = self._options.close_grace

        process.close_input()
        process.wait(grace)
        process.kill()
        exited: bool = process.wait(_KILL_WAIT_SECONDS)
        if exited is False:
            raise ResidentShutdownError(f"Could not kill worker process {process.pid}")
        logger.info("session.close pid={} exit_status={}", process.pid, process.get_exit_status())
        self._terminate()

    def _terminate(self) -> None:
        """Kill the worker if needed and release streams and temp files."""
        process: WorkerProcess | None = self._process
        if process is not None:
            process.kill()
            process.wait(_KILL_WAIT_SECONDS)
            process.close_streams()
        store: ResultStore | None = self._store
        if store is not None:
            store.cleanup()
        self._state = SessionState.FINISHED
        self._call_started_at = None
        self._current_call = None
        self._store = None
        atexit.unregister(self._close_at_exit)

    def _close_at_exit(self) -> None:
        """Close the session during interpreter shutdown."""
        try:
            self.close(grace=0.0)
        except ResidentShutdownError:
            logger.warning("session.close_at_exit_failed pid={}", self.get_pid())

    def interrupt(self) -> bool:
        """Send an interrupt to the worker.

        :returns: ``True`` when the signal was delivered.
        """
        process: WorkerProcess | None = self._process
        if process is None:
            return False
        return process.interrupt()

    def get_state(self) -> SessionState:
        """Return the session state.

        :returns: Current state.
        """
        return self._state

    def get_running_time(self) -> RunningTime:
        """Return elapsed times of the session and of the current call.

        :returns: Running times in seconds.
        """
        now: float = time.monotonic()
        started_at: float = now if self._started_at is None else self._started_at
        current: float | None = None
        if self._call_started_at is not None:
            current = now - self._call_started_at
        return RunningTime(now - started_at, current)

    def get_pid(self) -> int | None:
        """Return the worker process identifier.

        :returns: Process identifier, or ``None`` before start.
        """
        process: WorkerProcess | None = self._process
        if process is None:
            return None
        return process.pid

    def is_alive(self) -> bool:
        """Report whether the worker process is running.

        :returns: ``True`` while the worker runs.
        """
        process: WorkerProcess | None = self._process
        if process is None:
            return False
        return process.is_alive()

    def read_output(self) -> str:
        """Read pending worker stdout outside of calls.

        :returns: Text, possibly empty.
        """
        process: WorkerProcess | None = self._process
        if process is None:
            return ""
        return process.read_output()

    def read_error(self) -> str:
        """Read pending worker stderr outside of calls.

        :returns: Text, possibly empty.
        """
        process: WorkerProcess | None = self._process
        if process is None:
            return ""
        return process.read_error()

    def poll_io(self, timeout: float) -> dict[str, PollStatus]:
        """Poll the worker's stdout, stderr and control channel together.

        :param timeout: Seconds; negative means infinite.
        :returns: Status per stream.
        """
        return self._require_process().poll_io(timeout)

    def traceback(self) -> list[str]:
        """Return the stack of the last failed call in the worker.

        :returns: Frame descriptions, outermost first.
        """
        from resident.interactive import show_traceback

        return show_traceback(self)

    def debug(self, input_func: Callable[[str], str] = input, output: TextIO | None = None) -> None:
        """Inspect the frames of the last failed call interactively.

        :param input_func: Prompt reader.
        :param output: Text stream for output; ``sys.stdout`` by default.
        """
        from resident.interactive import debug

        debug(self, input_func=input_func, output=output)

    def attach(self, input_func: Callable[[str], str] = input, output: TextIO | None = None) -> None:
        """Drive the worker's console directly.

        :param input_func: Prompt reader.
        :param output: Text stream for output; ``sys.stdout`` by default.
        """
        from resident.interactive import attach

        attach(self, input_func=input_func, output=output)

    def __enter__(self) -> "Session":
        """Enter a ``with`` block.

        :returns: This session.
        """
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        """Close the session when leaving a ``with`` block.

        :param exc_type: Exception type.
        :param exc_value: Exception value.
        :param exc_traceback: Exception traceback.
        """
        self.close()

    def __repr__(self) -> str:
        """Describe the session like ``alive, idle, pid 123``.

        :returns: Representation string.
        """
        if self.is_alive() is True:
            status: str = f"alive, {self._state.value}"
        else:
            status = "finished"
        return f"<resident Session {status}, pid {self.get_pid()}>"
