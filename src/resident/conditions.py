"""Relay of asynchronous worker conditions to caller-side handlers."""

import contextlib
import sys
import warnings
from collections.abc import Callable
from collections.abc import Iterable
from collections.abc import Iterator

from loguru import logger

ConditionHandler = Callable[["Condition"], object]


class RemoteWarning(UserWarning):
    """Warning category used for ``warning`` conditions raised by a worker."""


class Condition:
    """Non-terminal signal emitted by the worker while a call runs."""

    message: str
    kinds: tuple[str, ...]
    data: object
    _muffled: bool

    def __init__(
        self,
        message: str,
        kinds: Iterable[str] = ("condition",),
        data: object = None,
    ) -> None:
        """Initialize a condition.

        :param message: Human-readable condition message.
        :param kinds: Condition kinds, most specific first.
        :param data: Optional picklable detail payload.
        :raises ValueError: If ``kinds`` is empty.
        """
        self.message = message
        self.kinds = tuple(kinds)
        if len(self.kinds) == 0:
            raise ValueError("kinds must contain at least one entry")
        self.data = data
        self._muffled = False

    @property
    def muffled(self) -> bool:
        """Report whether a handler stopped propagation.

        :returns: ``True`` once :meth:`muffle` was called.
        """
        return self._muffled

    def muffle(self) -> None:
        """Stop offering this condition to further handlers."""
        self._muffled = True

    def __getstate__(self) -> dict[str, object]:
        """Drop caller-side muffle state when pickling.

        :returns: Pickle state.
        """
        return {"message": self.message, "kinds": self.kinds, "data": self.data}

    def __setstate__(self, state: dict[str, object]) -> None:
        """Restore pickled state.

        :param state: Pickle state.
        """
        self.message = str(state["message"])
        self.kinds = tuple(state["kinds"])  # type: ignore[arg-type]
        self.data = state["data"]
        self._muffled = False

    def __repr__(self) -> str:
        """Return a debugging representation.

        :returns: Representation string.
        """
        return f"Condition(message={self.message!r}, kinds={self.kinds!r})"


def _warn_handler(condition: Condition) -> None:
    warnings.warn(condition.message, RemoteWarning, stacklevel=2)


def _message_handler(condition: Condition) -> None:
    sys.stderr.write(condition.message.rstrip("\n") + "\n")


_BUILTIN_DEFAULT_HANDLERS: dict[str, ConditionHandler] = {
    "warning": _warn_handler,
    "message": _message_handler,
}


class ConditionRelay:
    """Re-signal worker conditions through caller-registered handlers."""

    _handlers: list[ConditionHandler]
    _default_handlers: dict[str, ConditionHandler]

    def __init__(self, default_handlers: dict[str, ConditionHandler] | None = None) -> None:
        """Initialize a relay.

        :param default_handlers: Optional per-kind fallback handlers. They take
            precedence over the built-in ``warning`` and ``message`` defaults.
        """
        self._handlers = []
        self._default_handlers = dict(_BUILTIN_DEFAULT_HANDLERS)
        if default_handlers is not None:
            self._default_handlers.update(default_handlers)

    @contextlib.contextmanager
    def handling(self, handler: ConditionHandler) -> Iterator[None]:
        """Register ``handler`` for the duration of a ``with`` block.

        Handlers registered later are offered conditions first.

        :param handler: Callable receiving each relayed condition.
        :yields: Control to the block.
        """
        self._handlers.append(handler)
        try:
            yield
        finally:
            self._handlers.remove(handler)

    def relay(self, condition: object) -> None:
        """Deliver one condition payload to handlers.

        :param condition: Decoded 301 payload.
        """
        if isinstance(condition, Condition) is False:
            logger.warning("condition.unknown_payload type={}", type(condition).__name__)
            return

        for handler in reversed(list(self._handlers)):
            handler(condition)
            if condition.muffled is True:
                return

        for kind in condition.kinds:
            default_handler: ConditionHandler | None = self._default_handlers.get(kind)
            if default_handler is not None:
                default_handler(condition)
                return
        logger.debug("condition.unhandled kinds={} message={}", condition.kinds, condition.message)
