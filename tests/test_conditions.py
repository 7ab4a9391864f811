"""Unit tests for the condition relay."""

import pickle
import warnings

import pytest

from resident import Condition
from resident import ConditionRelay
from resident import RemoteWarning


def test_innermost_handler_runs_first_and_muffles() -> None:
    """Offer conditions to the most recent handler first and stop on muffle."""
    relay: ConditionRelay = ConditionRelay()
    calls: list[str] = []

    def _outer(condition: Condition) -> None:
        calls.append("outer")

    def _inner(condition: Condition) -> None:
        calls.append("inner")
        condition.muffle()

    with relay.handling(_outer):
        with relay.handling(_inner):
            relay.relay(Condition("step", ("progress", "condition")))
    assert calls == ["inner"]


def test_unmuffled_condition_reaches_every_handler() -> None:
    """Pass an unmuffled condition on to outer handlers."""
    relay: ConditionRelay = ConditionRelay()
    calls: list[str] = []
    with relay.handling(lambda condition: calls.append("outer")):
        with relay.handling(lambda condition: calls.append("inner")):
            relay.relay(Condition("step", ("progress", "condition")))
    assert calls == ["inner", "outer"]


def test_handlers_are_removed_after_block() -> None:
    """Unregister handlers when their block exits."""
    relay: ConditionRelay = ConditionRelay()
    calls: list[str] = []
    with relay.handling(lambda condition: calls.append(condition.message)):
        pass
    relay.relay(Condition("late", ("progress",)))
    assert calls == []


def test_warning_default_handler() -> None:
    """Re-signal unhandled warnings as caller-side warnings."""
    relay: ConditionRelay = ConditionRelay()
    with pytest.warns(RemoteWarning, match="disk almost full"):
        relay.relay(Condition("disk almost full", ("warning", "condition")))


def test_message_default_handler(capsys: pytest.CaptureFixture[str]) -> None:
    """Write unhandled messages to stderr."""
    ConditionRelay().relay(Condition("hello from worker", ("message", "condition")))
    assert capsys.readouterr().err == "hello from worker\n"


def test_custom_default_handler_takes_precedence() -> None:
    """Prefer per-kind handlers given to the relay over the built-in ones."""
    seen: list[str] = []
    relay: ConditionRelay = ConditionRelay({"warning": lambda condition: seen.append(condition.message)})
    relay.relay(Condition("quiet", ("warning", "condition")))
    assert seen == ["quiet"]


def test_muffled_condition_skips_default_handler() -> None:
    """Skip fallbacks once a handler muffled the condition."""
    relay: ConditionRelay = ConditionRelay()
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        with relay.handling(lambda condition: condition.muffle()):
            relay.relay(Condition("suppressed", ("warning",)))
    assert caught == []


def test_non_condition_payload_is_ignored() -> None:
    """Ignore payloads that are not conditions."""
    calls: list[object] = []
    relay: ConditionRelay = ConditionRelay()
    with relay.handling(calls.append):
        relay.relay({"not": "a condition"})
    assert calls == []


def test_condition_requires_kinds_and_resets_muffle_on_pickle() -> None:
    """Require at least one kind and start unmuffled after transport."""
    with pytest.raises(ValueError):
        Condition("no kinds", ())
    condition: Condition = Condition("step", ("progress",), data={"n": 1})
    condition.muffle()
    copy: Condition = pickle.loads(pickle.dumps(condition))
    assert copy.muffled is False
    assert copy.kinds == ("progress",)
    assert copy.data == {"n": 1}
