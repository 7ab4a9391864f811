"""Shared fixtures for resident tests."""

from collections.abc import Iterator

import pytest

from resident import Session
from resident import SessionOptions
from resident import session_options

START_TIMEOUT_SECONDS: float = 30.0


@pytest.fixture
def options() -> SessionOptions:
    """Return options with a start-up timeout suited to slow machines.

    :returns: Session options.
    """
    return session_options(wait_timeout=START_TIMEOUT_SECONDS)


@pytest.fixture
def session(options: SessionOptions) -> Iterator[Session]:
    """Start one session per test and always close it.

    :param options: Session options.
    :yields: Ready session.
    """
    active: Session = Session(options)
    try:
        yield active
    finally:
        active.close()
