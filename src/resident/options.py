"""Worker start-up configuration."""

import sys
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict

ErrorMode = Literal["error", "stack"]


def _default_library_paths() -> list[str]:
    """Return the parent interpreter's import path entries.

    :returns: Non-empty ``sys.path`` entries, in order.
    """
    return [entry for entry in sys.path if len(entry) > 0]


class SessionOptions(BaseSettings):
    """Options used to start and drive one worker session."""

    model_config = SettingsConfigDict(env_prefix="RESIDENT_", case_sensitive=False)

    library_paths: list[str] = Field(
        default_factory=_default_library_paths,
        description="Entries prepended to the worker PYTHONPATH",
    )
    env: dict[str, str] = Field(
        default_factory=lambda: {"TERM": "dumb"},
        description="Extra worker environment variables",
    )
    interpreter: str = Field(default=sys.executable, description="Worker Python interpreter")
    interpreter_args: list[str] = Field(
        default_factory=lambda: ["-u"],
        description="Interpreter flags placed before -m resident.worker",
    )
    stdout: Path | None = Field(default=None, description="Session-level stdout file; None captures per call")
    stderr: Path | None = Field(default=None, description="Session-level stderr file; None captures per call")
    error_mode: ErrorMode = Field(default="error", description="Detail level of remote errors")
    load_hook: str | None = Field(default=None, description="Python source run in the worker before ready")
    wait_timeout: float = Field(default=3.0, description="Start handshake timeout in seconds")
    close_grace: float = Field(default=1.0, description="Seconds to wait for a clean exit on close")
    interrupt_grace: float = Field(default=1.0, description="Seconds to wait for an interrupted call")
    tmp_dir: Path | None = Field(default=None, description="Parent directory of session temp dirs")


def session_options(**overrides: object) -> SessionOptions:
    """Create session options with selected fields overridden.

    :param overrides: Field values to override.
    :returns: Validated options.
    """
    return SessionOptions(**overrides)  # type: ignore[arg-type]
