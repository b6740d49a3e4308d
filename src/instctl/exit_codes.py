"""Process exit codes used by the instctl CLI."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes shared by every instctl command."""

    OK = 0
    # Bad input: unknown instance, wrong state, invalid document or expression.
    VALIDATION = 2
    # Local environment: file system, editor.
    ENVIRONMENT = 3
    # systemd units and network daemons.
    PROVIDER = 4


def exit_code_for(exc: BaseException, default: ExitCode = ExitCode.VALIDATION) -> ExitCode:
    """Return the exit code carried by *exc* (``exit_code`` attribute) or *default*."""
    code = getattr(exc, "exit_code", None)
    if isinstance(code, int):
        return ExitCode(code)
    return default


__all__ = ["ExitCode", "exit_code_for"]
