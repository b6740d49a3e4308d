"""Error taxonomy shared by the edit session and the CLI.

Every error carries the :class:`~instctl.exit_codes.ExitCode` the CLI exits
with when it reaches the top level. Collaborator modules raise their own
narrow exceptions (``PatchError``, ``SystemdError`` ...); the edit session
translates those into the classes below so callers only need to handle one
hierarchy.
"""
from __future__ import annotations

from pathlib import Path

from .exit_codes import ExitCode


class EditError(RuntimeError):
    """Base class for failures raised by an edit session."""

    exit_code: ExitCode = ExitCode.VALIDATION


class InstanceNotFoundError(EditError, LookupError):
    """Raised when the requested instance does not exist."""

    def __init__(self, name: str) -> None:
        """Record the missing instance *name*."""
        super().__init__(f"Instance '{name}' not found")
        self.name = name


class InvalidStateError(EditError):
    """Raised when the instance is in a state that forbids editing."""


class EvaluationError(EditError):
    """Raised when a scripted patch expression cannot be applied."""


class ValidationError(EditError):
    """Raised when the candidate document was rejected.

    ``rejected_path`` points at the recovery artifact holding the rejected
    buffer.
    """

    def __init__(self, message: str, *, rejected_path: Path) -> None:
        """Initialise the error with the saved buffer location."""
        super().__init__(message)
        self.rejected_path = rejected_path


class PersistenceError(EditError):
    """Raised when writing the document or the recovery artifact fails."""

    exit_code = ExitCode.ENVIRONMENT


class CoordinationError(EditError):
    """Raised when reconciling networks or starting the instance fails."""

    exit_code = ExitCode.PROVIDER


class OperationCancelledError(CoordinationError):
    """Raised when a cancellation request interrupts the restart phases."""


__all__ = [
    "CoordinationError",
    "EditError",
    "EvaluationError",
    "InstanceNotFoundError",
    "InvalidStateError",
    "OperationCancelledError",
    "PersistenceError",
    "ValidationError",
]
