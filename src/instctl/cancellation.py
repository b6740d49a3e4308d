"""Cooperative cancellation for long-running provider calls."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field

from .errors import OperationCancelledError


@dataclass
class CancelToken:
    """Thread-safe flag checked at cancellation checkpoints."""

    _event: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "operation") -> None:
        """Raise :class:`OperationCancelledError` when cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelledError(f"{where} cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return ``True`` early if cancelled."""
        return self._event.wait(seconds)


__all__ = ["CancelToken"]
