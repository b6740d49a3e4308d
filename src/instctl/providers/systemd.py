"""Systemd provider for instance and network daemon units."""
from __future__ import annotations

import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass

from ..cancellation import CancelToken

ACTIVE_STATES = frozenset({"active", "activating", "reloading"})


class SystemdError(RuntimeError):
    """Raised when a systemctl call fails or systemctl is missing."""


@dataclass(slots=True)
class SystemdProvider:
    """Start, stop and query the units backing instctl instances."""

    unit_prefix: str = "instctl"
    systemctl_bin: str = "systemctl"
    user: bool = True

    def unit_name(self, instance: str) -> str:
        """Return ``<prefix>-<instance>.service``."""
        safe = instance.replace("/", "-")
        return f"{self.unit_prefix}-{safe}.service"

    def network_unit_name(self, network: str) -> str:
        """Return the unit name of the daemon serving *network*."""
        safe = network.replace("/", "-")
        return f"{self.unit_prefix}-net-{safe}.service"

    def start(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl("start", unit)

    def stop(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Stop *unit*."""
        return self._systemctl("stop", unit)

    def active_state(self, unit: str) -> str:
        """Return the ``is-active`` state of *unit* (``inactive`` when unknown)."""
        result = self._systemctl("is-active", unit, check=False)
        state = (result.stdout or "").strip()
        return state or "inactive"

    def is_active(self, unit: str) -> bool:
        """Return ``True`` when *unit* is running or coming up."""
        return self.active_state(unit) in ACTIVE_STATES

    def wait_until_active(
        self,
        unit: str,
        *,
        cancel: CancelToken,
        timeout: float,
        poll_interval: float = 1.0,
    ) -> None:
        """Block until *unit* reports ``active``.

        Raises :class:`SystemdError` when the unit fails or *timeout* elapses;
        cancellation is checked between polls.
        """
        deadline = time.monotonic() + timeout
        while True:
            cancel.raise_if_cancelled(f"waiting for {unit}")
            state = self.active_state(unit)
            if state == "active":
                return
            if state == "failed":
                raise SystemdError(f"{unit} failed to start")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SystemdError(
                    f"{unit} did not become active within {timeout:g}s (state={state})"
                )
            cancel.wait(min(poll_interval, remaining))

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin]
        if self.user:
            args.append("--user")
        args.append(command)
        if unit is not None:
            args.append(unit)
        return self._run_command(args, check=check, error_prefix=f"{self.systemctl_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdProvider", "SystemdError"]
