"""Instance status derived from the backing systemd unit."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .systemd import ACTIVE_STATES, SystemdError, SystemdProvider


class InstanceState(str, Enum):
    """Lifecycle states an instance can be observed in."""

    RUNNING = "running"
    STOPPED = "stopped"
    BROKEN = "broken"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class InstanceStatus:
    """Represents the observed status of an instance."""

    state: InstanceState
    detail: str = ""


class InstanceStatusProvider:
    """Return status information for instances.

    ``systemctl is-active`` output is mapped onto :class:`InstanceState`. When
    systemd cannot be queried at all the state is ``unknown``; callers decide
    whether that is good enough for what they are about to do.
    """

    def __init__(self, systemd: SystemdProvider) -> None:
        """Bind the provider used to query unit state."""
        self._systemd = systemd

    def status(self, name: str) -> InstanceStatus:
        """Return the status for the instance *name*."""
        unit = self._systemd.unit_name(name)
        try:
            raw = self._systemd.active_state(unit)
        except SystemdError as exc:
            return InstanceStatus(state=InstanceState.UNKNOWN, detail=str(exc))
        if raw in ACTIVE_STATES:
            return InstanceStatus(state=InstanceState.RUNNING, detail=f"{unit} is {raw}")
        if raw == "failed":
            return InstanceStatus(state=InstanceState.BROKEN, detail=f"{unit} failed")
        return InstanceStatus(state=InstanceState.STOPPED, detail=f"{unit} is {raw}")


__all__ = ["InstanceState", "InstanceStatus", "InstanceStatusProvider"]
