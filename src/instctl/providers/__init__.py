"""Provider interfaces for instctl."""
from __future__ import annotations

from .instance_status_provider import InstanceState, InstanceStatus, InstanceStatusProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "InstanceState",
    "InstanceStatus",
    "InstanceStatusProvider",
    "SystemdError",
    "SystemdProvider",
]
