"""Start instances and coordinate the restart after an edit."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .cancellation import CancelToken
from .instance_config import (
    InstanceConfigError,
    load_instance_config,
    validate_instance_config,
)
from .network import NetworkReconciler
from .providers.instance_status_provider import InstanceState
from .providers.systemd import SystemdError, SystemdProvider
from .store import Instance, InstanceStore, StoreError

LOGGER = logging.getLogger(__name__)


class StartError(RuntimeError):
    """Raised when an instance cannot be started."""


@dataclass
class InstanceStarter:
    """Start the unit backing an instance and wait until it is active."""

    store: InstanceStore
    systemd: SystemdProvider
    timeout: float = 600.0
    poll_interval: float = 1.0

    def start(self, cancel: CancelToken, instance: Instance) -> None:
        """Start *instance*; a no-op when it is already running."""
        cancel.raise_if_cancelled(f"start of instance '{instance.name}'")
        if instance.status is InstanceState.RUNNING:
            LOGGER.info("Instance '%s' is already running", instance.name)
            return
        try:
            data = self.store.read_document(instance.config_path)
            validate_instance_config(load_instance_config(data, instance.config_path))
        except (InstanceConfigError, StoreError) as exc:
            raise StartError(f"refusing to start instance '{instance.name}': {exc}") from exc

        unit = self.systemd.unit_name(instance.name)
        LOGGER.info("Starting %s", unit)
        try:
            self.systemd.start(unit)
            self.systemd.wait_until_active(
                unit,
                cancel=cancel,
                timeout=self.timeout,
                poll_interval=self.poll_interval,
            )
        except SystemdError as exc:
            raise StartError(f"failed to start instance '{instance.name}': {exc}") from exc
        LOGGER.info("Instance '%s' is running", instance.name)


@dataclass
class RestartCoordinator:
    """Two-phase restart: reconcile networks, then start the instance."""

    networks: NetworkReconciler
    starter: InstanceStarter

    def reconcile_network(self, cancel: CancelToken, name: str) -> None:
        """Make sure the network daemons *name* depends on are running."""
        self.networks.reconcile(cancel, name)

    def start(self, cancel: CancelToken, instance: Instance) -> None:
        """Start *instance*."""
        self.starter.start(cancel, instance)


__all__ = ["InstanceStarter", "RestartCoordinator", "StartError"]
