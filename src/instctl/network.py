"""Reconcile network daemons with the instances that need them.

Networks are declared in the application config. ``user`` and ``host``
networks need nothing on the host; ``shared`` and ``bridged`` networks are
served by a per-network systemd unit. Reconciling for an instance about to
start makes sure every daemon used by that instance or any running instance
is active, and stops daemons nobody uses any more.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from .cancellation import CancelToken
from .config import NetworkConfig
from .instance_config import InstanceConfigError, load_instance_config
from .providers.instance_status_provider import InstanceState
from .providers.systemd import SystemdError, SystemdProvider
from .store import INSTANCE_CONFIG_FILENAME, InstanceStore, StoreError

LOGGER = logging.getLogger(__name__)


class NetworkError(RuntimeError):
    """Raised when network prerequisites cannot be satisfied."""


@dataclass(slots=True)
class NetworkPlan:
    """Daemons to start and stop, keyed by network name."""

    start: list[str]
    stop: list[str]


@dataclass
class NetworkReconciler:
    """Start and stop network daemons to match instance usage."""

    store: InstanceStore
    systemd: SystemdProvider
    networks: Mapping[str, NetworkConfig]
    timeout: float = 60.0
    poll_interval: float = 1.0

    def networks_for(self, name: str) -> list[str]:
        """Return the networks instance *name* attaches to."""
        path = self.store.instance_dir(name) / INSTANCE_CONFIG_FILENAME
        try:
            config = load_instance_config(self.store.read_document(path), path)
        except (InstanceConfigError, StoreError) as exc:
            raise NetworkError(f"cannot determine networks of instance '{name}': {exc}") from exc
        unknown = [network for network in config.network_names if network not in self.networks]
        if unknown:
            raise NetworkError(
                f"instance '{name}' uses undefined networks: {', '.join(sorted(unknown))}"
            )
        return config.network_names

    def plan(self, name: str) -> NetworkPlan:
        """Return which daemons must start and stop for *name* to run."""
        used = set(self.networks_for(name))
        for other in self._running_instances(exclude=name):
            try:
                used.update(self.networks_for(other))
            except NetworkError as exc:
                LOGGER.warning("Ignoring networks of running instance '%s': %s", other, exc)

        start: list[str] = []
        stop: list[str] = []
        for network_name, network in sorted(self.networks.items()):
            if not network.needs_daemon:
                continue
            unit = self.systemd.network_unit_name(network_name)
            active = self.systemd.is_active(unit)
            if network_name in used and not active:
                start.append(network_name)
            elif network_name not in used and active:
                stop.append(network_name)
        return NetworkPlan(start=start, stop=stop)

    def reconcile(self, cancel: CancelToken, name: str) -> NetworkPlan:
        """Bring network daemons in line with what *name* and running instances use."""
        cancel.raise_if_cancelled("network reconciliation")
        try:
            plan = self.plan(name)
            for network_name in plan.stop:
                cancel.raise_if_cancelled("network reconciliation")
                unit = self.systemd.network_unit_name(network_name)
                LOGGER.info("Stopping unused network daemon %s", unit)
                self.systemd.stop(unit)
            for network_name in plan.start:
                cancel.raise_if_cancelled("network reconciliation")
                unit = self.systemd.network_unit_name(network_name)
                LOGGER.info("Starting network daemon %s", unit)
                self.systemd.start(unit)
                self.systemd.wait_until_active(
                    unit,
                    cancel=cancel,
                    timeout=self.timeout,
                    poll_interval=self.poll_interval,
                )
        except SystemdError as exc:
            raise NetworkError(str(exc)) from exc
        return plan

    def _running_instances(self, *, exclude: str) -> Iterable[str]:
        for other in self.store.list_names():
            if other == exclude:
                continue
            if self.store.status_provider.status(other).state is InstanceState.RUNNING:
                yield other


__all__ = ["NetworkError", "NetworkPlan", "NetworkReconciler"]
