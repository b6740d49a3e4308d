"""Tests for network daemon reconciliation."""
from __future__ import annotations

from pathlib import Path

import pytest

from instctl.cancellation import CancelToken
from instctl.config import NetworkConfig
from instctl.errors import OperationCancelledError
from instctl.network import NetworkError, NetworkReconciler
from instctl.providers.instance_status_provider import InstanceState, InstanceStatus
from instctl.providers.systemd import SystemdError
from instctl.store import InstanceStore

NETWORKS = {
    "user-v2": NetworkConfig(name="user-v2", mode="user"),
    "shared": NetworkConfig(name="shared", mode="shared"),
    "lan": NetworkConfig(name="lan", mode="bridged", interface="en0"),
}


class RunningSet:
    """Status provider reporting the named instances as running."""

    def __init__(self, *running: str) -> None:
        """Record which instances are running."""
        self.running = set(running)

    def status(self, name: str) -> InstanceStatus:
        """Return running or stopped."""
        state = InstanceState.RUNNING if name in self.running else InstanceState.STOPPED
        return InstanceStatus(state=state)


class FakeSystemd:
    """In-memory unit manager."""

    def __init__(self, active: set[str] | None = None, fail: str | None = None) -> None:
        """Start with the *active* units; starting *fail* raises."""
        self.active = set(active or ())
        self.fail = fail
        self.calls: list[tuple[str, str]] = []

    def network_unit_name(self, network: str) -> str:
        """Return the daemon unit for *network*."""
        return f"instctl-net-{network}.service"

    def is_active(self, unit: str) -> bool:
        """Return whether *unit* is active."""
        return unit in self.active

    def start(self, unit: str) -> None:
        """Activate *unit*."""
        self.calls.append(("start", unit))
        if unit == self.fail:
            raise SystemdError(f"{unit} failed to start")
        self.active.add(unit)

    def stop(self, unit: str) -> None:
        """Deactivate *unit*."""
        self.calls.append(("stop", unit))
        self.active.discard(unit)

    def wait_until_active(self, unit: str, **_: object) -> None:
        """Record the wait."""
        self.calls.append(("wait", unit))


def _store(tmp_path: Path, documents: dict[str, str], *running: str) -> InstanceStore:
    root = tmp_path / "instances"
    for name, networks in documents.items():
        (root / name).mkdir(parents=True)
        body = "".join(f"- network: {network}\n" for network in networks.split())
        (root / name / "instance.yaml").write_text(f"networks:\n{body}" if body else "cpus: 1\n")
    return InstanceStore(root, RunningSet(*running))  # type: ignore[arg-type]


def _reconciler(store: InstanceStore, systemd: FakeSystemd) -> NetworkReconciler:
    return NetworkReconciler(store=store, systemd=systemd, networks=NETWORKS)  # type: ignore[arg-type]


def test_networks_for_reads_instance_document(tmp_path: Path) -> None:
    """The networks come from the instance document."""
    store = _store(tmp_path, {"alpha": "user-v2 shared"})

    assert _reconciler(store, FakeSystemd()).networks_for("alpha") == ["user-v2", "shared"]


def test_undefined_network_is_an_error(tmp_path: Path) -> None:
    """Networks missing from the configuration are rejected."""
    store = _store(tmp_path, {"alpha": "vpn"})

    with pytest.raises(NetworkError, match="undefined networks: vpn"):
        _reconciler(store, FakeSystemd()).networks_for("alpha")


def test_reconcile_starts_needed_daemons(tmp_path: Path) -> None:
    """Daemon-backed networks used by the target are started and awaited."""
    store = _store(tmp_path, {"alpha": "user-v2 shared"})
    systemd = FakeSystemd()

    plan = _reconciler(store, systemd).reconcile(CancelToken(), "alpha")

    assert plan.start == ["shared"]
    assert plan.stop == []
    assert systemd.calls == [
        ("start", "instctl-net-shared.service"),
        ("wait", "instctl-net-shared.service"),
    ]


def test_reconcile_keeps_daemons_of_running_instances(tmp_path: Path) -> None:
    """Daemons used by other running instances stay up; unused ones stop."""
    store = _store(tmp_path, {"alpha": "user-v2", "beta": "lan", "gamma": "shared"}, "beta")
    systemd = FakeSystemd(active={"instctl-net-lan.service", "instctl-net-shared.service"})

    plan = _reconciler(store, systemd).reconcile(CancelToken(), "alpha")

    assert plan.start == []
    assert plan.stop == ["shared"]
    assert systemd.active == {"instctl-net-lan.service"}


def test_reconcile_ignores_broken_running_instances(tmp_path: Path) -> None:
    """A running instance with an unreadable document does not block reconciliation."""
    store = _store(tmp_path, {"alpha": "shared", "beta": "vpn"}, "beta")
    systemd = FakeSystemd()

    plan = _reconciler(store, systemd).reconcile(CancelToken(), "alpha")

    assert plan.start == ["shared"]


def test_reconcile_wraps_systemd_failures(tmp_path: Path) -> None:
    """systemd errors surface as :class:`NetworkError`."""
    store = _store(tmp_path, {"alpha": "shared"})
    systemd = FakeSystemd(fail="instctl-net-shared.service")

    with pytest.raises(NetworkError, match="failed to start"):
        _reconciler(store, systemd).reconcile(CancelToken(), "alpha")


def test_reconcile_checks_cancellation(tmp_path: Path) -> None:
    """A cancelled token prevents any daemon changes."""
    store = _store(tmp_path, {"alpha": "shared"})
    systemd = FakeSystemd()
    cancel = CancelToken()
    cancel.cancel()

    with pytest.raises(OperationCancelledError):
        _reconciler(store, systemd).reconcile(cancel, "alpha")

    assert systemd.calls == []
