"""Tests for starting instances and the restart coordinator."""
from __future__ import annotations

from pathlib import Path

import pytest

from instctl.cancellation import CancelToken
from instctl.providers.instance_status_provider import InstanceState, InstanceStatus
from instctl.providers.systemd import SystemdError
from instctl.start import InstanceStarter, RestartCoordinator, StartError
from instctl.store import Instance, InstanceStore

VALID_DOCUMENT = (
    "arch: x86_64\n"
    "images:\n"
    "- location: https://example.invalid/image-amd64.img\n"
)


class Stopped:
    """Status provider reporting every instance as stopped."""

    def status(self, name: str) -> InstanceStatus:
        """Return stopped."""
        return InstanceStatus(state=InstanceState.STOPPED)


class FakeSystemd:
    """Record unit starts; optionally fail them."""

    def __init__(self, error: SystemdError | None = None) -> None:
        """Remember the error to raise from ``start``."""
        self.error = error
        self.calls: list[tuple[str, str, float]] = []

    def unit_name(self, instance: str) -> str:
        """Return the unit for *instance*."""
        return f"instctl-{instance}.service"

    def start(self, unit: str) -> None:
        """Start *unit* or fail."""
        if self.error is not None:
            raise self.error
        self.calls.append(("start", unit, 0.0))

    def wait_until_active(
        self,
        unit: str,
        *,
        cancel: CancelToken,
        timeout: float,
        poll_interval: float = 1.0,
    ) -> None:
        """Record the wait and its timeout."""
        self.calls.append(("wait", unit, timeout))


def _instance(
    tmp_path: Path,
    document: str,
    state: InstanceState,
) -> tuple[InstanceStore, Instance]:
    root = tmp_path / "instances"
    (root / "alpha").mkdir(parents=True)
    (root / "alpha" / "instance.yaml").write_text(document)
    store = InstanceStore(root, Stopped())  # type: ignore[arg-type]
    return store, Instance(name="alpha", dir=root / "alpha", status=state)


def test_start_waits_for_unit(tmp_path: Path) -> None:
    """Starting validates the document, starts the unit and waits for it."""
    store, instance = _instance(tmp_path, VALID_DOCUMENT, InstanceState.STOPPED)
    systemd = FakeSystemd()

    InstanceStarter(store, systemd, timeout=42).start(CancelToken(), instance)  # type: ignore[arg-type]

    assert systemd.calls == [
        ("start", "instctl-alpha.service", 0.0),
        ("wait", "instctl-alpha.service", 42),
    ]


def test_start_is_noop_when_running(tmp_path: Path) -> None:
    """Running instances are left alone."""
    store, instance = _instance(tmp_path, VALID_DOCUMENT, InstanceState.RUNNING)
    systemd = FakeSystemd()

    InstanceStarter(store, systemd).start(CancelToken(), instance)  # type: ignore[arg-type]

    assert systemd.calls == []


def test_start_refuses_invalid_document(tmp_path: Path) -> None:
    """Invalid stored documents are never started."""
    store, instance = _instance(tmp_path, "cpus: 0\n", InstanceState.STOPPED)
    systemd = FakeSystemd()

    with pytest.raises(StartError, match="refusing to start instance 'alpha'"):
        InstanceStarter(store, systemd).start(CancelToken(), instance)  # type: ignore[arg-type]

    assert systemd.calls == []


def test_start_wraps_systemd_errors(tmp_path: Path) -> None:
    """systemd failures surface as :class:`StartError`."""
    store, instance = _instance(tmp_path, VALID_DOCUMENT, InstanceState.STOPPED)
    systemd = FakeSystemd(error=SystemdError("unit masked"))

    with pytest.raises(StartError, match="unit masked"):
        InstanceStarter(store, systemd).start(CancelToken(), instance)  # type: ignore[arg-type]


class RecordingReconciler:
    """Record reconciliation requests."""

    def __init__(self, calls: list[str]) -> None:
        """Share the call log."""
        self.calls = calls

    def reconcile(self, cancel: CancelToken, name: str) -> None:
        """Record the call."""
        self.calls.append(f"reconcile:{name}")


class RecordingStarter:
    """Record start requests."""

    def __init__(self, calls: list[str]) -> None:
        """Share the call log."""
        self.calls = calls

    def start(self, cancel: CancelToken, instance: Instance) -> None:
        """Record the call."""
        self.calls.append(f"start:{instance.name}")


def test_restart_coordinator_delegates(tmp_path: Path) -> None:
    """The coordinator forwards each phase to its collaborator."""
    calls: list[str] = []
    coordinator = RestartCoordinator(
        networks=RecordingReconciler(calls),  # type: ignore[arg-type]
        starter=RecordingStarter(calls),  # type: ignore[arg-type]
    )
    instance = Instance(name="alpha", dir=tmp_path, status=InstanceState.STOPPED)
    cancel = CancelToken()

    coordinator.reconcile_network(cancel, "alpha")
    coordinator.start(cancel, instance)

    assert calls == ["reconcile:alpha", "start:alpha"]
