"""Tests for the on-disk instance store."""
from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from instctl.errors import InstanceNotFoundError
from instctl.providers.instance_status_provider import InstanceState, InstanceStatus
from instctl.store import InstanceStore, StoreError, validate_instance_name


class StaticStatus:
    """Status provider returning a fixed state."""

    def __init__(self, state: InstanceState = InstanceState.STOPPED) -> None:
        """Record the state to report."""
        self.state = state

    def status(self, name: str) -> InstanceStatus:
        """Return the configured state."""
        return InstanceStatus(state=self.state, detail="static")


def _store(tmp_path: Path, state: InstanceState = InstanceState.STOPPED) -> InstanceStore:
    return InstanceStore(tmp_path / "instances", StaticStatus(state))  # type: ignore[arg-type]


def _add(store: InstanceStore, name: str, content: bytes = b"cpus: 2\n") -> Path:
    path = store.instance_dir(name) / "instance.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def test_list_names_skips_reserved_and_incomplete(tmp_path: Path) -> None:
    """Only directories with a document and a valid name are instances."""
    store = _store(tmp_path)
    _add(store, "beta")
    _add(store, "alpha")
    (store.root / "_logs").mkdir()
    (store.root / "_logs" / "instance.yaml").write_text("")
    (store.root / "empty").mkdir()

    assert store.list_names() == ["alpha", "beta"]


def test_list_names_without_root(tmp_path: Path) -> None:
    """A missing root means an empty store."""
    assert _store(tmp_path).list_names() == []


def test_inspect_returns_status(tmp_path: Path) -> None:
    """``inspect`` combines location and status."""
    store = _store(tmp_path, InstanceState.RUNNING)
    path = _add(store, "alpha")

    instance = store.inspect("alpha")

    assert instance.name == "alpha"
    assert instance.config_path == path
    assert instance.status is InstanceState.RUNNING
    assert instance.status_detail == "static"
    assert store.exists("alpha") is True


def test_inspect_missing_instance(tmp_path: Path) -> None:
    """Missing documents raise :class:`InstanceNotFoundError`."""
    store = _store(tmp_path)
    (store.root / "half").mkdir(parents=True)

    with pytest.raises(InstanceNotFoundError):
        store.inspect("half")


@pytest.mark.parametrize("name", ["", "  ", "../etc", "-dash", "a/b"])
def test_invalid_names_are_rejected(name: str) -> None:
    """Names must be simple path components."""
    with pytest.raises(StoreError):
        validate_instance_name(name)


def test_write_document_replaces_atomically(tmp_path: Path) -> None:
    """Writes land in place with no temp files left behind."""
    store = _store(tmp_path)
    path = _add(store, "alpha")

    store.write_document(path, b"cpus: 8\n")

    assert store.read_document(path) == b"cpus: 8\n"
    assert sorted(p.name for p in path.parent.iterdir()) == ["instance.yaml"]
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o644


def test_write_document_failure_cleans_up(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Failed replacements raise :class:`StoreError` and keep the original."""
    store = _store(tmp_path)
    path = _add(store, "alpha")

    def fail_replace(src: object, dst: object) -> None:
        raise OSError("rename failed")

    monkeypatch.setattr(os, "replace", fail_replace)

    with pytest.raises(StoreError, match="rename failed"):
        store.write_document(path, b"cpus: 8\n")

    assert path.read_bytes() == b"cpus: 2\n"
    assert sorted(p.name for p in path.parent.iterdir()) == ["instance.yaml"]


def test_read_document_failure(tmp_path: Path) -> None:
    """Unreadable documents raise :class:`StoreError`."""
    store = _store(tmp_path)

    with pytest.raises(StoreError, match="Failed to read"):
        store.read_document(tmp_path / "nope.yaml")
