"""On-disk store of instances and their configuration documents.

Every instance owns a directory below the instance root::

    ~/.instctl/<name>/instance.yaml

Directories whose names start with ``_`` (``_logs``, ``_config`` ...) are
reserved for instctl itself and never treated as instances. Documents are
handled as raw bytes; parsing belongs to :mod:`instctl.instance_config`.
"""
from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .errors import InstanceNotFoundError
from .exit_codes import ExitCode
from .providers.instance_status_provider import (
    InstanceState,
    InstanceStatusProvider,
)

INSTANCE_CONFIG_FILENAME = "instance.yaml"

_NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


class StoreError(RuntimeError):
    """Raised when the instance store cannot be read or written."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True)
class Instance:
    """Snapshot of an instance taken by :meth:`InstanceStore.inspect`."""

    name: str
    dir: Path
    status: InstanceState
    status_detail: str = ""

    @property
    def config_path(self) -> Path:
        """Return the path of the instance configuration document."""
        return self.dir / INSTANCE_CONFIG_FILENAME


def validate_instance_name(name: str) -> str:
    """Validate and normalise an instance name."""
    normalised = name.strip()
    if not normalised:
        raise StoreError("Instance name must be a non-empty string.")
    if not _NAME_PATTERN.fullmatch(normalised):
        raise StoreError(
            f"Invalid instance name {normalised!r}: must match [A-Za-z0-9][A-Za-z0-9._-]*."
        )
    return normalised


@dataclass(frozen=True)
class InstanceStore:
    """Resolve instances under *root* and read/write their documents."""

    root: Path
    status_provider: InstanceStatusProvider

    def instance_dir(self, name: str) -> Path:
        """Return the directory that holds instance *name*."""
        return self.root.expanduser() / validate_instance_name(name)

    def exists(self, name: str) -> bool:
        """Return ``True`` when instance *name* has a configuration document."""
        return (self.instance_dir(name) / INSTANCE_CONFIG_FILENAME).is_file()

    def list_names(self) -> list[str]:
        """Return the sorted names of every instance in the store."""
        root = self.root.expanduser()
        if not root.is_dir():
            return []
        try:
            children = list(root.iterdir())
        except OSError as exc:
            raise StoreError(f"Failed to list instances in {root}: {exc}") from exc
        return sorted(
            child.name
            for child in children
            if not child.name.startswith("_")
            and _NAME_PATTERN.fullmatch(child.name)
            and (child / INSTANCE_CONFIG_FILENAME).is_file()
        )

    def inspect(self, name: str) -> Instance:
        """Return the :class:`Instance` called *name*.

        Raises :class:`~instctl.errors.InstanceNotFoundError` when the instance
        has no directory or document.
        """
        instance_dir = self.instance_dir(name)
        if not (instance_dir / INSTANCE_CONFIG_FILENAME).is_file():
            raise InstanceNotFoundError(name)
        status = self.status_provider.status(instance_dir.name)
        return Instance(
            name=instance_dir.name,
            dir=instance_dir,
            status=status.state,
            status_detail=status.detail,
        )

    def read_document(self, path: Path) -> bytes:
        """Return the raw bytes stored at *path*."""
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StoreError(f"Failed to read {path}: {exc}") from exc

    def write_document(self, path: Path, data: bytes) -> None:
        """Atomically replace *path* with *data*."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        except OSError as exc:
            raise StoreError(f"Failed to write {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(data)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreError(f"Failed to write {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = [
    "INSTANCE_CONFIG_FILENAME",
    "Instance",
    "InstanceStore",
    "StoreError",
    "validate_instance_name",
]
