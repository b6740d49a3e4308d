"""Typed view of ``instance.yaml`` with defaults and validation.

:func:`load_instance_config` turns raw document bytes into an
:class:`InstanceConfig`, filling defaults for omitted keys. Only the shape of
the document is checked while loading. :func:`validate_instance_config`
checks semantics and reports every problem it finds in one
:class:`InstanceConfigError`.

Example document::

    vm_type: qemu
    cpus: 2
    memory: 4GiB
    images:
      - location: https://example.invalid/jammy-server-cloudimg-amd64.img
        arch: x86_64
    mounts:
      - location: "~"
    networks:
      - network: shared
    port_forwards:
      - guest_port: 80
        host_port: 8080
"""
from __future__ import annotations

import logging
import math
import platform
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import yaml

LOGGER = logging.getLogger(__name__)

VM_TYPES = frozenset({"qemu", "vz", "wsl2"})
ARCHES = frozenset({"x86_64", "aarch64", "armv7l", "riscv64"})
PROVISION_MODES = frozenset({"system", "user", "boot", "dependency"})
PORT_PROTOCOLS = frozenset({"tcp", "udp"})

TOP_LEVEL_KEYS = frozenset(
    {
        "vm_type",
        "arch",
        "cpus",
        "memory",
        "disk",
        "images",
        "mounts",
        "networks",
        "port_forwards",
        "env",
        "provision",
        "ssh",
    }
)

DEFAULT_CPUS = 4
DEFAULT_MEMORY = "4GiB"
DEFAULT_DISK = "100GiB"

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)(i?b?)\s*$", re.IGNORECASE)
_SIZE_FACTORS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}
_ENV_KEY_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_DIGEST_PATTERN = re.compile(r"[a-z0-9]+:[0-9a-f]+")


class InstanceConfigError(ValueError):
    """Raised when an instance document cannot be parsed or is invalid."""

    def __init__(self, message: str, problems: Sequence[str] = ()) -> None:
        """Store the individual *problems* next to the summary message."""
        super().__init__(message)
        self.problems = tuple(problems)


@dataclass(frozen=True)
class ImageSpec:
    """A disk image the instance can boot from."""

    location: str
    arch: str
    digest: str | None = None


@dataclass(frozen=True)
class MountSpec:
    """A host directory shared with the instance."""

    location: str
    mount_point: str | None = None
    writable: bool = False


@dataclass(frozen=True)
class NetworkAttachment:
    """Attachment of the instance to a named network."""

    network: str
    interface: str | None = None


@dataclass(frozen=True)
class PortForward:
    """Forwarding of a guest port to the host."""

    guest_port: int
    host_port: int
    proto: str = "tcp"


@dataclass(frozen=True)
class ProvisionStep:
    """Script executed while the instance boots."""

    mode: str
    script: str


@dataclass(frozen=True)
class SSHConfig:
    """SSH access settings."""

    local_port: int = 0
    load_dot_ssh_pubkey: bool = True


@dataclass(frozen=True)
class InstanceConfig:
    """Parsed instance configuration."""

    vm_type: str
    arch: str
    cpus: int
    memory: str
    disk: str
    images: tuple[ImageSpec, ...] = ()
    mounts: tuple[MountSpec, ...] = ()
    networks: tuple[NetworkAttachment, ...] = ()
    port_forwards: tuple[PortForward, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    provision: tuple[ProvisionStep, ...] = ()
    ssh: SSHConfig = SSHConfig()
    source: Path | None = None
    unknown_keys: tuple[str, ...] = ()

    @property
    def network_names(self) -> list[str]:
        """Return the names of the networks the instance attaches to."""
        return [attachment.network for attachment in self.networks]


def host_arch() -> str:
    """Return the host architecture using instance-config spelling."""
    machine = platform.machine().lower()
    aliases = {"amd64": "x86_64", "x64": "x86_64", "arm64": "aarch64", "armv7": "armv7l"}
    return aliases.get(machine, machine)


def parse_size(value: str | int) -> int:
    """Return *value* (``4GiB``, ``512M``, ``1024``) as a byte count."""
    if isinstance(value, bool):
        raise ValueError(f"invalid size {value!r}")
    if isinstance(value, int):
        return value
    match = _SIZE_PATTERN.match(value)
    if match is None:
        raise ValueError(f"invalid size {value!r}")
    number, prefix, _suffix = match.groups()
    size = float(number) * _SIZE_FACTORS[prefix.lower()]
    if not math.isfinite(size):
        raise ValueError(f"invalid size {value!r}")
    return int(size)


def load_instance_config(data: bytes, source: Path | None = None) -> InstanceConfig:
    """Parse *data* into an :class:`InstanceConfig` with defaults applied."""
    label = str(source) if source is not None else "<document>"
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise InstanceConfigError(f"failed to parse {label}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise InstanceConfigError(f"{label} must contain a mapping at the top level")

    unknown = tuple(sorted(str(key) for key in raw if key not in TOP_LEVEL_KEYS))
    arch = _scalar(raw.get("arch"), "arch", default=host_arch())

    images = tuple(
        ImageSpec(
            location=_scalar(entry.get("location"), f"images[{index}].location", default=""),
            arch=_scalar(entry.get("arch"), f"images[{index}].arch", default=arch),
            digest=_optional(entry.get("digest"), f"images[{index}].digest"),
        )
        for index, entry in enumerate(_mappings(raw.get("images"), "images"))
    )
    mounts = tuple(
        MountSpec(
            location=_scalar(entry.get("location"), f"mounts[{index}].location", default=""),
            mount_point=_optional(entry.get("mount_point"), f"mounts[{index}].mount_point"),
            writable=bool(entry.get("writable", False)),
        )
        for index, entry in enumerate(_mappings(raw.get("mounts"), "mounts"))
    )
    networks = tuple(
        NetworkAttachment(
            network=_scalar(entry.get("network"), f"networks[{index}].network", default=""),
            interface=_optional(entry.get("interface"), f"networks[{index}].interface"),
        )
        for index, entry in enumerate(_mappings(raw.get("networks"), "networks"))
    )
    port_forwards = tuple(
        PortForward(
            guest_port=_integer(entry.get("guest_port"), f"port_forwards[{index}].guest_port"),
            host_port=_integer(
                entry.get("host_port", entry.get("guest_port")),
                f"port_forwards[{index}].host_port",
            ),
            proto=_scalar(entry.get("proto"), f"port_forwards[{index}].proto", default="tcp"),
        )
        for index, entry in enumerate(_mappings(raw.get("port_forwards"), "port_forwards"))
    )
    provision = tuple(
        ProvisionStep(
            mode=_scalar(entry.get("mode"), f"provision[{index}].mode", default="system"),
            script=_scalar(entry.get("script"), f"provision[{index}].script", default=""),
        )
        for index, entry in enumerate(_mappings(raw.get("provision"), "provision"))
    )

    env_raw = raw.get("env")
    if env_raw is None:
        env: dict[str, str] = {}
    elif isinstance(env_raw, Mapping):
        env = {str(key): "" if value is None else str(value) for key, value in env_raw.items()}
    else:
        raise InstanceConfigError(f"{label}: env must be a mapping")

    ssh_raw = raw.get("ssh")
    if ssh_raw is None:
        ssh = SSHConfig()
    elif isinstance(ssh_raw, Mapping):
        ssh = SSHConfig(
            local_port=_integer(ssh_raw.get("local_port", 0), "ssh.local_port"),
            load_dot_ssh_pubkey=bool(ssh_raw.get("load_dot_ssh_pubkey", True)),
        )
    else:
        raise InstanceConfigError(f"{label}: ssh must be a mapping")

    memory = raw.get("memory", DEFAULT_MEMORY)
    disk = raw.get("disk", DEFAULT_DISK)
    return InstanceConfig(
        vm_type=_scalar(raw.get("vm_type"), "vm_type", default="qemu"),
        arch=arch,
        cpus=_integer(raw.get("cpus", DEFAULT_CPUS), "cpus"),
        memory=str(memory),
        disk=str(disk),
        images=images,
        mounts=mounts,
        networks=networks,
        port_forwards=port_forwards,
        env=env,
        provision=provision,
        ssh=ssh,
        source=source,
        unknown_keys=unknown,
    )


def validate_instance_config(config: InstanceConfig, strict: bool = True) -> None:
    """Raise :class:`InstanceConfigError` listing every problem in *config*.

    With *strict* set, unknown top-level keys are errors; otherwise they are
    only logged.
    """
    problems: list[str] = []

    if config.unknown_keys:
        message = f"unknown keys: {', '.join(config.unknown_keys)}"
        if strict:
            problems.append(message)
        else:
            LOGGER.warning("%s: %s", config.source or "<document>", message)

    if config.vm_type not in VM_TYPES:
        problems.append(f"vm_type: unsupported value {config.vm_type!r}")
    if config.arch not in ARCHES:
        problems.append(f"arch: unsupported value {config.arch!r}")
    if config.cpus < 1:
        problems.append(f"cpus: must be at least 1, got {config.cpus}")
    for key in ("memory", "disk"):
        value = getattr(config, key)
        try:
            if parse_size(value) <= 0:
                problems.append(f"{key}: must be greater than zero")
        except ValueError as exc:
            problems.append(f"{key}: {exc}")

    _validate_images(config, problems)
    _validate_mounts(config, problems)
    _validate_networks(config, problems)
    _validate_port_forwards(config, problems)

    for key in config.env:
        if not _ENV_KEY_PATTERN.fullmatch(key):
            problems.append(f"env: invalid variable name {key!r}")
    for index, step in enumerate(config.provision):
        if step.mode not in PROVISION_MODES:
            problems.append(f"provision[{index}].mode: unsupported value {step.mode!r}")
        if not step.script.strip():
            problems.append(f"provision[{index}].script: must not be empty")
    if not 0 <= config.ssh.local_port <= 65535:
        problems.append(f"ssh.local_port: {config.ssh.local_port} is out of range")

    if problems:
        label = config.source or "<document>"
        raise InstanceConfigError(
            f"{label} is invalid: " + "; ".join(problems),
            problems,
        )


class InstanceConfigSchema:
    """Parser and validator pair used by the edit session."""

    def parse(self, data: bytes, source: Path) -> InstanceConfig:
        """Parse *data* loaded from *source*."""
        return load_instance_config(data, source)

    def validate(self, config: InstanceConfig, strict: bool = True) -> None:
        """Validate *config*."""
        validate_instance_config(config, strict=strict)


def _validate_images(config: InstanceConfig, problems: list[str]) -> None:
    if not config.images:
        problems.append("images: at least one image is required")
        return
    for index, image in enumerate(config.images):
        if not image.location.strip():
            problems.append(f"images[{index}].location: must not be empty")
        if image.arch not in ARCHES:
            problems.append(f"images[{index}].arch: unsupported value {image.arch!r}")
        if image.digest is not None and not _DIGEST_PATTERN.fullmatch(image.digest):
            problems.append(f"images[{index}].digest: expected '<algorithm>:<hex>'")
    if not any(image.arch == config.arch for image in config.images):
        problems.append(f"images: no image for arch {config.arch!r}")


def _validate_mounts(config: InstanceConfig, problems: list[str]) -> None:
    seen: set[str] = set()
    for index, mount in enumerate(config.mounts):
        location = mount.location
        if not (location.startswith("/") or location.startswith("~")):
            problems.append(f"mounts[{index}].location: must be absolute or start with '~'")
        if location in seen:
            problems.append(f"mounts[{index}].location: duplicate mount {location!r}")
        seen.add(location)
        if mount.mount_point is not None and not mount.mount_point.startswith("/"):
            problems.append(f"mounts[{index}].mount_point: must be an absolute path")


def _validate_networks(config: InstanceConfig, problems: list[str]) -> None:
    seen: set[str] = set()
    for index, attachment in enumerate(config.networks):
        if not attachment.network.strip():
            problems.append(f"networks[{index}].network: must not be empty")
            continue
        if attachment.network in seen:
            problems.append(f"networks[{index}].network: duplicate network {attachment.network!r}")
        seen.add(attachment.network)


def _validate_port_forwards(config: InstanceConfig, problems: list[str]) -> None:
    for index, forward in enumerate(config.port_forwards):
        prefix = f"port_forwards[{index}]"
        if not 1 <= forward.guest_port <= 65535:
            problems.append(f"{prefix}.guest_port: {forward.guest_port} is out of range")
        if not 0 <= forward.host_port <= 65535:
            problems.append(f"{prefix}.host_port: {forward.host_port} is out of range")
        if forward.proto not in PORT_PROTOCOLS:
            problems.append(f"{prefix}.proto: unsupported value {forward.proto!r}")


def _mappings(value: object, label: str) -> list[Mapping[str, object]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise InstanceConfigError(f"{label} must be a list")
    for index, entry in enumerate(value):
        if not isinstance(entry, Mapping):
            raise InstanceConfigError(f"{label}[{index}] must be a mapping")
    return value


def _scalar(value: object, label: str, *, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, (Mapping, list)):
        raise InstanceConfigError(f"{label} must be a scalar value")
    return str(value)


def _optional(value: object, label: str) -> str | None:
    if value is None:
        return None
    return _scalar(value, label, default="")


def _integer(value: object, label: str) -> int:
    if isinstance(value, bool) or value is None:
        raise InstanceConfigError(f"{label} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise InstanceConfigError(f"{label} must be an integer, got {value!r}") from exc
    raise InstanceConfigError(f"{label} must be an integer")


__all__ = [
    "ImageSpec",
    "InstanceConfig",
    "InstanceConfigError",
    "InstanceConfigSchema",
    "MountSpec",
    "NetworkAttachment",
    "PortForward",
    "ProvisionStep",
    "SSHConfig",
    "host_arch",
    "load_instance_config",
    "parse_size",
    "validate_instance_config",
]
