"""Configuration loader for instctl.

Sources are layered, later ones winning:

1. built-in defaults (:data:`DEFAULTS`);
2. the YAML file ``~/.config/instctl/config.yml`` (``--config-file`` or
   ``INSTCTL_CONFIG_FILE`` select another one);
3. ``INSTCTL_*`` environment variables, ``__`` separating nested keys::

       export INSTCTL_START__TIMEOUT=120
       export INSTCTL_NETWORKS__LAN__MODE=bridged

4. programmatic overrides.

Environment values go through ``yaml.safe_load`` so ``false`` and ``30`` arrive
as a bool and an int. Each section is checked for unknown keys while it is
built into its frozen dataclass.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

ENV_PREFIX = "INSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
# Read by other components, never merged into the config tree.
RESERVED_ENV_KEYS = frozenset({CONFIG_ENV_VAR, f"{ENV_PREFIX}EDITOR"})

NETWORK_MODES = frozenset({"user", "shared", "bridged", "host"})
DAEMON_NETWORK_MODES = frozenset({"shared", "bridged"})


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or is invalid."""


@dataclass(frozen=True)
class NetworkConfig:
    """A named network instances may attach to."""

    name: str
    mode: str = "user"
    interface: str | None = None

    @property
    def needs_daemon(self) -> bool:
        """Return ``True`` when a host daemon serves the network."""
        return self.mode in DAEMON_NETWORK_MODES

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"mode": self.mode, "interface": self.interface}


@dataclass(frozen=True)
class SystemdConfig:
    """How instance and network units are addressed."""

    unit_prefix: str = "instctl"
    systemctl_bin: str = "systemctl"
    user: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_prefix": self.unit_prefix,
            "systemctl_bin": self.systemctl_bin,
            "user": self.user,
        }


@dataclass(frozen=True)
class StartConfig:
    """Timing used while waiting for units to come up."""

    timeout: float = 600.0
    poll_interval: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "poll_interval": self.poll_interval}


@dataclass(frozen=True)
class AppConfig:
    """Resolved instctl configuration."""

    config_file: Path
    instance_root: Path
    logs_dir: Path
    default_instance: str
    editor: str | None
    systemd: SystemdConfig
    start: StartConfig
    networks: Mapping[str, NetworkConfig] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly view, used by ``instctl config show``."""
        return {
            "config_file": str(self.config_file),
            "instance_root": str(self.instance_root),
            "logs_dir": str(self.logs_dir),
            "default_instance": self.default_instance,
            "editor": self.editor,
            "systemd": self.systemd.to_dict(),
            "start": self.start.to_dict(),
            "networks": {name: network.to_dict() for name, network in self.networks.items()},
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/instctl/config.yml",
    "instance_root": "~/.instctl",
    "logs_dir": None,  # <instance_root>/_logs
    "default_instance": "default",
    "editor": None,
    "systemd": SystemdConfig().to_dict(),
    "start": StartConfig().to_dict(),
    "networks": {
        "user-v2": {"mode": "user", "interface": None},
        "shared": {"mode": "shared", "interface": None},
    },
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Merge every configuration source into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    if config_file:
        path = Path(config_file).expanduser()
    else:
        path = Path(environ.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"])).expanduser()

    tree = copy.deepcopy(DEFAULTS)
    for layer in (_read_config_file(path), _env_layer(environ), dict(overrides or {})):
        _merge_into(tree, layer)
    tree["config_file"] = str(path)
    return _build(tree)


def _read_config_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse config file {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _section(loaded, str(path))


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX) or key in RESERVED_ENV_KEYS:
            continue
        segments = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not segments:
            continue
        node: MutableMapping[str, object] = layer
        for depth, segment in enumerate(segments[:-1]):
            child = node.setdefault(segment, {})
            if not isinstance(child, MutableMapping):
                dotted = ".".join(segments[: depth + 1])
                raise ConfigError(
                    f"Environment variable {key} conflicts with the scalar value at {dotted}."
                )
            node = child
        if isinstance(node.get(segments[-1]), MutableMapping):
            raise ConfigError(
                f"Environment variable {key} conflicts with nested values at {'.'.join(segments)}."
            )
        node[segments[-1]] = _env_value(raw)
    return layer


def _env_value(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _merge_into(target: MutableMapping[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _merge_into(current, value)
        else:
            target[key] = copy.deepcopy(value)


def _build(tree: Mapping[str, object]) -> AppConfig:
    _reject_unknown(tree, DEFAULTS.keys(), "Unknown configuration keys")

    default_instance = tree.get("default_instance")
    if not isinstance(default_instance, str) or not default_instance.strip():
        raise ConfigError("default_instance must be a non-empty string.")
    editor = tree.get("editor")
    if editor is not None and not isinstance(editor, str):
        raise ConfigError("editor must be a string or null.")

    instance_root = _path(tree.get("instance_root"), "instance_root")
    logs_dir = tree.get("logs_dir")
    return AppConfig(
        config_file=_path(tree.get("config_file"), "config_file"),
        instance_root=instance_root,
        logs_dir=_path(logs_dir, "logs_dir") if logs_dir else instance_root / "_logs",
        default_instance=default_instance.strip(),
        editor=editor or None,
        systemd=_build_systemd(_section(tree.get("systemd"), "systemd")),
        start=_build_start(_section(tree.get("start"), "start")),
        networks=_build_networks(_section(tree.get("networks"), "networks")),
    )


def _build_systemd(section: Mapping[str, object]) -> SystemdConfig:
    _reject_unknown(section, SystemdConfig().to_dict().keys(), "Unknown systemd configuration keys")
    user = section.get("user", True)
    if not isinstance(user, bool):
        raise ConfigError(f"Expected systemd.user to be a boolean. Got {user!r}.")
    return SystemdConfig(
        unit_prefix=str(section.get("unit_prefix") or "instctl"),
        systemctl_bin=str(section.get("systemctl_bin") or "systemctl"),
        user=user,
    )


def _build_start(section: Mapping[str, object]) -> StartConfig:
    _reject_unknown(section, StartConfig().to_dict().keys(), "Unknown start configuration keys")
    return StartConfig(
        timeout=_positive(section.get("timeout", 600.0), "start.timeout"),
        poll_interval=_positive(section.get("poll_interval", 1.0), "start.poll_interval"),
    )


def _build_networks(section: Mapping[str, object]) -> dict[str, NetworkConfig]:
    networks: dict[str, NetworkConfig] = {}
    for name, value in section.items():
        entry = _section(value, f"networks.{name}")
        _reject_unknown(entry, ("mode", "interface"), f"Unknown keys for networks.{name}")
        mode = str(entry.get("mode") or "user")
        if mode not in NETWORK_MODES:
            allowed = ", ".join(sorted(NETWORK_MODES))
            raise ConfigError(
                f"Unsupported mode '{mode}' for network '{name}'. Allowed: {allowed}."
            )
        interface = entry.get("interface")
        if mode == "bridged" and not interface:
            raise ConfigError(f"Bridged network '{name}' requires an interface.")
        networks[name] = NetworkConfig(
            name=name,
            mode=mode,
            interface=str(interface) if interface else None,
        )
    return networks


def _reject_unknown(section: Mapping[str, object], allowed: Iterable[str], message: str) -> None:
    unknown = sorted(set(section) - set(allowed))
    if unknown:
        raise ConfigError(f"{message}: {', '.join(unknown)}.")


def _section(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label} must be a mapping, not {type(value).__name__}.")
    for key in value:
        if not isinstance(key, str):
            raise ConfigError(f"Keys in {label} must be strings. Got {key!r}.")
    return dict(value)


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _positive(value: object, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"{label} is not a number: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


__all__ = [
    "AppConfig",
    "ConfigError",
    "NetworkConfig",
    "StartConfig",
    "SystemdConfig",
    "load_config",
]
