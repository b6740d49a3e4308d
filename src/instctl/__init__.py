"""instctl: manage local compute instances and their configuration documents.

Only version metadata lives here; import the submodules for functionality.
"""
from __future__ import annotations

from importlib import metadata

__all__ = ["__version__", "get_version"]

# NOTE: Keep in sync with ``pyproject.toml``; Hatch builds from that value.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the installed distribution version, or ``__version__`` from a checkout."""
    try:
        return metadata.version("instctl")
    except metadata.PackageNotFoundError:
        return __version__
