"""Open the operator's editor on an in-memory buffer."""
from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .exit_codes import ExitCode

LOGGER = logging.getLogger(__name__)

EDITOR_ENV_VARS = ("INSTCTL_EDITOR", "VISUAL", "EDITOR")
FALLBACK_EDITOR = "vi"


class EditorError(RuntimeError):
    """Raised when the editor cannot be launched or exits with an error."""

    exit_code = ExitCode.ENVIRONMENT


def generate_warning_header() -> str:
    """Return the comment block explaining how the buffer is processed."""
    return (
        "# NOTE: this header is removed when the editor exits; comments below it\n"
        "# are kept verbatim. The file is validated before it replaces the\n"
        "# instance configuration, and a rejected buffer is saved to the working\n"
        "# directory so the edit can be resumed.\n"
    )


def resolve_editor(configured: str | None = None, env: Mapping[str, str] | None = None) -> str:
    """Return the editor command from config, the environment or the fallback."""
    if configured:
        return configured
    environ = os.environ if env is None else env
    for key in EDITOR_ENV_VARS:
        value = environ.get(key, "").strip()
        if value:
            return value
    return FALLBACK_EDITOR


@dataclass
class InteractiveEditor:
    """Edit a buffer through a temporary file.

    ``edit`` returns ``b""`` when the operator left only whitespace in the
    buffer; callers treat that as a request to abort.
    """

    command: str | None = None

    def edit(self, label: str, initial: bytes, header: str) -> bytes:
        """Let the operator edit *initial* (prefixed with *header*)."""
        header_bytes = header.encode("utf-8")
        editor = resolve_editor(self.command)
        safe_label = re.sub(r"[^A-Za-z0-9._-]", "_", label) or "instance"
        with tempfile.TemporaryDirectory(prefix="instctl-editor-") as tmp_dir:
            path = Path(tmp_dir) / f"{safe_label}.yaml"
            path.write_bytes(header_bytes + initial)
            path.chmod(0o600)
            command = f"{editor} {shlex.quote(str(path))}"
            LOGGER.debug("Launching editor: %s", command)
            try:
                result = subprocess.run(command, shell=True, check=False)  # noqa: S602
            except OSError as exc:
                raise EditorError(f"failed to launch editor {editor!r}: {exc}") from exc
            if result.returncode != 0:
                raise EditorError(f"editor {editor!r} exited with status {result.returncode}")
            content = path.read_bytes()

        if content.startswith(header_bytes):
            content = content[len(header_bytes) :]
        if not content.strip():
            return b""
        return content


__all__ = ["EditorError", "InteractiveEditor", "generate_warning_header", "resolve_editor"]
