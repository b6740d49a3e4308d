"""Tests for the interactive editor wrapper."""
from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

from instctl.editor import (
    EditorError,
    InteractiveEditor,
    generate_warning_header,
    resolve_editor,
)

HEADER = "# edit me\n"


def _python_editor(tmp_path: Path, body: str) -> str:
    """Return an editor command running *body* with the file path in ``path``."""
    script = tmp_path / "editor.py"
    script.write_text("import pathlib, sys\npath = pathlib.Path(sys.argv[1])\n" + body)
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


def test_resolve_editor_order() -> None:
    """Configured editor wins, then INSTCTL_EDITOR, VISUAL and EDITOR."""
    env = {"EDITOR": "nano", "VISUAL": "code -w", "INSTCTL_EDITOR": "vim"}

    assert resolve_editor("emacs", env) == "emacs"
    assert resolve_editor(None, env) == "vim"
    assert resolve_editor(None, {"EDITOR": "nano", "VISUAL": "code -w"}) == "code -w"
    assert resolve_editor(None, {"EDITOR": "nano"}) == "nano"
    assert resolve_editor(None, {"EDITOR": "  "}) == "vi"


def test_warning_header_is_comment_block() -> None:
    """Every line of the warning header is a YAML comment."""
    lines = generate_warning_header().splitlines()

    assert lines
    assert all(line.startswith("#") for line in lines)


@pytest.mark.mutation_timeout
def test_edit_returns_buffer_without_header(tmp_path: Path) -> None:
    """The header is stripped from the edited content."""
    command = _python_editor(
        tmp_path,
        "path.write_text(path.read_text().replace('cpus: 2', 'cpus: 4'))\n",
    )

    result = InteractiveEditor(command=command).edit("default", b"cpus: 2\n", HEADER)

    assert result == b"cpus: 4\n"


@pytest.mark.mutation_timeout
def test_edit_file_named_after_label(tmp_path: Path) -> None:
    """The temporary file carries the sanitised label and is private."""
    record = tmp_path / "seen.txt"
    command = _python_editor(
        tmp_path,
        "import os, stat\n"
        f"pathlib.Path({str(record)!r}).write_text("
        "path.name + ' ' + oct(stat.S_IMODE(os.stat(path).st_mode)))\n",
    )

    InteractiveEditor(command=command).edit("my/vm", b"cpus: 2\n", HEADER)

    assert record.read_text() == "my_vm.yaml 0o600"


@pytest.mark.mutation_timeout
def test_edit_keeps_modified_header(tmp_path: Path) -> None:
    """A header changed by the operator is kept as part of the buffer."""
    command = _python_editor(tmp_path, "path.write_text('# mine\\ncpus: 2\\n')\n")

    result = InteractiveEditor(command=command).edit("default", b"cpus: 2\n", HEADER)

    assert result == b"# mine\ncpus: 2\n"


@pytest.mark.mutation_timeout
def test_whitespace_only_buffer_is_empty(tmp_path: Path) -> None:
    """Only whitespace after the header counts as an empty buffer."""
    command = _python_editor(tmp_path, f"path.write_text({HEADER!r} + '\\n  \\n')\n")

    assert InteractiveEditor(command=command).edit("default", b"cpus: 2\n", HEADER) == b""


@pytest.mark.mutation_timeout
def test_failing_editor_raises(tmp_path: Path) -> None:
    """Non-zero exit statuses raise :class:`EditorError`."""
    command = _python_editor(tmp_path, "sys.exit(3)\n")

    with pytest.raises(EditorError, match="status 3"):
        InteractiveEditor(command=command).edit("default", b"cpus: 2\n", HEADER)
