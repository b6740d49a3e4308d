"""Tests for the structured operations log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from instctl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    return [json.loads(line) for line in logger.operations_log.read_text().splitlines()]


def test_operation_writes_one_record(tmp_path: Path) -> None:
    """A completed operation appends a single JSON line."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "edit",
        args={"name": "default", "config": tmp_path / "instance.yaml"},
        target={"kind": "instance", "name": "default"},
    ) as op:
        op.add_step("validate", status="success")
        op.success("Instance edited.", changed=1, context={"outcome": "committed"})

    [record] = _records(logger)
    assert record["command"] == "edit"
    assert record["args"] == {"name": "default", "config": str(tmp_path / "instance.yaml")}
    assert record["steps"] == [{"name": "validate", "status": "success"}]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == 1
    assert result["rc"] == 0
    assert result["context"] == {"outcome": "committed"}
    assert isinstance(record["duration_ms"], int)


def test_operation_defaults_to_success(tmp_path: Path) -> None:
    """Scopes without an explicit result are recorded as successful."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("list"):
        pass

    [record] = _records(logger)
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_operation_records_unhandled_exception(tmp_path: Path) -> None:
    """Exceptions escaping the scope are logged as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="kaboom"):
        with logger.operation("start"):
            raise RuntimeError("kaboom")

    [record] = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["rc"] == 1
    assert "kaboom" in str(result["message"])


def test_explicit_error_is_kept(tmp_path: Path) -> None:
    """An error recorded before raising is not replaced."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(SystemExit):
        with logger.operation("edit") as op:
            op.error("invalid document", errors=["cpus"], rc=2)
            raise SystemExit(2)

    [record] = _records(logger)
    assert record["result"]["message"] == "invalid document"  # type: ignore[index]
    assert record["result"]["errors"] == ["cpus"]  # type: ignore[index]
    assert record["result"]["rc"] == 2  # type: ignore[index]


def test_warning_result(tmp_path: Path) -> None:
    """Warnings keep rc 0 and list the warnings."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("validate") as op:
        op.warning("unknown keys ignored", warnings=["bogus"])

    [record] = _records(logger)
    assert record["result"]["status"] == "warning"  # type: ignore[index]
    assert record["result"]["warnings"] == ["bogus"]  # type: ignore[index]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An uncreatable log directory turns the logger off instead of failing."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)

    assert not logger.operations_log.exists()


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """After one failed append the logger stops writing."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)  # type: ignore[call-overload]

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)
