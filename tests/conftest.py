"""Shared pytest configuration for the instctl test suite."""

from __future__ import annotations

import os

import pytest

_HOST_ENV_VARS = ("VISUAL", "EDITOR")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's instctl settings and editor out of the tests."""
    for key in list(os.environ):
        if key.startswith("INSTCTL_") or key in _HOST_ENV_VARS:
            monkeypatch.delenv(key, raising=False)
