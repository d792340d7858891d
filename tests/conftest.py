"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from eigenctl.data import DataDir
from eigenctl.filesystem import LocalFilesystem, MemoryFilesystem
from eigenctl.locking import LockManager, MemoryLockManager


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def memory_datadir() -> DataDir:
    """Return a data directory on the in-memory filesystem."""
    return DataDir(Path("/data"), MemoryFilesystem(), MemoryLockManager(default_timeout=1.0))


@pytest.fixture
def disk_datadir(tmp_path: Path) -> DataDir:
    """Return a data directory on the real filesystem under ``tmp_path``."""
    return DataDir(tmp_path / "data", LocalFilesystem(), LockManager(default_timeout=1.0))


@pytest.fixture(params=["memory", "disk"])
def datadir(request: pytest.FixtureRequest, tmp_path: Path) -> DataDir:
    """Return a data directory on each filesystem implementation."""
    if request.param == "memory":
        return DataDir(Path("/data"), MemoryFilesystem(), MemoryLockManager(default_timeout=1.0))
    return DataDir(tmp_path / "data", LocalFilesystem(), LockManager(default_timeout=1.0))
