"""Shared pytest configuration and fixtures for the test suite.

This module centralizes:
- Path setup (so tmd_catalog and scripts import without installation)
- Pytest markers for test categorization (unit, integration)
- A file-backed catalog store per test
- Helpers for laying out download directories and marker files
"""
from __future__ import annotations

import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator

import pytest
from sqlalchemy import create_engine


# ==============================================================================
# Path Setup - Ensures tmd_catalog/ and scripts/ are importable
# ==============================================================================

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tmd_catalog.config import MARKER_FILE_NAME  # noqa: E402
from tmd_catalog.data.entity_store import EntityStore  # noqa: E402
from tmd_catalog.data.reconciler import Reconciler  # noqa: E402


# ==============================================================================
# Pytest Configuration
# ==============================================================================

def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line(
        "markers",
        "unit: Fast tests with no I/O (mocked dependencies)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Tests hitting SQLite or the file system",
    )
    config.addinivalue_line(
        "markers",
        "property: Hypothesis property-based tests",
    )


# ==============================================================================
# Store Fixtures
# ==============================================================================

class StepClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)) -> None:
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def catalog_db(tmp_path: Path) -> Path:
    return tmp_path / "catalog.db"


@pytest.fixture
def catalog_store(catalog_db: Path, clock: StepClock) -> Iterator[EntityStore]:
    """File-backed SQLite catalog, isolated per test."""
    engine = create_engine(f"sqlite:///{catalog_db}", future=True)
    store = EntityStore(engine, base_delay_seconds=0.0, clock=clock)
    yield store
    engine.dispose()


@pytest.fixture
def reconciler(catalog_store: EntityStore) -> Reconciler:
    return Reconciler(catalog_store)


# ==============================================================================
# Filesystem Helpers
# ==============================================================================

@pytest.fixture
def downloads(tmp_path: Path) -> Path:
    """Root under which tests lay out download directories."""
    root = tmp_path / "downloads"
    root.mkdir()
    return root


@pytest.fixture
def make_download_dir(downloads: Path) -> Callable[..., Path]:
    """Create ``downloads/<name>``, optionally with the marker file inside.

    Example:
        def test_move(make_download_dir):
            new_dir = make_download_dir("alice", marker=True)
    """

    def _make(name: str, *, marker: bool = False) -> Path:
        directory = downloads / name
        directory.mkdir(parents=True, exist_ok=True)
        if marker:
            (directory / MARKER_FILE_NAME).write_text("")
        return directory

    return _make


@pytest.fixture
def restore_root_logging() -> Iterator[None]:
    """Put the root logger back the way pytest configured it."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
