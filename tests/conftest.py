"""Shared fixtures for solvency tests.

Helper functions (make_harness, seed, publish) are in tests/helpers.py.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from tests.helpers import Harness, make_harness, publish, seed


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    """Temporary database path; each test gets an isolated SQLite file."""
    return tmp_path / "test.db"


@pytest.fixture()
def harness() -> Harness:
    """Empty system: zero supply, zero reserve, no attestation."""
    return make_harness()


@pytest.fixture()
def green(harness: Harness) -> Harness:
    """1M tokens, 100k reserve units (10%), V=950k → CR 1.05, band GREEN."""
    seed(harness, 1_000_000, 100_000)
    publish(harness, 950_000)
    harness.engine.refresh_band()
    return harness


@pytest.fixture()
def deficit(harness: Harness) -> Harness:
    """1M tokens, 100k reserve units, V=880k → CR exactly 0.98."""
    seed(harness, 1_000_000, 100_000)
    publish(harness, 880_000)
    harness.engine.refresh_band()
    return harness
