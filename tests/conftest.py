"""Shared pytest configuration and fixtures for the test suite.

This module centralizes:
- Path setup (eliminates sys.path hacks in individual test files)
- Pytest markers for test categorization (unit, integration)
- A temporary SQLite crawl store and the deterministic fake API
"""
from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import List, Tuple

import pytest


# ==============================================================================
# Path Setup - Ensures followgraph/ and scripts/ are importable
# ==============================================================================

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from followgraph.data.crawl_store import CrawlStore, create_sqlite_engine  # noqa: E402
from tests.helpers.fake_follow_api import reference_follows  # noqa: E402


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


# ==============================================================================
# Graph Fixtures
# ==============================================================================

@pytest.fixture
def follows() -> List[Tuple[int, int]]:
    """Directed follow pairs of the small reference graph."""
    return reference_follows()


# ==============================================================================
# Store Fixtures
# ==============================================================================

@pytest.fixture
def crawl_store(tmp_path: Path):
    """File-backed SQLite crawl store for isolated testing."""
    store = CrawlStore(create_sqlite_engine(tmp_path / "crawl.sqlite3"))
    yield store
    store.close()


@pytest.fixture
def no_wait():
    """Wait function for the fetcher that records requested sleeps instead of sleeping."""
    waits: List[float] = []

    def _wait(seconds: float, cancel_event: threading.Event) -> bool:
        waits.append(seconds)
        return cancel_event.is_set()

    _wait.waits = waits  # type: ignore[attr-defined]
    return _wait
