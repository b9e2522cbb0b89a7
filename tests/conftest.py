"""Shared pytest configuration and fixtures for the test suite.

This module centralizes:
- Path setup (so ``inbox_mirror`` imports without installation)
- Pytest markers for test categorization (unit, integration, selenium)
- A manual clock for job-tracker staleness tests
- Temporary SQLite stores and mock crawl collaborators
"""
from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine


# ==============================================================================
# Path Setup - Ensures inbox_mirror/ is importable
# ==============================================================================

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from inbox_mirror.crawl.extractor import RawMessage, RawSnapshot  # noqa: E402
from inbox_mirror.crawl.job_tracker import CrawlJobTracker  # noqa: E402
from inbox_mirror.data.inbox_store import InboxStore  # noqa: E402


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
        "integration: Tests hitting SQLite, file system, or network",
    )
    config.addinivalue_line(
        "markers",
        "selenium: Browser-based tests requiring Selenium (slowest)",
    )


# ==============================================================================
# Clock
# ==============================================================================

class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def tracker(clock):
    """Job tracker with the default 30s/60s thresholds on a manual clock."""
    return CrawlJobTracker(stale_after_seconds=30.0, abandon_after_seconds=60.0, clock=clock)


# ==============================================================================
# Database Fixtures
# ==============================================================================

@pytest.fixture
def inbox_store(tmp_path):
    """Fresh file-backed InboxStore per test."""
    engine = create_engine(f"sqlite:///{tmp_path / 'inbox.db'}")
    store = InboxStore(engine)
    yield store
    engine.dispose()


# ==============================================================================
# Crawl Collaborator Mocks
# ==============================================================================

@pytest.fixture
def mock_session():
    """SessionManager double that always reports a valid session."""
    session = Mock()
    session.ensure_valid = Mock(return_value=True)
    session.close = Mock()
    return session


@pytest.fixture
def mock_extractor():
    """Extractor double returning nothing until a test configures it."""
    extractor = Mock()
    extractor.snapshot = Mock(side_effect=lambda key: RawSnapshot(external_key=key))
    extractor.snapshot_messages = Mock(return_value=[])
    extractor.list_snapshots = Mock(return_value=[])
    return extractor


@pytest.fixture
def sample_messages():
    """Three messages in page order, oldest first."""
    return [
        RawMessage(content="Hello, is this still available?", sent_at=datetime(2024, 3, 1, 9, 0), is_me=False, message_type="customer"),
        RawMessage(content="Yes, when would you like to start?", sent_at=datetime(2024, 3, 1, 9, 5), is_me=True, message_type="pro"),
        RawMessage(content="Next Monday works.", sent_at=datetime(2024, 3, 1, 9, 12), is_me=False, message_type="customer"),
    ]


def make_snapshot(external_key: str = "ext-1", **overrides) -> RawSnapshot:
    """Snapshot with realistic metadata; override any field by keyword."""
    values = {
        "external_key": external_key,
        "title": "Bathroom renovation",
        "user_name": "Kim",
        "service_type": "Interior",
        "location": "Seoul",
        "price": "1,200,000",
        "last_message": None,
        "last_message_time": None,
        "unread_count": None,
    }
    values.update(overrides)
    return RawSnapshot(**values)


@pytest.fixture
def snapshot_factory():
    return make_snapshot
