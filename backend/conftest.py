# backend/conftest.py
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend.core.clock import FixedClock, reset_clock, set_clock
from backend.core.config import settings
from backend.features.events.service import clear_events, set_event_sink
from backend.features.store.service import reset_store

TEST_ADMIN_KEY = "test-admin-key"
DEFAULT_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def store():
    """
    Fresh in-memory Entitlement Store per test.

    Replaces whatever STORE_BACKEND would select so tests never touch a real
    database unless they build a SQL store themselves.
    """
    fresh = reset_store()
    yield fresh
    reset_store()


@pytest.fixture(scope="function", autouse=True)
def events():
    """Recorded domain events, cleared around each test."""
    set_event_sink(None)
    clear_events()
    yield
    set_event_sink(None)
    clear_events()


@pytest.fixture(scope="function", autouse=True)
def clock():
    """Pinned process clock; tests move it with clock.set() / clock.advance()."""
    fixed = FixedClock(DEFAULT_NOW)
    set_clock(fixed)
    yield fixed
    reset_clock()


@pytest.fixture(scope="function", autouse=True)
def admin_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", TEST_ADMIN_KEY)
    yield TEST_ADMIN_KEY


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": TEST_ADMIN_KEY, "X-User-Id": "reviewer-1"}
