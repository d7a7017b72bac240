"""
Pytest configuration and shared fixtures.
"""

import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest

from organmatch.database import init_database, get_session
from organmatch.storage import SqlRegistry

FIXED_NOW = datetime(2026, 6, 1, 12, 0, 0)


class RecordingSink:
    """Event sink that keeps every payload it receives."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def emit(self, payload: Dict[str, Any]) -> None:
        self.events.append(payload)

    def types(self) -> List[str]:
        return [e["type"] for e in self.events]


@pytest.fixture
def now() -> datetime:
    """Pinned reference time for scoring and approvals."""
    return FIXED_NOW


@pytest.fixture
def clock(now):
    return lambda: now


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "test.db"
    init_database(path)
    return path


@pytest.fixture
def registry(db_path):
    """Registry over a fresh temporary SQLite database."""
    session = get_session(db_path)
    yield SqlRegistry(session)
    session.close()


@pytest.fixture
def donor_data() -> Dict[str, Any]:
    """Universal donor offering a kidney."""
    return {
        "id": 1,
        "blood_type": "O-",
        "organ_type": "kidney",
        "location": "Boston",
        "age": 30,
    }


@pytest.fixture
def recipient_data(now) -> Dict[str, Any]:
    """Universal recipient, most urgent, waiting well past 100 days."""
    return {
        "id": 1,
        "blood_type": "AB+",
        "organ_needed": "kidney",
        "location": "Boston",
        "age": 30,
        "urgency_level": 10,
        "created_at": now - timedelta(days=120),
    }


@pytest.fixture
def make_donor(registry):
    counter = itertools.count(1)

    def _make(**overrides):
        fields = {
            "name": f"Donor {next(counter)}",
            "blood_type": "O-",
            "organ_type": "kidney",
            "location": "Boston",
            "age": 30,
        }
        fields.update(overrides)
        return registry.add_donor(**fields)

    return _make


@pytest.fixture
def make_recipient(registry, now):
    counter = itertools.count(1)

    def _make(waited_days: int = 120, **overrides):
        fields = {
            "name": f"Recipient {next(counter)}",
            "blood_type": "AB+",
            "organ_needed": "kidney",
            "location": "Boston",
            "age": 30,
            "urgency_level": 10,
            "created_at": now - timedelta(days=waited_days),
        }
        fields.update(overrides)
        return registry.add_recipient(**fields)

    return _make
