# tests/conftest.py

import pytest

from app.config import Settings
from app.database import InMemoryRecordStore


@pytest.fixture
def settings() -> Settings:
    """Default settings with a small worker pool so the parallel path runs."""
    return Settings(match_workers=2, second_pass=True)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()
