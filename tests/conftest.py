"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

from productgallery.core.cache import InMemoryStore, TTLCache
from productgallery.core.events import EventEmitter, EventRecorder


def pytest_configure(config):
    """Make the test helpers importable as `fakes`."""
    tests_path = Path(__file__).resolve().parent
    if str(tests_path) not in sys.path:
        sys.path.insert(0, str(tests_path))


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def recorder(events):
    return EventRecorder(events)


@pytest.fixture
def memory_cache():
    return TTLCache(InMemoryStore())
