"""
Shared pytest configuration and fixtures for subscription ledger tests.

Builders and the in-memory event source live in tests/helpers.py.
"""

from __future__ import annotations

import pytest

from config.loader import ConfigLoader
from tests.helpers import FakeEventSource


@pytest.fixture
def fake_source():
    """In-memory EventSource with no events."""
    return FakeEventSource()


@pytest.fixture(autouse=True)
def reset_config_singleton():
    """Reset the ConfigLoader singleton between tests."""
    ConfigLoader._instance = None
    yield
    ConfigLoader._instance = None
