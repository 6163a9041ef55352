"""
Shared fixtures for the diagnosis resolver tests
"""

import pytest
from datetime import datetime, timedelta, timezone

from diagnosis_resolver.config import DEFAULT_CODE_TABLE_PATH
from diagnosis_resolver.core.code_table import CodeTable


@pytest.fixture(scope="session")
def code_table():
    """Real code table shipped in data/ (read-only, safe to share)"""
    return CodeTable(DEFAULT_CODE_TABLE_PATH)


class FakeClock:
    """Controllable clock for TTL and timestamp tests"""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()
