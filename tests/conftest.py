from __future__ import annotations

from datetime import timedelta

import pytest

from fakes import BASE, FakeTokenStore, make_record
from glucose_sync.model import GlucoseRecord


@pytest.fixture
def five_records() -> list[GlucoseRecord]:
    return [make_record(100.0 + i, BASE + timedelta(hours=i)) for i in range(5)]


@pytest.fixture
def token_store() -> FakeTokenStore:
    return FakeTokenStore()
