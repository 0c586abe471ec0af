from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ragquery.services.storage import Storage
from tests.helpers import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage(tmp_path) -> Storage:
    return Storage(tmp_path / "ragquery-test.db")
