from __future__ import annotations

import pytest

from stagegate.domain.models import TriggerCause
from tests.support import FakeAdapter, passing_adapters, push_cause


@pytest.fixture
def adapters() -> dict[str, FakeAdapter]:
    return passing_adapters()


@pytest.fixture
def cause() -> TriggerCause:
    return push_cause()
