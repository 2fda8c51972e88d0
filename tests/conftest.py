"""Shared fixtures: a virtual clock and an in-memory homeserver."""
from __future__ import annotations

import pytest

from helpers import FakeClock, FakeMatrixClient


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client(clock: FakeClock) -> FakeMatrixClient:
    return FakeMatrixClient(clock)
