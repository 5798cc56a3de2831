from __future__ import annotations

import pytest

from predmarket_coordinator.application.state import AppState, StateData
from tests.utils.fakes import OWNER, FakeClock, FakeLedger, FakeMarketService


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state() -> AppState:
    return AppState(StateData(account=OWNER))


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger(account=OWNER)


@pytest.fixture
def service() -> FakeMarketService:
    return FakeMarketService()
