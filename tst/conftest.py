from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from app import app, get_store, get_sync_service
from models import Balance, Direction, Transaction, transaction_id
from providers import FallbackProvider, PrimaryProvider
from rate_limiter import RateLimiter
from services import SyncService
from store import Store

ADDRESS_1 = "12xQ9k5ousS8MqNsMBqHKtjAtCuKezm2Ju"
ADDRESS_2 = "3E8ociqZa9mZUSwGdSmAEMAoAxBK3FNDcd"
ADDRESS_3 = "bc1q0sg9rdst255gtldsmcf8rk0764avqy2h2ksqs5"


class FakeClock:
    """Monotonic clock whose sleep() just moves time forward."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_tx(owner: str, tx_hash: str, amount: int = 10000, direction=Direction.RECEIVED, **kwargs) -> Transaction:
    return Transaction(
        id=transaction_id(owner, tx_hash),
        address_id=owner,
        tx_hash=tx_hash,
        amount=amount,
        direction=direction,
        timestamp=kwargs.pop("timestamp", datetime(2023, 1, 1, 10, 0, 0, tzinfo=timezone.utc)),
        **kwargs
    )


def make_balance(owner: str, confirmed: int, **kwargs) -> Balance:
    return Balance(address_id=owner, confirmed_amount=confirmed, unconfirmed_amount=0, **kwargs)


def mock_response(payload=None, status_code: int = 200) -> Mock:
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


@pytest.fixture
def store():
    """A fresh in-memory store per test."""
    return Store()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(min_interval=5.0, max_attempts=3, base_delay=10.0, clock=clock, sleep=clock.sleep)


@pytest.fixture
def primary():
    provider = Mock(spec=PrimaryProvider)
    provider.name = "blockchair"
    return provider


@pytest.fixture
def fallback():
    provider = Mock(spec=FallbackProvider)
    provider.name = "blockchain.com"
    return provider


@pytest.fixture
def sync_service(store, primary, fallback, limiter):
    return SyncService(store, primary, fallback, limiter)


@pytest.fixture
def wallet_address(store):
    """Fixture to create and return a single tracked Address."""
    return store.add_address(ADDRESS_1, address_id="addr-1")


@pytest.fixture
def client(store, sync_service):
    """
    A TestClient wired to the test store and sync service.
    """
    app.dependency_overrides = {
        get_store: lambda: store,
        get_sync_service: lambda: sync_service,
    }
    with TestClient(app) as c:
        yield c
    app.dependency_overrides = {}
