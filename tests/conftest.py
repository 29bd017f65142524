import pytest

from carbonclaims.config import MarketplaceConfig
from carbonclaims.core import InMemoryLedgerClient, ManualClock, Wallet
from carbonclaims.observability import get_metrics

NOW_MS = 1_700_000_000_000
DAY_MS = 86_400_000


@pytest.fixture(autouse=True)
def fresh_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def config():
    return MarketplaceConfig(confirmation_timeout_seconds=2.0)


@pytest.fixture
def clock():
    return ManualClock(NOW_MS)


@pytest.fixture
def ledger(config, clock):
    return InMemoryLedgerClient(config, clock=clock)


@pytest.fixture
def owner():
    return Wallet.generate()


@pytest.fixture
def voter():
    return Wallet.generate()
