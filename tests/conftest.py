"""
Pytest configuration and shared fixtures.
"""
from decimal import Decimal

import pytest

from paper_perps.config.config import AccountConfig, Config, MonitoringConfig, StorageConfig
from paper_perps.execution.ledger import Ledger
from paper_perps.storage.account_store import AccountStore


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def ledger():
    """Fresh ledger over the default five symbols with 50,000 balance."""
    return Ledger()


@pytest.fixture
def config(tmp_path):
    """Config pointing the account store at a per-test SQLite file."""
    return Config(
        account=AccountConfig(),
        storage=StorageConfig(db_path=str(tmp_path / "account.db")),
        monitoring=MonitoringConfig(log_level="DEBUG"),
    )


@pytest.fixture
def store(tmp_path):
    s = AccountStore(db_path=str(tmp_path / "store.db"))
    yield s
    s.close()


@pytest.fixture
def btc_long(ledger):
    """LONG BTCUSDT: margin 1000, 10x, entry 50000 → quantity 0.2, liq 45000."""
    result = ledger.open_position("BTCUSDT", "LONG", Decimal("1000"), 10, Decimal("50000"))
    assert result.success
    return ledger.get_position("BTCUSDT")
