"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest
import tempfile
from datetime import datetime, timezone

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["CREDIT_EXPIRATION_MONTHS"] = "2"
os.environ["LEDGER_LOCK_TIMEOUT_SECONDS"] = "5"

from credit_ledger.billing.plans import InMemorySubscriptionCatalog
from credit_ledger.core.balance import BalanceEngine
from credit_ledger.persistence.database import Database


class FakeClock:
    """Settable clock injected wherever the engine asks for "now"."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "ledger.db")
        os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"

        yield db_path

        Database.reset_instance()
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"


@pytest.fixture
def db(temp_db):
    """Initialized file-backed database (shared across threads)."""
    database = Database(f"sqlite:///{temp_db}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def engine(db, clock):
    return BalanceEngine(db, clock=clock)


@pytest.fixture
def catalog():
    return InMemorySubscriptionCatalog()
