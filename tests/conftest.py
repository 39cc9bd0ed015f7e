"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest
import tempfile

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("SIGNING_KEY_B64", None)

from billing.engine import BillingEngine
from billing.oracle import StaticPriceFeed
from core.config import EngineConfig, SECONDS_PER_MONTH
from core.events import EventJournal
from crypto.signer import Ed25519Signer

START_TIME = 1_700_000_000

# One monthly fee unit buys exactly one token per second.
MONTHLY_FEE = SECONDS_PER_MONTH


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, now: int = START_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config():
    """Config where a fee of SECONDS_PER_MONTH clears the floor at $1."""
    return EngineConfig(min_fee_usd=SECONDS_PER_MONTH)


@pytest.fixture
def feed(clock, config):
    return StaticPriceFeed(answer=config.price_answer, decimals=config.price_feed_decimals, clock=clock)


@pytest.fixture
def signer():
    return Ed25519Signer()


@pytest.fixture
def engine(config, feed, clock, signer):
    """Engine with funded wallets for alice, bob and carol."""
    engine = BillingEngine(
        config=config,
        feed=feed,
        clock=clock,
        journal=EventJournal(signer=signer),
    )
    for account in ("alice", "bob", "carol"):
        engine.fund_account("admin", account, 10**24)
    return engine


@pytest.fixture
def temp_db():
    """Create a temporary database file and return its URL."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield f"sqlite:///{db_path}"

    # Cleanup
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass
