"""
Tests for the Price Oracle Guard and Pooled Custody

Covers USD conversion, the minimum fee floor and feed failure handling.
"""

import pytest
from billing.custody import CustodyLedger
from billing.oracle import PriceFeed, PriceOracleGuard, PriceQuote, StaticPriceFeed
from core.config import EngineConfig, MAX_UINT256, MIN_FEE_USD
from core.errors import ArithmeticFailure, FeeTooLowError, InsufficientFundsError, OracleError


class BrokenFeed(PriceFeed):
    """Feed whose upstream is down."""

    def latest_round_data(self) -> PriceQuote:
        raise ConnectionError("feed unreachable")


class TestPriceOf:
    """Test token to USD conversion."""

    def test_dollar_peg_is_identity(self):
        """At $1.00 with 8 decimals the value equals the amount."""
        guard = PriceOracleGuard(StaticPriceFeed(10**8), min_fee_usd=MIN_FEE_USD)

        assert guard.price_of(123 * 10**18) == 123 * 10**18

    def test_price_scaling_truncates(self):
        """Value is amount * answer // 10**decimals."""
        guard = PriceOracleGuard(StaticPriceFeed(150_000_000), min_fee_usd=1)

        assert guard.price_of(3) == 4  # 4.5 truncated
        assert guard.price_of(0) == 0

    def test_respects_feed_decimals(self):
        guard = PriceOracleGuard(StaticPriceFeed(2_000, decimals=3), min_fee_usd=1)

        assert guard.price_of(10) == 20

    def test_updated_answer_is_used(self):
        feed = StaticPriceFeed(10**8)
        guard = PriceOracleGuard(feed, min_fee_usd=1)

        feed.set_answer(2 * 10**8)

        assert guard.price_of(5) == 10


class TestMinimumFee:
    """Test the minimum fee floor."""

    def test_fee_at_floor_passes(self):
        guard = PriceOracleGuard(StaticPriceFeed(10**8), min_fee_usd=MIN_FEE_USD)

        assert guard.enforce_minimum(MIN_FEE_USD) == MIN_FEE_USD

    def test_fee_below_floor_rejected(self):
        guard = PriceOracleGuard(StaticPriceFeed(10**8), min_fee_usd=MIN_FEE_USD)

        with pytest.raises(FeeTooLowError) as exc_info:
            guard.enforce_minimum(MIN_FEE_USD - 1)

        assert exc_info.value.message == "Fee below minimum required"
        assert exc_info.value.code == "FEE_TOO_LOW"

    def test_price_drop_raises_required_amount(self):
        """At $0.50 a token, twice as many tokens are needed."""
        guard = PriceOracleGuard(StaticPriceFeed(50_000_000), min_fee_usd=100)

        with pytest.raises(FeeTooLowError):
            guard.enforce_minimum(150)
        assert guard.enforce_minimum(200) == 100


class TestFeedFailures:
    """Test that the guard never falls back on a bad feed."""

    def test_feed_exception_becomes_oracle_error(self):
        guard = PriceOracleGuard(BrokenFeed(), min_fee_usd=1)

        with pytest.raises(OracleError) as exc_info:
            guard.price_of(1)

        assert isinstance(exc_info.value.cause, ConnectionError)

    def test_non_positive_answer_rejected(self):
        guard = PriceOracleGuard(StaticPriceFeed(0), min_fee_usd=1)

        with pytest.raises(OracleError):
            guard.enforce_minimum(10**30)

    def test_stale_quote_rejected(self):
        now = [1_000]
        feed = StaticPriceFeed(10**8, clock=lambda: now[0])
        guard = PriceOracleGuard(feed, min_fee_usd=1, max_quote_age=60, clock=lambda: now[0])

        assert guard.price_of(1) == 1
        now[0] += 61
        with pytest.raises(OracleError):
            guard.price_of(1)

    def test_from_config_builds_static_feed(self):
        config = EngineConfig(price_answer=3 * 10**8)
        guard = PriceOracleGuard.from_config(config)

        assert guard.price_of(2) == 6
        assert guard.min_fee_usd == config.min_fee_usd


class TestCustodyLedger:
    """Test pooled custody transfers."""

    def test_pull_moves_funds_into_pool(self):
        ledger = CustodyLedger()
        ledger.fund("alice", 100)

        ledger.pull("alice", 40)

        assert ledger.balance_of("alice") == 60
        assert ledger.pooled == 40

    def test_pull_beyond_balance_rejected(self):
        ledger = CustodyLedger()
        ledger.fund("alice", 10)

        with pytest.raises(InsufficientFundsError) as exc_info:
            ledger.pull("alice", 11)

        assert exc_info.value.message == "Transfer amount exceeds balance"
        assert ledger.balance_of("alice") == 10
        assert ledger.pooled == 0

    def test_push_pays_out_of_pool(self):
        ledger = CustodyLedger()
        ledger.fund("alice", 10)
        ledger.pull("alice", 10)

        ledger.push("bob", 7)

        assert ledger.balance_of("bob") == 7
        assert ledger.pooled == 3

    def test_push_beyond_pool_rejected(self):
        ledger = CustodyLedger()

        with pytest.raises(InsufficientFundsError):
            ledger.push("bob", 1)

    def test_fund_overflow_rejected(self):
        ledger = CustodyLedger()
        ledger.fund("alice", MAX_UINT256)

        with pytest.raises(ArithmeticFailure):
            ledger.fund("alice", 1)

        assert ledger.balance_of("alice") == MAX_UINT256

    def test_pool_overflow_rejected(self):
        """The pool is bounded even when each wallet can cover its transfer."""
        ledger = CustodyLedger()
        ledger.fund("alice", MAX_UINT256)
        ledger.fund("bob", 1)
        ledger.pull("alice", MAX_UINT256)

        with pytest.raises(ArithmeticFailure):
            ledger.pull("bob", 1)

        assert ledger.balance_of("bob") == 1
        assert ledger.pooled == MAX_UINT256

    def test_negative_amount_rejected(self):
        ledger = CustodyLedger()

        with pytest.raises(ValueError):
            ledger.fund("alice", -1)

    def test_dict_round_trip_keeps_large_amounts(self):
        ledger = CustodyLedger()
        ledger.fund("alice", 2**200)
        ledger.pull("alice", 2**199)

        restored = CustodyLedger.from_dict(ledger.to_dict())

        assert restored.wallets == ledger.wallets
        assert restored.pooled == 2**199
