"""
Price Oracle Guard

Converts token amounts into their reference-currency (USD) value using an
external price feed, and enforces the minimum monthly fee.

The guard never caches and never falls back: if the feed cannot answer,
registration and fee changes fail. Existing entitlements and withdrawals do
not depend on it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional
import time
import structlog

from core.config import EngineConfig
from core.errors import FeeTooLowError, OracleError

logger = structlog.get_logger()


@dataclass(frozen=True)
class PriceQuote:
    """Latest answer from a price feed."""
    answer: int
    decimals: int
    updated_at: int
    round_id: int = 0


class PriceFeed(ABC):
    """Source of reference prices."""

    @abstractmethod
    def latest_round_data(self) -> PriceQuote:
        """Return the latest quote, or raise if none is available."""
        pass


class StaticPriceFeed(PriceFeed):
    """
    Feed that always answers with a configured price.

    Used for deployments whose token is pegged to the reference currency and
    for tests. `set_answer` lets an operator move the price.
    """

    def __init__(
        self,
        answer: int,
        decimals: int = 8,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._answer = answer
        self._decimals = decimals
        self._clock = clock or (lambda: int(time.time()))
        self._round_id = 1
        self._updated_at = self._clock()

    def set_answer(self, answer: int) -> None:
        self._answer = answer
        self._round_id += 1
        self._updated_at = self._clock()
        logger.info("price_answer_updated", answer=answer, round_id=self._round_id)

    def latest_round_data(self) -> PriceQuote:
        return PriceQuote(
            answer=self._answer,
            decimals=self._decimals,
            updated_at=self._updated_at,
            round_id=self._round_id,
        )


class PriceOracleGuard:
    """
    Wraps a PriceFeed.

    price_of(amount) = amount * price / 10**decimals
    """

    def __init__(
        self,
        feed: PriceFeed,
        min_fee_usd: int,
        max_quote_age: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.feed = feed
        self.min_fee_usd = min_fee_usd
        self.max_quote_age = max_quote_age
        self._clock = clock or (lambda: int(time.time()))

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        feed: Optional[PriceFeed] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> "PriceOracleGuard":
        feed = feed or StaticPriceFeed(
            answer=config.price_answer,
            decimals=config.price_feed_decimals,
            clock=clock,
        )
        return cls(
            feed=feed,
            min_fee_usd=config.min_fee_usd,
            max_quote_age=config.max_quote_age,
            clock=clock,
        )

    def _read_quote(self) -> PriceQuote:
        try:
            quote = self.feed.latest_round_data()
        except OracleError:
            raise
        except Exception as e:
            logger.error("price_feed_error", error=str(e))
            raise OracleError(f"Price feed unavailable: {e}", cause=e) from e

        if quote.answer <= 0:
            raise OracleError("Price feed returned a non-positive answer", answer=quote.answer)

        if self.max_quote_age is not None:
            age = self._clock() - quote.updated_at
            if age > self.max_quote_age:
                raise OracleError("Price quote is stale", age=age, max_age=self.max_quote_age)

        return quote

    def price_of(self, amount: int) -> int:
        """Reference-currency value of `amount` token units."""
        quote = self._read_quote()
        return amount * quote.answer // 10**quote.decimals

    def enforce_minimum(self, amount: int) -> int:
        """Raise FeeTooLowError when the value of `amount` is below the floor."""
        value = self.price_of(amount)
        if value < self.min_fee_usd:
            logger.info(
                "fee_below_minimum",
                amount=amount,
                value_usd=value,
                min_fee_usd=self.min_fee_usd,
            )
            raise FeeTooLowError(
                "Fee below minimum required",
                value_usd=value,
                min_fee_usd=self.min_fee_usd,
            )
        return value
