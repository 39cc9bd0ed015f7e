"""
Engine Configuration

Constants of the billing engine, gathered in one dataclass so deployments and
tests can override them. `EngineConfig.from_env()` reads SERVICEHUB_* variables.
"""

import os
from dataclasses import dataclass
from typing import Optional

SECONDS_PER_MONTH = 30 * 24 * 60 * 60
PRICE_FEED_DECIMALS = 8
TOKEN_DECIMALS = 18
MIN_FEE_USD = 50 * 10**TOKEN_DECIMALS
MAX_PROVIDERS = 200
MAX_SUBSCRIBED_PROVIDERS = 10
MAX_UINT256 = 2**256 - 1
# Ids are stored as SQLite INTEGER keys
MAX_RECORD_ID = 2**63 - 1

DEFAULT_ADMIN = "admin"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Configuration for the billing engine."""
    admin: str = DEFAULT_ADMIN
    seconds_per_month: int = SECONDS_PER_MONTH
    min_fee_usd: int = MIN_FEE_USD
    max_providers: int = MAX_PROVIDERS
    max_subscribed_providers: int = MAX_SUBSCRIBED_PROVIDERS

    # Static feed answer, scaled by price_feed_decimals (1 * 10**8 == $1.00)
    price_answer: int = 1 * 10**PRICE_FEED_DECIMALS
    price_feed_decimals: int = PRICE_FEED_DECIMALS
    max_quote_age: Optional[int] = None  # seconds; None disables staleness checks

    # Extend from max(now, due_date) instead of the stale due date
    anchor_extensions_at_now: bool = False

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from SERVICEHUB_* environment variables."""
        max_age = os.environ.get("SERVICEHUB_MAX_QUOTE_AGE")
        return cls(
            admin=os.environ.get("SERVICEHUB_ADMIN", DEFAULT_ADMIN),
            seconds_per_month=_env_int("SERVICEHUB_SECONDS_PER_MONTH", SECONDS_PER_MONTH),
            min_fee_usd=_env_int("SERVICEHUB_MIN_FEE_USD", MIN_FEE_USD),
            max_providers=_env_int("SERVICEHUB_MAX_PROVIDERS", MAX_PROVIDERS),
            max_subscribed_providers=_env_int(
                "SERVICEHUB_MAX_SUBSCRIBED_PROVIDERS", MAX_SUBSCRIBED_PROVIDERS
            ),
            price_answer=_env_int("SERVICEHUB_PRICE_ANSWER", 1 * 10**PRICE_FEED_DECIMALS),
            price_feed_decimals=_env_int("SERVICEHUB_PRICE_DECIMALS", PRICE_FEED_DECIMALS),
            max_quote_age=int(max_age) if max_age else None,
            anchor_extensions_at_now=_env_bool("SERVICEHUB_ANCHOR_EXTENSIONS_AT_NOW", False),
        )
