"""
SERVICEHUB - Billing Module

Subscription billing and entitlement accounting:
- Providers register a monthly fee, converted to a per-second rate
- Subscribers deposit funds that buy time-bounded entitlements
- Provider balances accumulate until withdrawn
- A price oracle enforces a minimum fee in the reference currency
"""

from .oracle import PriceFeed, PriceQuote, StaticPriceFeed, PriceOracleGuard
from .providers import Provider, ProviderRegistry
from .subscribers import Subscriber, SubscriberRegistry
from .custody import CustodyLedger
from .engine import BillingEngine, ProviderState, SubscriberState, Withdrawal

__all__ = [
    "PriceFeed",
    "PriceQuote",
    "StaticPriceFeed",
    "PriceOracleGuard",
    "Provider",
    "ProviderRegistry",
    "Subscriber",
    "SubscriberRegistry",
    "CustodyLedger",
    "BillingEngine",
    "ProviderState",
    "SubscriberState",
    "Withdrawal",
]
