"""
SERVICEHUB - API Module

FastAPI server exposing:
- Provider registration and fee management
- Subscriptions and derived balances
- Admin controls (provider state, upgrade latch, custody funding)
- Signed event journal
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
