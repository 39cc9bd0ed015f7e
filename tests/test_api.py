"""
Tests for FastAPI Endpoints

Integration tests for the billing API.
"""

import pytest
from fastapi.testclient import TestClient
import os

# Set test environment before imports
os.environ["API_KEY"] = "test-key-12345"
os.environ["SERVICEHUB_MIN_FEE_USD"] = str(30 * 24 * 60 * 60)

from api.server import app
from core.config import SECONDS_PER_MONTH

MONTHLY_FEE = SECONDS_PER_MONTH


@pytest.fixture
def client(monkeypatch):
    """Create test client with a fresh in-memory engine."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with TestClient(app) as test_client:
        yield test_client


def headers(caller=None, api_key="test-key-12345"):
    result = {"X-API-Key": api_key}
    if caller:
        result["X-Caller"] = caller
    return result


def fund(client, account, amount=10**24):
    response = client.post(
        "/custody/fund",
        json={"account": account, "amount": str(amount)},
        headers=headers("admin"),
    )
    assert response.status_code == 200
    return response


def register(client, caller="alice", provider_id=1, fee=MONTHLY_FEE):
    return client.post(
        "/providers",
        json={"provider_id": provider_id, "monthly_fee": str(fee)},
        headers=headers(caller),
    )


def subscribe(client, caller="bob", subscriber_id=10, provider_id=1, deposit=1_000):
    return client.post(
        "/subscriptions",
        json={"subscriber_id": subscriber_id, "provider_id": provider_id, "deposit": deposit},
        headers=headers(caller),
    )


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["upgrades_disabled"] is False
        assert data["provider_count"] == 0
        assert "uptime_seconds" in data

    def test_public_key(self, client):
        response = client.get("/public-key")

        assert response.status_code == 200
        assert response.json()["algorithm"] == "Ed25519"


class TestAuthentication:
    """Test API key and caller headers."""

    def test_missing_api_key(self, client):
        response = client.get("/providers/1")

        assert response.status_code == 422  # Missing header

    def test_invalid_api_key(self, client):
        response = client.get("/providers/1", headers=headers(api_key="wrong"))

        assert response.status_code == 401

    def test_mutation_requires_caller(self, client):
        response = client.post(
            "/providers",
            json={"provider_id": 1, "monthly_fee": str(MONTHLY_FEE)},
            headers=headers(),
        )

        assert response.status_code == 422


class TestProviderEndpoints:
    """Test provider registration, fees and withdrawal."""

    def test_register_provider(self, client):
        response = register(client)

        assert response.status_code == 200
        data = response.json()
        assert data["owner"] == "alice"
        assert data["fee_per_second"] == "1"
        assert data["balance"] == "0"

    def test_fee_too_low(self, client):
        response = register(client, fee=MONTHLY_FEE - 1)

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "FEE_TOO_LOW"

    def test_invalid_amount(self, client):
        response = client.post(
            "/providers",
            json={"provider_id": 1, "monthly_fee": "lots"},
            headers=headers("alice"),
        )

        assert response.status_code == 400

    def test_provider_id_beyond_storage_range(self, client):
        response = register(client, provider_id=2**63)

        assert response.status_code == 422
        assert register(client, provider_id=2**63 - 1).status_code == 200

    def test_get_unknown_provider(self, client):
        response = client.get("/providers/99", headers=headers())

        assert response.status_code == 404

    def test_set_fee_by_non_owner(self, client):
        register(client)

        response = client.put(
            "/providers/1/fee",
            json={"monthly_fee": str(2 * MONTHLY_FEE)},
            headers=headers("bob"),
        )

        assert response.status_code == 403

    def test_withdraw_earnings(self, client):
        fund(client, "bob")
        register(client)
        subscribe(client, deposit=750)

        response = client.post("/providers/1/withdraw", headers=headers("alice"))

        assert response.status_code == 200
        assert response.json()["amount"] == "750"
        assert response.json()["value_usd"] == "750"

        earnings = client.get("/providers/1/earnings", headers=headers())
        assert earnings.json()["earnings"] == "0"
        wallet = client.get("/custody/alice", headers=headers())
        assert wallet.json()["balance"] == "750"

    def test_remove_provider_refunds(self, client):
        fund(client, "bob")
        register(client)
        subscribe(client, deposit=400)

        response = client.delete("/providers/1", headers=headers("alice"))

        assert response.status_code == 200
        assert response.json()["refunded"] == "400"
        assert client.get("/providers/1", headers=headers()).status_code == 404


class TestSubscriptionEndpoints:
    """Test subscribe, extend and status reads."""

    def test_subscribe_and_status(self, client):
        fund(client, "bob")
        register(client)

        response = subscribe(client, deposit=SECONDS_PER_MONTH)

        assert response.status_code == 200
        status = client.get("/subscriptions/10/1/status", headers=headers())
        assert status.json()["active"] is True

    def test_subscriber_state(self, client):
        fund(client, "bob")
        register(client)
        subscribe(client, deposit=SECONDS_PER_MONTH)

        response = client.get("/subscribers/10", headers=headers())

        assert response.status_code == 200
        data = response.json()
        assert data["owner"] == "bob"
        assert data["is_paused"] is False
        assert data["active_providers"] == [1]
        assert int(data["balance"]) <= SECONDS_PER_MONTH
        assert "1" in data["due_dates"]

    def test_unknown_subscriber(self, client):
        assert client.get("/subscribers/5", headers=headers()).status_code == 404
        balance = client.get("/subscribers/5/balance", headers=headers())
        assert balance.json()["balance"] == "0"

    def test_subscriber_id_beyond_storage_range(self, client):
        fund(client, "bob")
        register(client)

        response = subscribe(client, subscriber_id=2**63)

        assert response.status_code == 422

    def test_subscribe_to_foreign_subscriber(self, client):
        fund(client, "bob")
        fund(client, "carol")
        register(client)
        subscribe(client)
        register(client, provider_id=2)

        response = subscribe(client, caller="carol", provider_id=2)

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "UNAUTHORIZED"

    def test_insufficient_funds(self, client):
        register(client)

        response = subscribe(client, caller="dave")

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INSUFFICIENT_FUNDS"

    def test_increase_deposit(self, client):
        fund(client, "bob")
        register(client)
        due = subscribe(client, deposit=100).json()["due_date"]

        response = client.post(
            "/subscriptions/increase",
            json={"subscriber_id": 10, "provider_id": 1, "amount": "50"},
            headers=headers("bob"),
        )

        assert response.status_code == 200
        assert response.json()["due_date"] == due + 50

    def test_subscribe_to_inactive_provider(self, client):
        fund(client, "bob")
        register(client, fee=MONTHLY_FEE)
        client.put("/providers/1/state", json={"active": False}, headers=headers("admin"))

        response = subscribe(client)

        assert response.status_code == 409

    def test_compact(self, client):
        fund(client, "bob")
        register(client)
        subscribe(client)
        client.delete("/providers/1", headers=headers("alice"))

        response = client.post("/subscribers/10/compact", headers=headers("bob"))

        assert response.status_code == 200
        assert response.json()["dropped"] == [1]


class TestAdminEndpoints:
    """Test admin-only endpoints."""

    def test_fund_requires_admin(self, client):
        response = client.post(
            "/custody/fund",
            json={"account": "alice", "amount": "1"},
            headers=headers("alice"),
        )

        assert response.status_code == 403

    def test_provider_state_toggle(self, client):
        register(client)

        response = client.put("/providers/1/state", json={"active": False}, headers=headers("admin"))

        assert response.status_code == 200
        assert response.json()["is_active"] is False

    def test_disable_upgrades(self, client):
        response = client.post("/admin/disable-upgrades", headers=headers("admin"))
        assert response.status_code == 200

        upgrade = client.post("/admin/upgrade", json={"version": "2.0.0"}, headers=headers("admin"))
        assert upgrade.status_code == 409
        assert upgrade.json()["detail"]["code"] == "UPGRADES_DISABLED"

        again = client.post("/admin/disable-upgrades", headers=headers("admin"))
        assert again.status_code == 409

        assert client.get("/health").json()["upgrades_disabled"] is True

    def test_upgrade_before_latch(self, client):
        response = client.post("/admin/upgrade", json={"version": "1.1.0"}, headers=headers("admin"))

        assert response.status_code == 200
        assert client.get("/health").json()["implementation_version"] == "1.1.0"

    def test_upgrade_history(self, client):
        client.post("/admin/upgrade", json={"version": "1.1.0"}, headers=headers("admin"))
        client.post("/admin/upgrade", json={"version": "1.2.0"}, headers=headers("alice"))

        response = client.get("/admin/upgrades", headers=headers())

        assert response.status_code == 200
        data = response.json()
        assert data["implementation_version"] == "1.1.0"
        assert [h["version"] for h in data["history"]] == ["1.1.0"]
        assert data["history"][0]["upgraded_by"] == "admin"


class TestEventEndpoints:
    """Test the journal endpoints."""

    def test_events_listed_and_verified(self, client):
        fund(client, "bob")
        register(client)
        subscribe(client)

        response = client.get("/events", headers=headers())
        types = [e["event_type"] for e in response.json()["events"]]
        assert types == ["AccountFunded", "ProviderRegistered", "SubscriberRegistered"]

        verify = client.get("/events/verify", headers=headers())
        assert verify.json()["valid"] is True
        assert verify.json()["chain_length"] == 3

    def test_filter_by_type(self, client):
        fund(client, "bob")
        register(client)

        response = client.get("/events?event_type=ProviderRegistered", headers=headers())

        assert response.json()["total"] == 1

    def test_negative_limit_rejected(self, client):
        response = client.get("/events?limit=-1", headers=headers())

        assert response.status_code == 422

    def test_limit_returns_most_recent(self, client):
        fund(client, "bob")
        register(client)

        response = client.get("/events?limit=1", headers=headers())

        assert [e["event_type"] for e in response.json()["events"]] == ["ProviderRegistered"]

    def test_invalid_event_type(self, client):
        response = client.get("/events?event_type=Nope", headers=headers())

        assert response.status_code == 400

    def test_failed_operation_not_journaled(self, client):
        register(client)
        register(client)

        response = client.get("/events", headers=headers())

        assert response.json()["total"] == 1


class TestPersistentServer:
    """Test that a DATABASE_URL-backed server survives a restart."""

    def test_state_survives_restart(self, monkeypatch, temp_db):
        monkeypatch.setenv("DATABASE_URL", temp_db)

        with TestClient(app) as first:
            fund(first, "bob")
            register(first)
            subscribe(first, deposit=SECONDS_PER_MONTH)

        with TestClient(app) as second:
            response = second.get("/providers/1", headers=headers())
            assert response.status_code == 200
            assert response.json()["balance"] == str(SECONDS_PER_MONTH)
            assert second.get("/health").json()["provider_count"] == 1

    def test_oversized_id_does_not_break_storage(self, monkeypatch, temp_db):
        monkeypatch.setenv("DATABASE_URL", temp_db)

        with TestClient(app) as server:
            assert register(server, provider_id=2**63).status_code == 422
            assert register(server, provider_id=1).status_code == 200

        with TestClient(app) as restarted:
            assert restarted.get("/providers/1", headers=headers()).status_code == 200

    def test_upgrade_history_survives_restart(self, monkeypatch, temp_db):
        monkeypatch.setenv("DATABASE_URL", temp_db)

        with TestClient(app) as first:
            first.post("/admin/upgrade", json={"version": "1.1.0"}, headers=headers("admin"))

        with TestClient(app) as second:
            history = second.get("/admin/upgrades", headers=headers()).json()["history"]
            assert [h["version"] for h in history] == ["1.1.0"]
