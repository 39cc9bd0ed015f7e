"""
SERVICEHUB - FastAPI Server

HTTP surface over the billing engine.

Endpoints:
- POST /providers - Register a provider
- POST /subscriptions - Subscribe to a provider
- POST /providers/{id}/withdraw - Withdraw provider earnings
- GET /subscribers/{id} - Subscriber state with derived balance
- GET /events - Signed event journal
- POST /admin/disable-upgrades - Latch the upgrade gate

The caller identity travels in the X-Caller header; every endpoint except
/health and /public-key also requires X-API-Key.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from billing.engine import BillingEngine, ProviderState, SubscriberState
from core.config import EngineConfig, MAX_RECORD_ID
from core.errors import (
    ArithmeticFailure,
    AuthorizationError,
    BillingError,
    OracleError,
    PreconditionError,
    ProviderNotFoundError,
    SubscriberNotFoundError,
)
from core.events import EventJournal, EventType
from crypto.signer import get_signer

logger = structlog.get_logger()

VERSION = "1.0.0"

Amount = Union[int, str]


# ============================================================================
# Pydantic Models
# ============================================================================

class RegisterProviderRequest(BaseModel):
    """Request to register a provider."""
    provider_id: int = Field(..., ge=0, le=MAX_RECORD_ID, description="Caller-chosen provider id")
    monthly_fee: Amount = Field(..., description="Monthly fee in token base units")


class ProviderFeeRequest(BaseModel):
    monthly_fee: Amount = Field(..., description="New monthly fee in token base units")


class ProviderStateRequest(BaseModel):
    active: bool


class SubscribeRequest(BaseModel):
    """Request to subscribe to a provider."""
    subscriber_id: int = Field(..., ge=0, le=MAX_RECORD_ID)
    provider_id: int = Field(..., ge=0, le=MAX_RECORD_ID)
    deposit: Amount = Field(..., description="Deposit in token base units")


class IncreaseDepositRequest(BaseModel):
    subscriber_id: int = Field(..., ge=0, le=MAX_RECORD_ID)
    provider_id: int = Field(..., ge=0, le=MAX_RECORD_ID)
    amount: Amount


class UpgradeRequest(BaseModel):
    version: str = Field(..., min_length=1)


class FundRequest(BaseModel):
    account: str = Field(..., min_length=1)
    amount: Amount


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    implementation_version: str
    upgrades_disabled: bool
    provider_count: int
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self):
        from persistence.database import Database
        from persistence.store import EngineStore

        signer = get_signer(private_key_b64=os.environ.get("SIGNING_KEY_B64"))
        self.engine = BillingEngine(
            config=EngineConfig.from_env(),
            journal=EventJournal(signer=signer),
        )

        self.store: Optional[EngineStore] = None
        database_url = os.environ.get("DATABASE_URL")
        if database_url:
            self.store = EngineStore(Database(database_url))
            self.store.restore(self.engine)

        self.start_time = datetime.now(timezone.utc)

    def run(self, operation: Callable[[], Any]) -> Any:
        """Run one engine operation and persist it in the same critical section."""
        with self.engine.transaction():
            result = operation()
            if self.store is not None:
                self.store.persist(self.engine)
            return result


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("servicehub_starting", version=VERSION)
    app_state = AppState()
    yield
    logger.info("servicehub_stopping")
    app_state = None


def _status_for(error: BillingError) -> int:
    if isinstance(error, AuthorizationError):
        return 403
    if isinstance(error, (ProviderNotFoundError, SubscriberNotFoundError)):
        return 404
    if isinstance(error, PreconditionError):
        return 409
    if isinstance(error, ArithmeticFailure):
        return 422
    if isinstance(error, OracleError):
        return 503
    return 400


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    status = _status_for(exc)
    logger.info(
        "request_failed",
        path=request.url.path,
        status=status,
        code=exc.code,
        message=exc.message,
    )
    return JSONResponse(status_code=status, content={"detail": exc.to_dict()})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ServiceHub",
        description="""
# Subscription Billing Engine

Providers register a monthly fee; subscribers deposit funds that buy
time-bounded access. Every mutation is atomic and journaled.

## Features
- **Fee floor**: minimum monthly fee enforced in USD via a price oracle
- **Derived balances**: subscriber balances are computed, never stored
- **Signed journal**: hash-chained Ed25519-signed events
- **Upgrade latch**: one-way switch disabling future code replacement
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(BillingError, billing_error_handler)

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def get_caller(x_caller: str = Header(..., alias="X-Caller")) -> str:
    """Identity of the account invoking the operation."""
    if not x_caller.strip():
        raise HTTPException(status_code=400, detail="X-Caller must not be empty")
    return x_caller.strip()


def _to_int(value: Amount, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value}")


def _provider_json(state: ProviderState) -> Dict[str, Any]:
    return {
        "provider_id": state.provider_id,
        "owner": state.owner,
        "fee_per_second": str(state.fee_per_second),
        "balance": str(state.balance),
        "is_active": state.is_active,
        "active_subscribers": list(state.active_subscribers),
    }


def _subscriber_json(state: SubscriberState) -> Dict[str, Any]:
    return {
        "subscriber_id": state.subscriber_id,
        "owner": state.owner,
        "is_paused": state.is_paused,
        "balance": str(state.balance),
        "active_providers": list(state.active_providers),
        "due_dates": {str(p): d for p, d in sorted(state.due_dates.items())},
    }


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        implementation_version=state.engine.upgrades.implementation_version,
        upgrades_disabled=state.engine.upgrades.disabled,
        provider_count=state.engine.provider_count,
        uptime_seconds=uptime,
    )


@app.post("/providers", tags=["Providers"])
async def register_provider(
    request: RegisterProviderRequest,
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    """Register a provider. The monthly fee must clear the USD floor."""
    fee = _to_int(request.monthly_fee, "monthly_fee")
    provider = state.run(lambda: state.engine.register_provider(caller, request.provider_id, fee))
    return _provider_json(provider)


@app.delete("/providers/{provider_id}", tags=["Providers"])
async def remove_provider(
    provider_id: int,
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    """Remove a provider and refund its balance to the owner."""
    refunded = state.run(lambda: state.engine.remove_provider(caller, provider_id))
    return {"provider_id": provider_id, "refunded": str(refunded)}


@app.put("/providers/{provider_id}/fee", tags=["Providers"])
async def set_provider_fee(
    provider_id: int,
    request: ProviderFeeRequest,
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    fee = _to_int(request.monthly_fee, "monthly_fee")
    provider = state.run(lambda: state.engine.set_provider_fee(caller, provider_id, fee))
    return _provider_json(provider)


@app.post("/providers/{provider_id}/withdraw", tags=["Providers"])
async def withdraw_earnings(
    provider_id: int,
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    withdrawal = state.run(lambda: state.engine.withdraw_earnings(caller, provider_id))
    return {
        "provider_id": withdrawal.provider_id,
        "owner": withdrawal.owner,
        "amount": str(withdrawal.amount),
        "value_usd": str(withdrawal.value_usd) if withdrawal.value_usd is not None else None,
    }


@app.put("/providers/{provider_id}/state", tags=["Admin"])
async def update_provider_state(
    provider_id: int,
    request: ProviderStateRequest,
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    provider = state.run(
        lambda: state.engine.update_provider_state(caller, provider_id, request.active)
    )
    return _provider_json(provider)


@app.get("/providers/{provider_id}", tags=["Providers"])
async def get_provider_state(
    provider_id: int,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return _provider_json(state.engine.get_provider_state(provider_id))


@app.get("/providers/{provider_id}/earnings", tags=["Providers"])
async def get_provider_earnings(
    provider_id: int,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    earnings = state.engine.get_provider_earnings(provider_id)
    return {"provider_id": provider_id, "earnings": str(earnings)}


@app.post("/subscriptions", tags=["Subscriptions"])
async def subscribe(
    request: SubscribeRequest,
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    """Subscribe to a provider; the deposit buys deposit // fee_per_second seconds."""
    deposit = _to_int(request.deposit, "deposit")
    due_date = state.run(
        lambda: state.engine.subscribe(caller, request.subscriber_id, request.provider_id, deposit)
    )
    return {
        "subscriber_id": request.subscriber_id,
        "provider_id": request.provider_id,
        "due_date": due_date,
    }


@app.post("/subscriptions/increase", tags=["Subscriptions"])
async def increase_subscription_deposit(
    request: IncreaseDepositRequest,
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    amount = _to_int(request.amount, "amount")
    due_date = state.run(
        lambda: state.engine.increase_subscription_deposit(
            caller, request.subscriber_id, request.provider_id, amount
        )
    )
    return {
        "subscriber_id": request.subscriber_id,
        "provider_id": request.provider_id,
        "due_date": due_date,
    }


@app.get("/subscriptions/{subscriber_id}/{provider_id}/status", tags=["Subscriptions"])
async def check_subscription_status(
    subscriber_id: int,
    provider_id: int,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    active = state.engine.check_subscription_status(subscriber_id, provider_id)
    return {"subscriber_id": subscriber_id, "provider_id": provider_id, "active": active}


@app.get("/subscribers/{subscriber_id}", tags=["Subscriptions"])
async def get_subscriber_state(
    subscriber_id: int,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return _subscriber_json(state.engine.get_subscriber_state(subscriber_id))


@app.get("/subscribers/{subscriber_id}/balance", tags=["Subscriptions"])
async def get_subscriber_balance(
    subscriber_id: int,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    balance = state.engine.get_subscriber_balance(subscriber_id)
    return {"subscriber_id": subscriber_id, "balance": str(balance)}


@app.get("/subscribers/{subscriber_id}/deposit-value", tags=["Subscriptions"])
async def get_subscriber_deposit_value(
    subscriber_id: int,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    value = state.engine.get_subscriber_deposit_value_usd(subscriber_id)
    return {"subscriber_id": subscriber_id, "value_usd": str(value)}


@app.post("/subscribers/{subscriber_id}/compact", tags=["Subscriptions"])
async def compact_subscriber(
    subscriber_id: int,
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    """Drop memberships that point at removed providers."""
    dropped = state.run(lambda: state.engine.compact_subscriber(caller, subscriber_id))
    return {"subscriber_id": subscriber_id, "dropped": dropped}


@app.post("/admin/disable-upgrades", tags=["Admin"])
async def disable_upgrades(
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    """Permanently block future implementation upgrades."""
    state.run(lambda: state.engine.disable_upgrades(caller))
    return {"upgrades_disabled": True}


@app.post("/admin/upgrade", tags=["Admin"])
async def upgrade_implementation(
    request: UpgradeRequest,
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    version = state.run(lambda: state.engine.upgrade_implementation(caller, request.version))
    return {"implementation_version": version}


@app.get("/admin/upgrades", tags=["Admin"])
async def get_upgrade_history(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Accepted implementation upgrades, oldest first."""
    return {
        "implementation_version": state.engine.upgrades.implementation_version,
        "upgrades_disabled": state.engine.upgrades.disabled,
        "history": state.engine.upgrade_history(),
    }


@app.post("/custody/fund", tags=["Admin"])
async def fund_account(
    request: FundRequest,
    state: AppState = Depends(get_state),
    caller: str = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    amount = _to_int(request.amount, "amount")
    balance = state.run(lambda: state.engine.fund_account(caller, request.account, amount))
    return {"account": request.account, "balance": str(balance)}


@app.get("/custody/{account}", tags=["Admin"])
async def get_wallet_balance(
    account: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return {"account": account, "balance": str(state.engine.wallet_balance(account))}


@app.get("/events", tags=["Audit"])
async def get_events(
    event_type: Optional[str] = None,
    limit: int = Query(100, ge=0),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Query the event journal."""
    selected = None
    if event_type:
        try:
            selected = EventType(event_type)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid event type: {event_type}")

    events = state.engine.journal.filter(selected, limit=limit)
    return {
        "total": len(events),
        "events": [e.to_dict() for e in events],
    }


@app.get("/events/verify", tags=["Audit"])
async def verify_event_chain(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Verify hash linkage and signatures of the journal."""
    is_valid, error = state.engine.journal.verify_chain_integrity()
    return {
        "valid": is_valid,
        "error": error,
        "chain_length": len(state.engine.journal.events),
        "head_hash": state.engine.journal.head_hash,
    }


@app.get("/public-key", tags=["Audit"])
async def get_public_key(state: AppState = Depends(get_state)):
    """Public key for verifying journal signatures."""
    signer = state.engine.journal.signer
    return {
        "key_id": signer.key_id,
        "algorithm": signer.algorithm.value,
        "public_key_pem": signer.get_public_key_pem(),
    }


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
