"""
FastAPI application. HTTP API for binary prediction markets.

Public endpoints (no auth): health, markets, market detail, positions, events.
User endpoints (API key): /me, create market, initialize, buy, sell,
resolve, redeem.
Admin endpoints (admin key): create account, mint, create market for an owner.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from binmarket.api_errors import APIError, api_error_handler, translate_engine_error
from binmarket.api_models import (
    RegisterRequest, RegisterResponse,
    AccountResponse, TransactionResponse,
    MarketSummary, MarketDetail, PositionEntry, EventResponse,
    CreateMarketRequest, AdminCreateMarketRequest, CreateMarketResponse,
    InitializeRequest, BuyRequest, SellRequest, ResolveRequest,
    CreateAccountRequest, CreateAccountResponse,
    MintRequest, MintResponse,
    HealthResponse,
)
from binmarket.auth import AuthStore
from binmarket.engine import MarketEngine
from binmarket.errors import MarketError
from binmarket.logging_config import setup_logging
from binmarket.middleware import AuthUser, AdminDep, RequestLogMiddleware
from binmarket.models import Event, Side, reset_counters
from binmarket.persistence import save_snapshot, load_snapshot
from binmarket.registry import MarketRegistry


STATE_PATH = os.environ.get("BINMARKET_STATE", "./binmarket_state.json")
INITIAL_COLLATERAL = int(os.environ.get("INITIAL_COLLATERAL", "1000"))

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if os.path.exists(STATE_PATH):
        registry, auth_store = load_snapshot(STATE_PATH)
        logger.info("loaded state from %s: %d markets",
                    STATE_PATH, registry.market_count())
    else:
        reset_counters()
        registry = MarketRegistry()
        auth_store = AuthStore()

    app.state.registry = registry
    app.state.auth_store = auth_store
    app.state.lock = asyncio.Lock()
    yield


app = FastAPI(title="Binary Market API", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)
app.add_middleware(RequestLogMiddleware)


def _save():
    """Save state to disk. Called after every mutation."""
    save_snapshot(app.state.registry, STATE_PATH,
                  auth_store=app.state.auth_store)


def _parse_amount(value: str, name: str) -> int:
    """Decimal-integer string -> non-negative int."""
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise APIError(400, "invalid_amount", f"Invalid {name}: {value}")
    if amount < 0:
        raise APIError(400, "invalid_amount", f"{name} must not be negative")
    return amount


def _parse_side(value: str) -> Side:
    try:
        return Side.parse(value)
    except ValueError as e:
        raise APIError(400, "invalid_side", str(e))


def _get_engine(market_id: int) -> MarketEngine:
    try:
        return app.state.registry.get(market_id)
    except MarketError as e:
        raise translate_engine_error(e)


def _summary_fields(engine: MarketEngine) -> dict:
    m = engine.market
    return dict(
        market_id=m.id,
        owner=m.owner,
        question=m.question,
        state=m.state.value,
        outcome=m.winning_side.value if m.winning_side else None,
        yes_pool=str(m.yes_pool),
        no_pool=str(m.no_pool),
        collateral_reserve=str(engine.collateral_reserve),
        created_at=m.created_at,
    )


def _event_response(event: Event) -> EventResponse:
    return EventResponse(
        event_id=event.id,
        kind=event.kind,
        market_id=event.market_id,
        account_id=event.account_id,
        data={k: str(v) for k, v in event.data.items()},
        created_at=event.created_at,
    )


async def _mutate(market_id: int, operation) -> EventResponse:
    """Run one engine call under the state lock, save, return its event."""
    async with app.state.lock:
        engine = _get_engine(market_id)
        try:
            event = operation(engine)
        except MarketError as e:
            raise translate_engine_error(e)
        _save()
    return _event_response(event)


# ---------------------------------------------------------------------------
# Health (public)
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        markets=app.state.registry.market_count(),
        accounts=len(app.state.registry.collateral.accounts),
    )


# ---------------------------------------------------------------------------
# Auth (no API key required)
# ---------------------------------------------------------------------------

@app.post("/v1/auth/register")
async def auth_register(req: RegisterRequest) -> RegisterResponse:
    """Register with a username. The new account gets INITIAL_COLLATERAL."""
    username = req.username.strip()
    if not username or len(username) > 40:
        raise APIError(400, "invalid_username",
                       "Username must be 1-40 characters")

    async with app.state.lock:
        auth_store = app.state.auth_store
        if username in auth_store.users:
            raise APIError(409, "username_taken",
                           f"Username '{username}' is already taken")
        acc = app.state.registry.collateral.create_account(
            balance=INITIAL_COLLATERAL)
        user, raw_key = auth_store.register_user(username, acc.id)
        _save()

    return RegisterResponse(
        api_key=raw_key,
        account_id=user.account_id,
        username=username,
    )


@app.post("/v1/auth/rotate")
async def auth_rotate(user: AuthUser) -> RegisterResponse:
    """Replace the caller's API key. The key used for this call stops working."""
    async with app.state.lock:
        user, raw_key = app.state.auth_store.rotate_key(user.username)
        _save()
    return RegisterResponse(
        api_key=raw_key,
        account_id=user.account_id,
        username=user.username,
    )


# ---------------------------------------------------------------------------
# Public market data (no auth required)
# ---------------------------------------------------------------------------

@app.get("/v1/markets")
async def list_markets(
    state: str | None = None,
    owner: int | None = None,
) -> list[MarketSummary]:
    """List all markets in creation order.

    Optional filters:
    - state: exact match ("uninitialized", "open", "resolved")
    - owner: owner account id
    """
    result = []
    for engine in app.state.registry.markets.values():
        if state is not None and engine.state.value != state:
            continue
        if owner is not None and engine.owner != owner:
            continue
        result.append(MarketSummary(**_summary_fields(engine)))
    return result


@app.get("/v1/markets/{market_id}")
async def get_market(market_id: int) -> MarketDetail:
    engine = _get_engine(market_id)
    m = engine.market
    return MarketDetail(
        **_summary_fields(engine),
        description=m.description,
        custody_account_id=m.custody_account_id,
        total_yes_supply=str(m.total_yes_supply),
        total_no_supply=str(m.total_no_supply),
        num_events=len(m.events),
        resolved_at=m.resolved_at,
    )


@app.get("/v1/markets/{market_id}/positions")
async def get_market_positions(market_id: int) -> list[PositionEntry]:
    """All non-zero share balances in a market."""
    engine = _get_engine(market_id)
    return [
        PositionEntry(account_id=acc_id,
                      positions={s: str(v) for s, v in pos.items()})
        for acc_id, pos in engine.holders().items()
    ]


@app.get("/v1/markets/{market_id}/events")
async def get_market_events(market_id: int,
                            since: int = 0) -> list[EventResponse]:
    """Events with id > since, oldest first."""
    engine = _get_engine(market_id)
    return [_event_response(e) for e in engine.events_since(since)]


# ---------------------------------------------------------------------------
# User endpoints (API key required)
# ---------------------------------------------------------------------------

@app.get("/v1/me")
async def get_me(user: AuthUser) -> AccountResponse:
    """Authenticated user's collateral balance and share positions."""
    registry = app.state.registry
    positions = {}
    for engine in registry.markets.values():
        pos = engine.holders().get(user.account_id)
        if pos:
            positions[engine.id] = {s: str(v) for s, v in pos.items()}
    return AccountResponse(
        account_id=user.account_id,
        balance=str(registry.collateral.balance_of(user.account_id)),
        positions=positions,
    )


@app.get("/v1/me/transactions")
async def get_my_transactions(
    user: AuthUser,
    market_id: int | None = None,
) -> list[TransactionResponse]:
    """The caller's collateral ledger entries, oldest first."""
    txs = app.state.registry.collateral.transactions_for(
        user.account_id, market_id=market_id)
    return [
        TransactionResponse(
            tx_id=tx.id,
            delta=str(tx.delta),
            reason=tx.reason,
            market_id=tx.market_id,
            counterparty_id=tx.counterparty_id,
            created_at=tx.created_at,
        )
        for tx in txs
    ]


@app.post("/v1/markets")
async def create_market(req: CreateMarketRequest,
                        user: AuthUser) -> CreateMarketResponse:
    """Create a market owned by the caller."""
    async with app.state.lock:
        engine = app.state.registry.create_market(
            user.account_id, req.question, req.description)
        _save()
    return CreateMarketResponse(
        market_id=engine.id,
        owner=engine.owner,
        custody_account_id=engine.market.custody_account_id,
    )


@app.post("/v1/markets/{market_id}/initialize")
async def initialize_market(market_id: int, req: InitializeRequest,
                            user: AuthUser) -> EventResponse:
    deposit = _parse_amount(req.deposit, "deposit")
    return await _mutate(market_id, lambda e: e.initialize_market(
        user.account_id, deposit))


@app.post("/v1/markets/{market_id}/buy")
async def buy(market_id: int, req: BuyRequest, user: AuthUser) -> EventResponse:
    side = _parse_side(req.side)
    payment = _parse_amount(req.payment, "payment")
    min_out = _parse_amount(req.min_out, "min_out")
    return await _mutate(market_id, lambda e: e.buy(
        user.account_id, side, payment, min_out))


@app.post("/v1/markets/{market_id}/sell")
async def sell(market_id: int, req: SellRequest, user: AuthUser) -> EventResponse:
    side = _parse_side(req.side)
    shares = _parse_amount(req.shares, "shares")
    min_payment_out = _parse_amount(req.min_payment_out, "min_payment_out")
    return await _mutate(market_id, lambda e: e.sell(
        user.account_id, side, shares, min_payment_out))


@app.post("/v1/markets/{market_id}/resolve")
async def resolve(market_id: int, req: ResolveRequest,
                  user: AuthUser) -> EventResponse:
    """Resolve a market. Only its owner may do this."""
    side = _parse_side(req.outcome)
    return await _mutate(market_id, lambda e: e.resolve_market(
        user.account_id, side is Side.YES))


@app.post("/v1/markets/{market_id}/redeem")
async def redeem(market_id: int, user: AuthUser) -> EventResponse:
    return await _mutate(market_id, lambda e: e.redeem(user.account_id))


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/admin/accounts")
async def admin_create_account(_: AdminDep,
                               req: CreateAccountRequest | None = None,
                               ) -> CreateAccountResponse:
    """Create a bare collateral account (no API key)."""
    req = req or CreateAccountRequest()
    async with app.state.lock:
        acc = app.state.registry.collateral.create_account(
            accepts_payments=req.accepts_payments)
        _save()
    return CreateAccountResponse(account_id=acc.id)


@app.post("/v1/admin/mint")
async def admin_mint(req: MintRequest, _: AdminDep) -> MintResponse:
    """Mint collateral to an account."""
    amount = _parse_amount(req.amount, "amount")
    collateral = app.state.registry.collateral

    async with app.state.lock:
        try:
            collateral.mint(req.account_id, amount)
        except MarketError as e:
            raise translate_engine_error(e)
        _save()

    return MintResponse(account_id=req.account_id,
                        balance=str(collateral.balance_of(req.account_id)))


@app.post("/v1/admin/markets")
async def admin_create_market(req: AdminCreateMarketRequest,
                              _: AdminDep) -> CreateMarketResponse:
    """Create a market on behalf of `owner`."""
    async with app.state.lock:
        try:
            engine = app.state.registry.create_market(
                req.owner, req.question, req.description)
        except MarketError as e:
            raise translate_engine_error(e)
        _save()
    return CreateMarketResponse(
        market_id=engine.id,
        owner=engine.owner,
        custody_account_id=engine.market.custody_account_id,
    )
