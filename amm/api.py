"""
FastAPI application. HTTP surface of the LMSR market maker.

Public endpoints (no auth): health, markets, market detail, odds, price,
quotes, positions, trades.
User endpoints (API key): /me, buy, sell, claim.
Admin endpoints (operator key, or a user key holding the capability): mint,
create, validate, invalidate, resolve, fee withdrawal.

Every mutation runs under app.state.lock and is persisted afterwards.
"""

import asyncio
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from amm.api_errors import APIError, api_error_handler, translate_engine_error
from amm.api_models import (
    RegisterRequest, RegisterResponse, AccountResponse,
    OptionResponse, MarketSummary, MarketDetail, OddsResponse, PriceResponse,
    QuoteResponse, PositionEntry, TradeResponse,
    BuyRequest, SellRequest, ClaimResponse,
    MintRequest, MintResponse, CreateMarketRequest, CreateMarketResponse,
    ResolveRequest, WithdrawFeesResponse, HealthResponse,
)
from amm.auth import AuthStore, RoleAuthorizer
from amm.config import ApiSettings, EngineConfig, configure_logging
from amm.errors import AMMError
from amm.fixed_point import format_wad, to_wad
from amm.market_engine import MarketEngine
from amm.middleware import (
    AuthUser, CanCreate, CanInvalidate, CanMint, CanResolve, CanValidate,
    CanWithdrawFees, RateLimiter,
)
from amm.models import Market, Trade, reset_counters
from amm.persistence import load_snapshot, save_snapshot
from amm.token_ledger import TokenLedger


# Users approve the pool once, at registration.
_UNLIMITED = 2 ** 255


def new_engine(ledger: TokenLedger | None = None) -> MarketEngine:
    config = EngineConfig.from_env()
    return MarketEngine(
        ledger or TokenLedger(),
        authorizer=RoleAuthorizer(admins={config.admin_address}),
        config=config,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = ApiSettings.from_env()
    if os.path.exists(settings.state_path):
        engine, auth_store = load_snapshot(settings.state_path, new_engine)
    else:
        reset_counters()
        engine = new_engine()
        auth_store = AuthStore()

    app.state.engine = engine
    app.state.auth_store = auth_store
    app.state.lock = asyncio.Lock()
    app.state.settings = settings
    app.state.rate_limiter = RateLimiter(settings.rate_limit_per_min)
    yield


app = FastAPI(title="LMSR AMM API", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)


def _save():
    """Save state to disk. Called after every mutation."""
    save_snapshot(app.state.engine, app.state.settings.state_path,
                  auth_store=app.state.auth_store)


def _wad(value: str | None, field: str) -> int | None:
    if value is None:
        return None
    try:
        return to_wad(value)
    except AMMError:
        raise APIError(400, "invalid_amount", f"Invalid {field}: {value}")


def _positive_wad(value: str, field: str) -> int:
    amount = _wad(value, field)
    if amount <= 0:
        raise APIError(400, "invalid_amount", f"{field} must be positive")
    return amount


def _market(market_id: int) -> Market:
    try:
        return app.state.engine.get_market(market_id)
    except AMMError as e:
        raise translate_engine_error(e)


def _options(m: Market) -> list[OptionResponse]:
    return [
        OptionResponse(
            option_id=i, name=o.name, description=o.description,
            shares=format_wad(o.shares), price=format_wad(o.price),
            active=o.active,
        )
        for i, o in enumerate(m.options)
    ]


def _summary_fields(m: Market) -> dict:
    return dict(
        market_id=m.id,
        question=m.question,
        category=m.category,
        status=m.status.value,
        options=_options(m),
        b=format_wad(m.b),
        num_trades=len(m.trades),
        winning_option=m.winning_option,
        trading_end=m.trading_end,
    )


def _trade_response(t: Trade) -> TradeResponse:
    return TradeResponse(
        trade_id=t.id,
        market_id=t.market_id,
        trader=t.trader,
        side=t.side.value,
        option_id=t.option_id,
        quantity=format_wad(t.quantity),
        raw_amount=format_wad(t.raw_amount),
        fee=format_wad(t.fee),
        total_amount=format_wad(t.total_amount),
        avg_price=format_wad(t.avg_price),
        created_at=t.created_at,
    )


# ---------------------------------------------------------------------------
# Health + registration (public)
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        markets=len(app.state.engine.markets),
        accounts=len(app.state.auth_store.users),
    )


@app.post("/v1/auth/register")
async def auth_register(req: RegisterRequest) -> RegisterResponse:
    """Register a username. Mints initial credits and approves the pool."""
    username = req.username.strip()
    if not username or len(username) > 40:
        raise APIError(400, "invalid_username",
                       "Username must be 1-40 characters")
    engine = app.state.engine
    reserved = {engine.config.admin_address, engine.config.pool_address,
                engine.config.fee_collector}
    if username in reserved:
        raise APIError(409, "username_taken",
                       f"Username '{username}' is reserved")

    async with app.state.lock:
        try:
            user, raw_key = app.state.auth_store.register_user(username)
        except ValueError:
            raise APIError(409, "username_taken",
                           f"Username '{username}' is already taken")
        credits = app.state.settings.initial_credits
        if credits > 0:
            engine.ledger.mint(user.address, credits)
        engine.ledger.approve(user.address, engine.config.pool_address,
                              _UNLIMITED)
        _save()

    return RegisterResponse(api_key=raw_key, address=user.address)


# ---------------------------------------------------------------------------
# Public market data (no auth required)
# ---------------------------------------------------------------------------

@app.get("/v1/markets")
async def list_markets(status: str | None = None,
                       category: str | None = None) -> list[MarketSummary]:
    """List all markets with current prices. Optional exact-match filters."""
    result = []
    for m in app.state.engine.markets.values():
        if status is not None and m.status.value != status:
            continue
        if category is not None and m.category != category:
            continue
        result.append(MarketSummary(**_summary_fields(m)))
    return result


@app.get("/v1/markets/{market_id}")
async def get_market(market_id: int) -> MarketDetail:
    m = _market(market_id)
    fees = app.state.engine.fees.entry(m.id)
    return MarketDetail(
        **_summary_fields(m),
        description=m.description,
        market_type=m.market_type,
        creator=m.creator,
        payout_per_share=format_wad(m.payout_per_share),
        admin_liquidity=format_wad(m.admin_liquidity),
        user_liquidity=format_wad(m.user_liquidity),
        fees_collected=format_wad(fees.collected),
        trading_start=m.trading_start,
        created_at=m.created_at,
        resolved_at=m.resolved_at,
        early_resolution_allowed=m.early_resolution_allowed,
    )


@app.get("/v1/markets/{market_id}/odds")
async def market_odds(market_id: int) -> OddsResponse:
    _market(market_id)
    prices = app.state.engine.market_odds(market_id)
    return OddsResponse(market_id=market_id,
                        prices=[format_wad(p) for p in prices])


@app.get("/v1/markets/{market_id}/options/{option_id}/price")
async def option_price(market_id: int, option_id: int) -> PriceResponse:
    _market(market_id)
    try:
        price = app.state.engine.current_price(market_id, option_id)
    except AMMError as e:
        raise translate_engine_error(e)
    return PriceResponse(market_id=market_id, option_id=option_id,
                         price=format_wad(price))


@app.get("/v1/markets/{market_id}/quote")
async def quote(market_id: int, side: str, option_id: int,
                quantity: str) -> QuoteResponse:
    """Quote a buy or sell without executing it."""
    if side not in ("buy", "sell"):
        raise APIError(400, "invalid_side", "side must be 'buy' or 'sell'")
    qty = _positive_wad(quantity, "quantity")
    _market(market_id)
    engine = app.state.engine
    try:
        if side == "buy":
            q = engine.quote_buy(market_id, option_id, qty)
        else:
            q = engine.quote_sell(market_id, option_id, qty)
    except AMMError as e:
        raise translate_engine_error(e)
    return QuoteResponse(
        side=side,
        option_id=option_id,
        quantity=format_wad(qty),
        raw_amount=format_wad(q.raw_amount),
        fee=format_wad(q.fee),
        total_amount=format_wad(q.total_amount),
        avg_price=format_wad(q.avg_price),
    )


@app.get("/v1/markets/{market_id}/positions")
async def get_market_positions(market_id: int) -> list[PositionEntry]:
    """All non-empty or claimed positions in a market."""
    m = _market(market_id)
    result = []
    for address, shares in m.positions.items():
        claimed = m.claimed.get(address)
        if claimed is None and not any(shares):
            continue
        result.append(PositionEntry(
            address=address,
            shares=[format_wad(s) for s in shares],
            claimed=format_wad(claimed) if claimed is not None else None,
        ))
    return result


@app.get("/v1/markets/{market_id}/trades")
async def get_market_trades(market_id: int) -> list[TradeResponse]:
    m = _market(market_id)
    return [_trade_response(t) for t in m.trades]


# ---------------------------------------------------------------------------
# User endpoints (API key required)
# ---------------------------------------------------------------------------

@app.get("/v1/me")
async def get_me(user: AuthUser) -> AccountResponse:
    engine = app.state.engine
    return AccountResponse(
        address=user.address,
        balance=format_wad(engine.ledger.balance_of(user.address)),
        allowance=format_wad(engine.ledger.allowance(
            user.address, engine.config.pool_address)),
    )


@app.post("/v1/markets/{market_id}/buy")
async def buy(market_id: int, req: BuyRequest, user: AuthUser) -> TradeResponse:
    quantity = _positive_wad(req.quantity, "quantity")
    max_price = _wad(req.max_price_per_share, "max_price_per_share")
    max_total = _wad(req.max_total_cost, "max_total_cost")

    async with app.state.lock:
        try:
            trade = app.state.engine.buy_shares(
                user.address, market_id, req.option_id, quantity,
                max_price_per_share=max_price, max_total_cost=max_total)
        except AMMError as e:
            raise translate_engine_error(e)
        _save()

    return _trade_response(trade)


@app.post("/v1/markets/{market_id}/sell")
async def sell(market_id: int, req: SellRequest,
               user: AuthUser) -> TradeResponse:
    quantity = _positive_wad(req.quantity, "quantity")
    min_price = _wad(req.min_price_per_share, "min_price_per_share")
    min_total = _wad(req.min_total_proceeds, "min_total_proceeds")

    async with app.state.lock:
        try:
            trade = app.state.engine.sell_shares(
                user.address, market_id, req.option_id, quantity,
                min_price_per_share=min_price, min_total_proceeds=min_total)
        except AMMError as e:
            raise translate_engine_error(e)
        _save()

    return _trade_response(trade)


@app.post("/v1/markets/{market_id}/claim")
async def claim(market_id: int, user: AuthUser) -> ClaimResponse:
    async with app.state.lock:
        try:
            payout = app.state.engine.claim_winnings(user.address, market_id)
        except AMMError as e:
            raise translate_engine_error(e)
        _save()

    return ClaimResponse(market_id=market_id, payout=format_wad(payout))


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/admin/mint")
async def admin_mint(req: MintRequest, _: CanMint) -> MintResponse:
    """Mint tokens to an address."""
    amount = _positive_wad(req.amount, "amount")
    ledger = app.state.engine.ledger
    async with app.state.lock:
        ledger.mint(req.address, amount)
        _save()
    return MintResponse(address=req.address,
                        balance=format_wad(ledger.balance_of(req.address)))


@app.post("/v1/admin/markets")
async def admin_create_market(req: CreateMarketRequest,
                              caller: CanCreate) -> CreateMarketResponse:
    """Create a market seeded from the caller's balance."""
    liquidity = _positive_wad(req.initial_liquidity, "initial_liquidity")
    engine = app.state.engine

    pool = engine.config.pool_address
    async with app.state.lock:
        # Approve exactly the seed for this call, then put back whatever
        # allowance the caller had before.
        previous = engine.ledger.allowance(caller, pool)
        engine.ledger.approve(caller, pool, liquidity)
        try:
            market = engine.create_market(
                caller,
                question=req.question,
                description=req.description,
                option_names=req.option_names,
                option_descs=req.option_descs,
                duration=req.duration,
                category=req.category,
                market_type=req.market_type,
                initial_liquidity=liquidity,
                early_resolution_allowed=req.early_resolution_allowed,
            )
        except AMMError as e:
            raise translate_engine_error(e)
        finally:
            engine.ledger.approve(caller, pool, previous)
        _save()

    return CreateMarketResponse(
        market_id=market.id,
        b=format_wad(market.b),
        prices=[format_wad(p) for p in market.prices],
    )


@app.post("/v1/admin/markets/{market_id}/validate")
async def admin_validate(market_id: int, caller: CanValidate) -> dict:
    async with app.state.lock:
        try:
            app.state.engine.validate_market(caller, market_id)
        except AMMError as e:
            raise translate_engine_error(e)
        _save()
    return {"market_id": market_id, "status": "validated"}


@app.post("/v1/admin/markets/{market_id}/invalidate")
async def admin_invalidate(market_id: int, caller: CanInvalidate) -> dict:
    async with app.state.lock:
        try:
            refund = app.state.engine.invalidate_market(caller, market_id)
        except AMMError as e:
            raise translate_engine_error(e)
        _save()
    return {"market_id": market_id, "status": "invalidated",
            "refund": format_wad(refund)}


@app.post("/v1/admin/markets/{market_id}/resolve")
async def admin_resolve(market_id: int, req: ResolveRequest,
                        caller: CanResolve) -> dict:
    async with app.state.lock:
        try:
            app.state.engine.resolve_market(
                caller, market_id, req.winning_option)
        except AMMError as e:
            raise translate_engine_error(e)
        _save()
    return {"market_id": market_id, "winning_option": req.winning_option}


@app.post("/v1/admin/fees/withdraw")
async def admin_withdraw_fees(caller: CanWithdrawFees) -> WithdrawFeesResponse:
    engine = app.state.engine
    async with app.state.lock:
        try:
            amount = engine.withdraw_fees(caller)
        except AMMError as e:
            raise translate_engine_error(e)
        _save()
    return WithdrawFeesResponse(collector=engine.config.fee_collector,
                                amount=format_wad(amount))
