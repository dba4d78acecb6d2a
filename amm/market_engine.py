"""
Market engine. The external interface of the market maker.

Owns the market arena (markets by id), the fee ledger and the engine
configuration, and delegates to MarketLifecycle and TradingEngine. The
token ledger and the authorizer are injected collaborators.

Every mutating entry point runs inside _atomic():
  - Reentrancy: a call arriving on the thread that already holds the
    engine (e.g. from a token transfer hook) is rejected with
    ReentrantCall. Other threads wait for the lock.
  - Rollback: the token ledger, fee ledger, ID counters and the touched
    market are snapshotted first and restored in place if anything
    raises. A failed operation leaves no trace.

Privileged operations (create / validate / invalidate / resolve /
withdraw fees) consult the authorizer first.
"""

import copy
import dataclasses
import threading
import time
from contextlib import contextmanager
from typing import Callable, Optional

import structlog

from amm.auth import Action, Authorizer, RoleAuthorizer
from amm.config import EngineConfig
from amm.errors import (
    AMMError, InvariantViolation, MarketNotFound, ReentrantCall, Unauthorized,
)
from amm.fees import FeeLedger
from amm.lifecycle import MarketLifecycle
from amm.models import Market, Quote, Trade, _counters, reset_counters, set_counter
from amm.token_ledger import TokenLedger
from amm.trading import TradingEngine


log = structlog.get_logger(__name__)


def _system_clock() -> int:
    return int(time.time())


class MarketEngine:

    def __init__(self, ledger: TokenLedger,
                 authorizer: Optional[Authorizer] = None,
                 config: Optional[EngineConfig] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.ledger = ledger
        self.authorizer = authorizer or RoleAuthorizer()
        self.config = config or EngineConfig()
        self.clock = clock or _system_clock
        self.markets: dict[int, Market] = {}
        self.fees = FeeLedger()
        self.lifecycle = MarketLifecycle(
            ledger, self.fees, self.config, self.now)
        self.trading = TradingEngine(
            ledger, self.fees, self.lifecycle, self.config, self.now)
        self._mutex = threading.Lock()
        self._owner: Optional[int] = None

    def now(self) -> int:
        return self.clock()

    # ------------------------------------------------------------------
    # Market lifecycle
    # ------------------------------------------------------------------

    def create_market(self, caller: str, question: str,
                      description: str = "",
                      option_names: list[str] | None = None,
                      option_descs: list[str] | None = None,
                      duration: int = 7 * 24 * 3600,
                      category: str = "",
                      market_type: str = "categorical",
                      initial_liquidity: int = 0,
                      early_resolution_allowed: bool = False) -> Market:
        """
        Create a market seeded by the caller. Option names default to
        yes/no. The caller must have approved the pool for the seed.
        """
        self._require(caller, Action.CREATE_MARKET)
        with self._atomic("create_market"):
            market = self.lifecycle.create(
                creator=caller,
                question=question,
                option_names=(["yes", "no"] if option_names is None
                              else option_names),
                duration=duration,
                initial_liquidity=initial_liquidity,
                description=description,
                option_descs=option_descs,
                category=category,
                market_type=market_type,
                early_resolution_allowed=early_resolution_allowed,
            )
            self.markets[market.id] = market
        return market

    def validate_market(self, caller: str, market_id: int) -> None:
        self._require(caller, Action.VALIDATE_MARKET)
        with self._atomic("validate_market", market_id):
            self.lifecycle.validate(self.get_market(market_id))

    def invalidate_market(self, caller: str, market_id: int) -> int:
        """Invalidate a market. Returns the seed refunded to its creator."""
        self._require(caller, Action.INVALIDATE_MARKET)
        with self._atomic("invalidate_market", market_id):
            return self.lifecycle.invalidate(self.get_market(market_id))

    def resolve_market(self, caller: str, market_id: int,
                       winning_option: int) -> None:
        self._require(caller, Action.RESOLVE_MARKET)
        with self._atomic("resolve_market", market_id):
            self.lifecycle.resolve(self.get_market(market_id), winning_option)

    def claim_winnings(self, caller: str, market_id: int) -> int:
        """Pay the caller's winning shares. Returns the payout."""
        with self._atomic("claim_winnings", market_id):
            return self.lifecycle.claim(self.get_market(market_id), caller)

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def buy_shares(self, caller: str, market_id: int, option_id: int,
                   quantity: int, max_price_per_share: Optional[int] = None,
                   max_total_cost: Optional[int] = None) -> Trade:
        """Buy shares. trade.total_amount is what the caller paid."""
        with self._atomic("buy_shares", market_id):
            return self.trading.buy(
                self.get_market(market_id), caller, option_id, quantity,
                max_price_per_share=max_price_per_share,
                max_total_cost=max_total_cost)

    def sell_shares(self, caller: str, market_id: int, option_id: int,
                    quantity: int, min_price_per_share: Optional[int] = None,
                    min_total_proceeds: Optional[int] = None) -> Trade:
        """Sell shares. trade.total_amount is the caller's net proceeds."""
        with self._atomic("sell_shares", market_id):
            return self.trading.sell(
                self.get_market(market_id), caller, option_id, quantity,
                min_price_per_share=min_price_per_share,
                min_total_proceeds=min_total_proceeds)

    def quote_buy(self, market_id: int, option_id: int,
                  quantity: int) -> Quote:
        return self.trading.quote_buy(
            self.get_market(market_id), option_id, quantity)

    def quote_sell(self, market_id: int, option_id: int,
                   quantity: int) -> Quote:
        return self.trading.quote_sell(
            self.get_market(market_id), option_id, quantity)

    def current_price(self, market_id: int, option_id: int) -> int:
        return self.trading.current_price(self.get_market(market_id), option_id)

    def market_odds(self, market_id: int) -> list[int]:
        return self.trading.market_odds(self.get_market(market_id))

    # ------------------------------------------------------------------
    # Fees
    # ------------------------------------------------------------------

    def withdraw_fees(self, caller: str) -> int:
        """Send every unlocked fee to the configured collector."""
        self._require(caller, Action.WITHDRAW_FEES)
        with self._atomic("withdraw_fees"):
            amount = self.fees.withdraw()
            self.ledger.transfer(
                self.config.pool_address, self.config.fee_collector, amount,
                reason="fee_withdrawal")
        log.info("fees_withdrawn", collector=self.config.fee_collector,
                 amount=amount)
        return amount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_market(self, market_id: int) -> Market:
        market = self.markets.get(market_id)
        if market is None:
            raise MarketNotFound(f"market {market_id} not found")
        return market

    def position(self, market_id: int, address: str) -> list[int]:
        return list(self.get_market(market_id).position(address))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, caller: str, action: Action) -> None:
        if not self.authorizer.is_allowed(caller, action):
            raise Unauthorized(f"{caller} may not {action.value}",
                               caller=caller, action=action.value)

    @contextmanager
    def _atomic(self, op: str, market_id: Optional[int] = None):
        me = threading.get_ident()
        if self._owner == me:
            raise ReentrantCall(f"{op} called while another operation is in flight")

        with self._mutex:
            self._owner = me
            ledger_snap = self.ledger.snapshot()
            fee_entries = copy.deepcopy(self.fees.entries)
            fees_withdrawn = self.fees.total_withdrawn
            counters = dict(_counters)
            market_ids = set(self.markets)
            market = self.markets.get(market_id) if market_id is not None else None
            market_snap = copy.deepcopy(market)
            try:
                yield
            except Exception as exc:
                self.ledger.restore(ledger_snap)
                self.fees.entries = fee_entries
                self.fees.total_withdrawn = fees_withdrawn
                reset_counters()
                for kind, value in counters.items():
                    set_counter(kind, value)
                for new_id in set(self.markets) - market_ids:
                    del self.markets[new_id]
                if market is not None:
                    for f in dataclasses.fields(market):
                        setattr(market, f.name, getattr(market_snap, f.name))
                if isinstance(exc, InvariantViolation):
                    log.error("invariant_violation", op=op,
                              market_id=market_id, message=exc.message)
                elif isinstance(exc, AMMError):
                    log.warning("operation_rejected", op=op,
                                market_id=market_id, code=exc.code,
                                message=exc.message)
                raise
            finally:
                self._owner = None
