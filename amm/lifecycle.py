"""
Market lifecycle. Creation, validation, invalidation, resolution and claims.

    created --validate--> validated --resolve--> resolved --claim--> ...
       |                     |
       +-----invalidate------+--> invalidated

Trading is open only while a market is validated and inside its window
[trading_start, trading_end). Resolution is allowed once the window has
ended, or for early-resolution markets once the cool-down since creation
has passed. Invalidation refunds the creator's seed and blocks trading and
claims for good.

Token movements go through the ledger; the pool address holds every
market's seed, trader payments and fees.
"""

from typing import Callable

import structlog

from amm import lmsr, pricing
from amm.config import EngineConfig
from amm.errors import (
    AlreadyClaimed, AlreadyValidated, InsufficientLiquidity, InvalidArgument,
    InvalidDuration, InvalidOption, InvalidOptionCount, LengthMismatch,
    MarketAlreadyResolved, MarketInvalidated, MarketNotResolved,
    MarketNotValidated, NoWinningShares, ResolutionTooEarly, TradingClosed,
)
from amm.fees import FeeLedger
from amm.fixed_point import mul_down
from amm.models import Market, MarketStatus, Option, next_id
from amm.token_ledger import TokenLedger


log = structlog.get_logger(__name__)


class MarketLifecycle:

    def __init__(self, ledger: TokenLedger, fees: FeeLedger,
                 config: EngineConfig, clock: Callable[[], int]):
        self.ledger = ledger
        self.fees = fees
        self.config = config
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, creator: str, question: str, option_names: list[str],
               duration: int, initial_liquidity: int,
               description: str = "",
               option_descs: list[str] | None = None,
               category: str = "", market_type: str = "categorical",
               early_resolution_allowed: bool = False) -> Market:
        """
        Create a market seeded with `initial_liquidity` tokens pulled from
        the creator. b is sized from the seed and never changes afterwards.
        """
        n = len(option_names)
        if not lmsr.MIN_OPTIONS <= n <= lmsr.MAX_OPTIONS:
            raise InvalidOptionCount(
                f"outcome count must be in [{lmsr.MIN_OPTIONS}, "
                f"{lmsr.MAX_OPTIONS}], got {n}")
        if any(not name.strip() for name in option_names):
            raise InvalidArgument("option names must be non-empty")
        if option_descs is None:
            option_descs = [""] * n
        if len(option_descs) != n:
            raise LengthMismatch(
                f"{n} option names but {len(option_descs)} descriptions")
        if not self.config.min_duration <= duration <= self.config.max_duration:
            raise InvalidDuration(
                f"duration must be in [{self.config.min_duration}, "
                f"{self.config.max_duration}] seconds, got {duration}")
        if initial_liquidity < self.config.min_initial_liquidity:
            raise InsufficientLiquidity(
                f"initial liquidity {initial_liquidity} below minimum "
                f"{self.config.min_initial_liquidity}")

        b = lmsr.compute_liquidity_param(
            initial_liquidity, n, self.config.payout_per_share,
            coverage_ratio=self.config.coverage_ratio)

        now = self.clock()
        market = Market(
            id=next_id("market"),
            creator=creator,
            question=question,
            description=description,
            category=category,
            market_type=market_type,
            options=[Option(name=name, description=desc)
                     for name, desc in zip(option_names, option_descs)],
            b=b,
            payout_per_share=self.config.payout_per_share,
            admin_liquidity=initial_liquidity,
            trading_start=now,
            trading_end=now + duration,
            created_at=now,
            early_resolution_allowed=early_resolution_allowed,
        )
        if not self.config.require_validation:
            market.status = MarketStatus.VALIDATED
        pricing.update_current_prices(market)

        self.ledger.transfer_from(
            self.config.pool_address, creator, self.config.pool_address,
            initial_liquidity, reason="seed_liquidity", market_id=market.id)
        self.fees.entry(market.id)

        log.info("market_created", market_id=market.id, creator=creator,
                 options=n, b=b, initial_liquidity=initial_liquidity,
                 trading_end=market.trading_end)
        return market

    # ------------------------------------------------------------------
    # State checks
    # ------------------------------------------------------------------

    def _check_not_terminal(self, market: Market) -> None:
        if market.is_invalidated:
            raise MarketInvalidated(f"market {market.id} is invalidated")
        if market.is_resolved:
            raise MarketAlreadyResolved(f"market {market.id} is resolved")

    def require_trading_open(self, market: Market) -> None:
        self._check_not_terminal(market)
        if not market.is_validated:
            raise MarketNotValidated(f"market {market.id} is not validated")
        now = self.clock()
        if not market.trading_start <= now < market.trading_end:
            raise TradingClosed(
                f"market {market.id} trades between {market.trading_start} "
                f"and {market.trading_end}, now {now}")

    def earliest_resolution(self, market: Market) -> int:
        if market.early_resolution_allowed:
            return min(market.trading_end,
                       market.created_at + self.config.early_resolution_cooldown)
        return market.trading_end

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def validate(self, market: Market) -> None:
        self._check_not_terminal(market)
        if market.is_validated:
            raise AlreadyValidated(f"market {market.id} is already validated")
        market.status = MarketStatus.VALIDATED
        log.info("market_validated", market_id=market.id)

    def invalidate(self, market: Market) -> int:
        """Invalidate before resolution. Refunds the creator's seed."""
        self._check_not_terminal(market)
        refund = market.admin_liquidity
        self.ledger.transfer(
            self.config.pool_address, market.creator, refund,
            reason="liquidity_refund", market_id=market.id)
        market.status = MarketStatus.INVALIDATED
        for option in market.options:
            option.active = False
        market.liquidity_refunded = True
        log.info("market_invalidated", market_id=market.id, refund=refund)
        return refund

    def resolve(self, market: Market, winning_option: int) -> None:
        """Resolve once. Unlocks the market's fees; only the winner stays active."""
        self._check_not_terminal(market)
        if not market.is_validated:
            raise MarketNotValidated(f"market {market.id} is not validated")
        if not market.has_option(winning_option):
            raise InvalidOption(
                f"market {market.id} has no option {winning_option}",
                option_id=winning_option)
        now = self.clock()
        earliest = self.earliest_resolution(market)
        if now < earliest:
            raise ResolutionTooEarly(
                f"market {market.id} can be resolved from {earliest}, now {now}",
                earliest=earliest)

        market.status = MarketStatus.RESOLVED
        market.winning_option = winning_option
        market.resolved_at = now
        for i, option in enumerate(market.options):
            option.active = i == winning_option
        self.fees.unlock(market.id)
        log.info("market_resolved", market_id=market.id,
                 winning_option=winning_option)

    def claim(self, market: Market, user: str) -> int:
        """Pay winning shares * payout_per_share, exactly once per user."""
        if market.is_invalidated:
            raise MarketInvalidated(f"market {market.id} is invalidated")
        if not market.is_resolved:
            raise MarketNotResolved(f"market {market.id} is not resolved")
        if user in market.claimed:
            raise AlreadyClaimed(
                f"{user} already claimed from market {market.id}")

        winning_shares = market.position(user)[market.winning_option]
        if winning_shares == 0:
            raise NoWinningShares(
                f"{user} holds no winning shares in market {market.id}")

        payout = mul_down(winning_shares, market.payout_per_share)
        self.ledger.transfer(
            self.config.pool_address, user, payout,
            reason="claim", market_id=market.id)
        market.positions[user] = [0] * market.option_count
        market.claimed[user] = payout
        log.info("winnings_claimed", market_id=market.id, user=user,
                 shares=winning_shares, payout=payout)
        return payout
