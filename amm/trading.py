"""
Trading engine. Quotes and executes buys and sells against the AMM.

Buy and sell share one cost-delta path (amm.pricing), so an immediate
buy-then-sell loses roughly twice the fee rate on the notional.

Order of work for every trade:
  1. checks  : market open, option, quantity, holdings
  2. compute : cost delta, fee, slippage bounds, new price vector
               (validated), solvency of the post-trade state
  3. interact: pull payment / push proceeds through the token ledger
  4. effects : shares, position, liquidity, fees, prices, trade record

Nothing is written before step 4, so a rejection at any earlier step
leaves the market untouched.

Solvency: max_i(q_i) * payout_per_share <= admin_liquidity + user_liquidity.
Only one outcome can win, so the largest outstanding share count is the
most the market can ever owe.
"""

from typing import Callable, Optional

import structlog

from amm import pricing
from amm.config import EngineConfig
from amm.errors import (
    InsolventTrade, InsufficientShares, InvalidOption, InvalidQuantity,
    PriceTooLow, SlippageExceeded,
)
from amm.fees import FeeLedger, fee_for
from amm.fixed_point import SCALE, div_down, mul_up
from amm.lifecycle import MarketLifecycle
from amm.models import Market, Quote, Side, Trade, next_id
from amm.token_ledger import TokenLedger


log = structlog.get_logger(__name__)


def liability(market: Market, shares: list[int]) -> int:
    """Most the market can owe: the largest outstanding share count, in tokens."""
    return mul_up(max(shares), market.payout_per_share)


def check_solvency(market: Market, shares: list[int],
                   user_liquidity: int) -> None:
    owed = liability(market, shares)
    available = market.admin_liquidity + user_liquidity
    if owed > available:
        raise InsolventTrade(
            f"market {market.id} would owe {owed} with only {available} "
            f"available",
            liability=owed, available=available)


def require_active_option(market: Market, option_id: int) -> None:
    if not market.has_option(option_id):
        raise InvalidOption(
            f"market {market.id} has no option {option_id}",
            option_id=option_id)
    if not market.options[option_id].active:
        raise InvalidOption(
            f"option {option_id} of market {market.id} is not trading",
            option_id=option_id)


class TradingEngine:

    def __init__(self, ledger: TokenLedger, fees: FeeLedger,
                 lifecycle: MarketLifecycle, config: EngineConfig,
                 clock: Callable[[], int]):
        self.ledger = ledger
        self.fees = fees
        self.lifecycle = lifecycle
        self.config = config
        self.clock = clock

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def _buy_quote(self, market: Market, option_id: int,
                   quantity: int) -> tuple[Quote, list[int]]:
        delta, after = pricing.compute_buy_delta(market, option_id, quantity)
        raw = pricing.to_tokens(market, delta, round_up=True)
        fee = fee_for(raw, self.config.fee_rate_bps)
        total = raw + fee
        return Quote(raw, fee, total, div_down(total, quantity)), after

    def _sell_quote(self, market: Market, option_id: int,
                    quantity: int) -> tuple[Quote, list[int]]:
        delta, after = pricing.compute_sell_delta(market, option_id, quantity)
        raw = pricing.to_tokens(market, delta, round_up=False)
        fee = fee_for(raw, self.config.fee_rate_bps)
        net = raw - fee
        return Quote(raw, fee, net, div_down(net, quantity)), after

    def quote_buy(self, market: Market, option_id: int,
                  quantity: int) -> Quote:
        return self._buy_quote(market, option_id, quantity)[0]

    def quote_sell(self, market: Market, option_id: int,
                   quantity: int) -> Quote:
        return self._sell_quote(market, option_id, quantity)[0]

    def current_price(self, market: Market, option_id: int) -> int:
        if not market.has_option(option_id):
            raise InvalidOption(
                f"market {market.id} has no option {option_id}",
                option_id=option_id)
        return market.options[option_id].price

    def market_odds(self, market: Market) -> list[int]:
        return market.prices

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def buy(self, market: Market, trader: str, option_id: int,
            quantity: int, max_price_per_share: Optional[int] = None,
            max_total_cost: Optional[int] = None) -> Trade:
        """
        Buy `quantity` shares of `option_id`. None bounds are unbounded.
        Pulls raw cost + fee from the trader via transfer_from.
        """
        self.lifecycle.require_trading_open(market)
        if quantity <= 0:
            raise InvalidQuantity("quantity must be positive", quantity=quantity)
        require_active_option(market, option_id)

        quote, after = self._buy_quote(market, option_id, quantity)
        if quote.raw_amount == 0:
            raise PriceTooLow(
                f"buying {quantity} shares of option {option_id} costs nothing",
                quantity=quantity)
        if (max_price_per_share is not None
                and quote.total_amount * SCALE > max_price_per_share * quantity):
            raise SlippageExceeded(
                f"average price {quote.avg_price} above limit "
                f"{max_price_per_share}",
                avg_price=quote.avg_price, limit=max_price_per_share)
        if max_total_cost is not None and quote.total_amount > max_total_cost:
            raise SlippageExceeded(
                f"total cost {quote.total_amount} above limit {max_total_cost}",
                total=quote.total_amount, limit=max_total_cost)

        new_prices = pricing.compute_prices(market, after)
        user_liquidity = market.user_liquidity + quote.raw_amount
        check_solvency(market, after, user_liquidity)

        self.ledger.transfer_from(
            self.config.pool_address, trader, self.config.pool_address,
            quote.total_amount, reason="buy", market_id=market.id)

        return self._commit(market, trader, option_id, Side.BUY, quantity,
                            quote, after, new_prices, user_liquidity)

    def sell(self, market: Market, trader: str, option_id: int,
             quantity: int, min_price_per_share: Optional[int] = None,
             min_total_proceeds: Optional[int] = None) -> Trade:
        """
        Sell `quantity` shares of `option_id` back to the AMM.
        Dust sells whose proceeds round to zero are rejected.
        """
        self.lifecycle.require_trading_open(market)
        if quantity <= 0:
            raise InvalidQuantity("quantity must be positive", quantity=quantity)
        require_active_option(market, option_id)
        held = market.position(trader)[option_id]
        if held < quantity:
            raise InsufficientShares(
                f"{trader} can't sell {quantity} of option {option_id}, "
                f"only holds {held}",
                held=held, quantity=quantity)

        quote, after = self._sell_quote(market, option_id, quantity)
        if quote.total_amount <= 0:
            raise PriceTooLow(
                f"selling {quantity} shares of option {option_id} yields "
                f"no proceeds",
                quantity=quantity, raw_amount=quote.raw_amount)
        if (min_price_per_share is not None
                and quote.total_amount * SCALE < min_price_per_share * quantity):
            raise SlippageExceeded(
                f"average price {quote.avg_price} below limit "
                f"{min_price_per_share}",
                avg_price=quote.avg_price, limit=min_price_per_share)
        if (min_total_proceeds is not None
                and quote.total_amount < min_total_proceeds):
            raise SlippageExceeded(
                f"proceeds {quote.total_amount} below limit "
                f"{min_total_proceeds}",
                total=quote.total_amount, limit=min_total_proceeds)

        new_prices = pricing.compute_prices(market, after)
        user_liquidity = market.user_liquidity - quote.raw_amount
        check_solvency(market, after, user_liquidity)

        self.ledger.transfer(
            self.config.pool_address, trader, quote.total_amount,
            reason="sell", market_id=market.id)

        return self._commit(market, trader, option_id, Side.SELL, quantity,
                            quote, after, new_prices, user_liquidity)

    def _commit(self, market: Market, trader: str, option_id: int,
                side: Side, quantity: int, quote: Quote, shares: list[int],
                prices: list[int], user_liquidity: int) -> Trade:
        for option, q in zip(market.options, shares):
            option.shares = q
        position = market.positions.setdefault(
            trader, [0] * market.option_count)
        position[option_id] += quantity if side == Side.BUY else -quantity
        market.user_liquidity = user_liquidity
        self.fees.accrue(market.id, quote.fee)
        pricing.commit_prices(market.options, prices)

        trade = Trade(
            id=next_id("trade"),
            market_id=market.id,
            trader=trader,
            option_id=option_id,
            side=side,
            quantity=quantity,
            raw_amount=quote.raw_amount,
            fee=quote.fee,
            total_amount=quote.total_amount,
            avg_price=quote.avg_price,
            created_at=self.clock(),
        )
        market.trades.append(trade)

        log.info("trade_executed", market_id=market.id, trade_id=trade.id,
                 trader=trader, side=side.value, option_id=option_id,
                 quantity=quantity, total=quote.total_amount, fee=quote.fee)
        return trade
