"""
Market pricing. Turns a market's share vector into validated prices and
into buy/sell cost deltas.

Cost deltas are returned in cost units (wad shares of payout). to_tokens()
converts them using the market's payout per share; buys round up and
sells round down, so rounding always favors the AMM.

Price updates are all-or-nothing: the full vector is validated before any
Option record is written.
"""

from amm import lmsr
from amm.errors import (
    InsufficientShares, InvalidOption, InvalidQuantity, InvariantViolation,
    LengthMismatch,
)
from amm.fixed_point import SCALE, mul_down, mul_up
from amm.models import Market, Option


PRICE_SUM_TOLERANCE_PPM = 5
PRICE_UNIT = SCALE


def _check_length(market: Market, n: int) -> None:
    if n != market.option_count:
        raise LengthMismatch(
            f"market {market.id} has {market.option_count} options, got {n}")


def calculate_cost(market: Market, shares: list[int]) -> int:
    _check_length(market, len(shares))
    return lmsr.cost(market.b, shares)


def calculate_cost_from_option_state(market: Market,
                                     options: list[Option]) -> int:
    return calculate_cost(market, [o.shares for o in options])


def validate_prices(prices: list[int], unit: int = PRICE_UNIT) -> None:
    """Raise InvariantViolation unless every price is in [0, unit] and they sum to unit."""
    for i, p in enumerate(prices):
        if p < 0 or p > unit:
            raise InvariantViolation(
                f"price of option {i} out of bounds: {p}", prices=list(prices))
    tolerance = unit * PRICE_SUM_TOLERANCE_PPM // 1_000_000
    total = sum(prices)
    if abs(total - unit) > tolerance:
        raise InvariantViolation(
            f"prices sum to {total}, expected {unit}", prices=list(prices))


def compute_prices(market: Market, shares: list[int]) -> list[int]:
    """Probability vector for a hypothetical share vector, validated."""
    _check_length(market, len(shares))
    prices = lmsr.probabilities(market.b, shares)
    validate_prices(prices)
    return prices


def commit_prices(options: list[Option], prices: list[int]) -> None:
    for option, price in zip(options, prices):
        option.price = price


def update_current_prices(market: Market,
                          options: list[Option] | None = None) -> list[int]:
    """Recompute, validate, then write every option's price."""
    options = market.options if options is None else options
    prices = compute_prices(market, [o.shares for o in options])
    commit_prices(options, prices)
    return prices


def _shifted_shares(market: Market, option_id: int, delta: int) -> list[int]:
    if not market.has_option(option_id):
        raise InvalidOption(
            f"market {market.id} has no option {option_id}",
            option_id=option_id)
    shares = market.shares
    shares[option_id] += delta
    return shares


def compute_buy_delta(market: Market, option_id: int,
                      quantity: int) -> tuple[int, list[int]]:
    """
    Cost units to buy `quantity` shares: C(after) - C(before).
    Returns (delta, shares_after).
    """
    if quantity <= 0:
        raise InvalidQuantity("quantity must be positive", quantity=quantity)
    before = calculate_cost(market, market.shares)
    after_shares = _shifted_shares(market, option_id, quantity)
    after = calculate_cost(market, after_shares)
    return max(after - before, 0), after_shares


def compute_sell_delta(market: Market, option_id: int,
                       quantity: int) -> tuple[int, list[int]]:
    """
    Cost units returned for selling `quantity` shares: C(before) - C(after).
    Returns (delta, shares_after).
    """
    if quantity <= 0:
        raise InvalidQuantity("quantity must be positive", quantity=quantity)
    after_shares = _shifted_shares(market, option_id, -quantity)
    if after_shares[option_id] < 0:
        raise InsufficientShares(
            f"option {option_id} has only "
            f"{market.options[option_id].shares} shares outstanding",
            option_id=option_id, quantity=quantity)
    before = calculate_cost(market, market.shares)
    after = calculate_cost(market, after_shares)
    return max(before - after, 0), after_shares


def to_tokens(market: Market, cost_units: int, round_up: bool) -> int:
    if round_up:
        return mul_up(cost_units, market.payout_per_share)
    return mul_down(cost_units, market.payout_per_share)
