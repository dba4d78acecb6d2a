"""
Engine errors. One exception class per failure reason, grouped by kind.

Every error aborts the whole operation that raised it. The market engine
rolls back any partial writes before the exception leaves it, so callers
never observe half-applied state. Nothing is retried internally.

Kinds:
  invalid_argument  : bad option id, zero quantity, bad option count, ...
  not_ready         : not validated yet, trading window closed, too early
  already_terminal  : already resolved / claimed / invalidated
  authorization     : caller lacks the capability
  economic          : slippage, dust, solvency, balances, fees
  internal_invariant: price vector corrupted; always fatal
"""

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_ARGUMENT = "invalid_argument"
    NOT_READY = "not_ready"
    ALREADY_TERMINAL = "already_terminal"
    AUTHORIZATION = "authorization"
    ECONOMIC = "economic"
    INTERNAL_INVARIANT = "internal_invariant"


class AMMError(Exception):
    """Base engine error. `kind` and `code` are stable, `details` is free-form."""

    kind: ErrorKind = ErrorKind.INVALID_ARGUMENT
    code: str = "amm_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


# ---------------------------------------------------------------------------
# invalid_argument
# ---------------------------------------------------------------------------

class InvalidArgument(AMMError):
    kind = ErrorKind.INVALID_ARGUMENT
    code = "invalid_argument"


class MarketNotFound(InvalidArgument):
    code = "market_not_found"


class InvalidOption(InvalidArgument):
    code = "invalid_option"


class InvalidQuantity(InvalidArgument):
    code = "invalid_quantity"


class InvalidOptionCount(InvalidArgument):
    code = "invalid_option_count"


class LengthMismatch(InvalidArgument):
    code = "length_mismatch"


class InvalidDuration(InvalidArgument):
    code = "invalid_duration"


# ---------------------------------------------------------------------------
# not_ready
# ---------------------------------------------------------------------------

class NotReady(AMMError):
    kind = ErrorKind.NOT_READY
    code = "not_ready"


class MarketNotValidated(NotReady):
    code = "market_not_validated"


class TradingClosed(NotReady):
    code = "trading_closed"


class ResolutionTooEarly(NotReady):
    code = "resolution_too_early"


class MarketNotResolved(NotReady):
    code = "market_not_resolved"


class ReentrantCall(NotReady):
    """A mutating call arrived while another one is still in flight."""
    code = "reentrant_call"


# ---------------------------------------------------------------------------
# already_terminal
# ---------------------------------------------------------------------------

class AlreadyTerminal(AMMError):
    kind = ErrorKind.ALREADY_TERMINAL
    code = "already_terminal"


class AlreadyValidated(AlreadyTerminal):
    code = "already_validated"


class MarketAlreadyResolved(AlreadyTerminal):
    code = "market_resolved"


class MarketInvalidated(AlreadyTerminal):
    code = "market_invalidated"


class AlreadyClaimed(AlreadyTerminal):
    code = "already_claimed"


# ---------------------------------------------------------------------------
# authorization
# ---------------------------------------------------------------------------

class Unauthorized(AMMError):
    kind = ErrorKind.AUTHORIZATION
    code = "unauthorized"


# ---------------------------------------------------------------------------
# economic
# ---------------------------------------------------------------------------

class EconomicError(AMMError):
    kind = ErrorKind.ECONOMIC
    code = "economic"


class SlippageExceeded(EconomicError):
    code = "slippage_exceeded"


class PriceTooLow(EconomicError):
    code = "price_too_low"


class InsolventTrade(EconomicError):
    code = "insolvent_trade"


class InsufficientLiquidity(EconomicError):
    code = "insufficient_liquidity"


class InsufficientBalance(EconomicError):
    code = "insufficient_balance"


class InsufficientAllowance(EconomicError):
    code = "insufficient_allowance"


class InsufficientShares(EconomicError):
    code = "insufficient_shares"


class NoWinningShares(EconomicError):
    code = "no_winning_shares"


class NoFeesToWithdraw(EconomicError):
    code = "no_fees_to_withdraw"


# ---------------------------------------------------------------------------
# internal_invariant
# ---------------------------------------------------------------------------

class InvariantViolation(AMMError):
    """Price vector out of bounds or not normalized. Never recovered."""
    kind = ErrorKind.INTERNAL_INVARIANT
    code = "invariant_violation"
