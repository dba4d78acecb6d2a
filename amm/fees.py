"""
Fee ledger. Per-market fee accrual, locked until the market resolves.

The collector withdraws everything unlocked and not yet withdrawn, across
all resolved markets, in one call. Withdrawing with nothing newly unlocked
is an error rather than a silent no-op.
"""

from dataclasses import dataclass

from amm.errors import InvalidArgument, NoFeesToWithdraw


BPS = 10_000


@dataclass
class FeeEntry:
    collected: int = 0
    locked: bool = True
    withdrawn: int = 0

    @property
    def withdrawable(self) -> int:
        return 0 if self.locked else self.collected - self.withdrawn


def fee_for(amount: int, fee_rate_bps: int) -> int:
    return amount * fee_rate_bps // BPS


class FeeLedger:

    def __init__(self):
        self.entries: dict[int, FeeEntry] = {}
        self.total_withdrawn = 0

    def entry(self, market_id: int) -> FeeEntry:
        return self.entries.setdefault(market_id, FeeEntry())

    def accrue(self, market_id: int, amount: int) -> None:
        if amount < 0:
            raise InvalidArgument("fee amount cannot be negative")
        self.entry(market_id).collected += amount

    def unlock(self, market_id: int) -> None:
        self.entry(market_id).locked = False

    def withdrawable(self) -> int:
        return sum(e.withdrawable for e in self.entries.values())

    def withdraw(self) -> int:
        """Mark every unlocked fee as withdrawn. Returns the amount."""
        amount = self.withdrawable()
        if amount == 0:
            raise NoFeesToWithdraw("no unlocked fees to withdraw")
        for e in self.entries.values():
            if not e.locked:
                e.withdrawn = e.collected
        self.total_withdrawn += amount
        return amount
