"""
Token ledger. An in-process fungible balance ledger: balances, allowances
and an append-only transaction log.

The market engine treats this as an external collaborator with ERC-20
style semantics:

    transfer(sender, recipient, amount)
    transfer_from(spender, owner, recipient, amount)   # needs allowance
    balance_of(address)

The ledger knows nothing about markets. Every balance change produces a
Transaction. Transfer hooks run after each transfer, which is where an
untrusted token callback would re-enter the engine.

Invariant: sum(balances) == sum(mint transactions)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from amm.errors import InvalidArgument, InsufficientAllowance, InsufficientBalance
from amm.models import next_id


TransferHook = Callable[[str, str, int], None]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Transaction:
    """
    Append-only ledger entry. Every balance change gets one of these.

    sender is None for mints.
    """
    id: int
    sender: Optional[str]
    recipient: str
    amount: int
    reason: str
    market_id: Optional[int] = None
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(sender: Optional[str], recipient: str, amount: int,
            reason: str, market_id: Optional[int] = None) -> "Transaction":
        return Transaction(
            id=next_id("tx"),
            sender=sender,
            recipient=recipient,
            amount=amount,
            reason=reason,
            market_id=market_id,
        )


class TokenLedger:

    def __init__(self):
        self.balances: dict[str, int] = {}
        self.allowances: dict[str, dict[str, int]] = {}
        self.transactions: list[Transaction] = []
        self.hooks: list[TransferHook] = []

    def balance_of(self, address: str) -> int:
        return self.balances.get(address, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get(owner, {}).get(spender, 0)

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def mint(self, address: str, amount: int) -> Transaction:
        """Create tokens from nothing. The only way money enters."""
        if amount <= 0:
            raise InvalidArgument("mint amount must be positive")
        self.balances[address] = self.balance_of(address) + amount
        tx = Transaction.new(None, address, amount, reason="mint")
        self.transactions.append(tx)
        return tx

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def approve(self, owner: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise InvalidArgument("allowance cannot be negative")
        self.allowances.setdefault(owner, {})[spender] = amount

    def transfer(self, sender: str, recipient: str, amount: int,
                 reason: str = "transfer",
                 market_id: Optional[int] = None) -> Transaction:
        """
        Move tokens from sender to recipient.
        Raises InsufficientBalance if sender doesn't hold enough.
        """
        if amount < 0:
            raise InvalidArgument("transfer amount cannot be negative")
        available = self.balance_of(sender)
        if available < amount:
            raise InsufficientBalance(
                f"{sender}: need {amount}, have {available}",
                address=sender, required=amount, available=available)
        self.balances[sender] = available - amount
        self.balances[recipient] = self.balance_of(recipient) + amount
        tx = Transaction.new(sender, recipient, amount, reason=reason,
                             market_id=market_id)
        self.transactions.append(tx)
        for hook in list(self.hooks):
            hook(sender, recipient, amount)
        return tx

    def transfer_from(self, spender: str, owner: str, recipient: str,
                      amount: int, reason: str = "transfer_from",
                      market_id: Optional[int] = None) -> Transaction:
        """Spend `owner`'s tokens on their behalf. Consumes allowance."""
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            raise InsufficientAllowance(
                f"{spender} may spend {allowed} of {owner}'s tokens, "
                f"needs {amount}",
                owner=owner, spender=spender, required=amount,
                allowance=allowed)
        tx = self.transfer(owner, recipient, amount, reason=reason,
                           market_id=market_id)
        self.allowances[owner][spender] = allowed - amount
        return tx

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def total_minted(self) -> int:
        """Sum of all mint transactions. The total money in the system."""
        return sum(tx.amount for tx in self.transactions if tx.reason == "mint")

    def total_supply(self) -> int:
        return sum(self.balances.values())

    # ------------------------------------------------------------------
    # Rollback support
    # ------------------------------------------------------------------

    def snapshot(self) -> tuple:
        return (
            dict(self.balances),
            {owner: dict(a) for owner, a in self.allowances.items()},
            len(self.transactions),
        )

    def restore(self, snap: tuple) -> None:
        balances, allowances, n_txs = snap
        self.balances = balances
        self.allowances = allowances
        del self.transactions[n_txs:]
