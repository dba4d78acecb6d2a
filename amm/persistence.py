"""
Persistence layer. JSON snapshot + atomic writes.

The snapshot contains the complete engine state:
  - token ledger: balances, allowances, transactions
  - markets: options, positions, claims, trades, LMSR state
  - fee ledger: per-market accrual and withdrawals
  - ID counters (so IDs resume correctly after restart)
  - auth: API-key users and role grants

Save after every complete engine operation. On startup, load the
snapshot. No replay needed.

Atomic write: write to .tmp, then os.replace. A crash mid-write
leaves the previous snapshot intact.
"""

import dataclasses
import json
import os
from enum import Enum
from typing import Callable, Optional

from amm.auth import Action, AuthStore, RoleAuthorizer, User
from amm.fees import FeeEntry
from amm.market_engine import MarketEngine
from amm.models import (
    Market, MarketStatus, Option, Side, Trade,
    _counters, reset_counters, set_counter,
)
from amm.token_ledger import TokenLedger, Transaction


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize(obj):
    """Recursively serialize dataclasses and enums to JSON-safe types."""
    if isinstance(obj, Enum):
        return obj.value
    if dataclasses.is_dataclass(obj):
        return {
            f.name: _serialize(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, list):
        return [_serialize(item) for item in obj]
    if isinstance(obj, dict):
        return {str(k): _serialize(v) for k, v in obj.items()}
    return obj


# ---------------------------------------------------------------------------
# Deserialization helpers
# ---------------------------------------------------------------------------

def _load_transaction(d: dict) -> Transaction:
    return Transaction(
        id=d["id"],
        sender=d.get("sender"),
        recipient=d["recipient"],
        amount=d["amount"],
        reason=d["reason"],
        market_id=d.get("market_id"),
        created_at=d["created_at"],
    )


def _load_trade(d: dict) -> Trade:
    return Trade(
        id=d["id"],
        market_id=d["market_id"],
        trader=d["trader"],
        option_id=d["option_id"],
        side=Side(d["side"]),
        quantity=d["quantity"],
        raw_amount=d["raw_amount"],
        fee=d["fee"],
        total_amount=d["total_amount"],
        avg_price=d["avg_price"],
        created_at=d["created_at"],
    )


def _load_market(d: dict) -> Market:
    return Market(
        id=d["id"],
        creator=d["creator"],
        question=d["question"],
        options=[Option(**o) for o in d["options"]],
        b=d["b"],
        payout_per_share=d["payout_per_share"],
        admin_liquidity=d["admin_liquidity"],
        trading_start=d["trading_start"],
        trading_end=d["trading_end"],
        created_at=d["created_at"],
        description=d.get("description", ""),
        category=d.get("category", ""),
        market_type=d.get("market_type", "categorical"),
        user_liquidity=d["user_liquidity"],
        status=MarketStatus(d["status"]),
        winning_option=d.get("winning_option"),
        early_resolution_allowed=d.get("early_resolution_allowed", False),
        liquidity_refunded=d.get("liquidity_refunded", False),
        resolved_at=d.get("resolved_at"),
        positions={addr: list(shares)
                   for addr, shares in d["positions"].items()},
        claimed=dict(d.get("claimed", {})),
        trades=[_load_trade(t) for t in d["trades"]],
    )


# ---------------------------------------------------------------------------
# Schema versioning
# ---------------------------------------------------------------------------

CURRENT_VERSION = 2


def _migrate_1_to_2(state: dict) -> dict:
    """Add auth section (users and role grants) to snapshot."""
    state["auth"] = {"users": [], "grants": {}}
    state["version"] = 2
    return state


_MIGRATIONS: dict[int, Callable[[dict], dict]] = {1: _migrate_1_to_2}


def _apply_migrations(state: dict) -> dict:
    """Apply all needed migrations to bring state to CURRENT_VERSION."""
    version = state.get("version", 1)
    while version < CURRENT_VERSION:
        migrate = _MIGRATIONS.get(version)
        if migrate is None:
            raise ValueError(
                f"no migration from version {version} to {version + 1}")
        state = migrate(state)
        version = state["version"]
    return state


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def _serialize_auth(auth_store: Optional[AuthStore], authorizer) -> dict:
    users = []
    if auth_store is not None:
        users = [_serialize(u) for u in auth_store.users.values()]
    grants = {}
    if isinstance(authorizer, RoleAuthorizer):
        grants = {caller: sorted(a.value for a in actions)
                  for caller, actions in authorizer.grants.items()}
    return {"users": users, "grants": grants}


def _load_auth(auth_data: dict) -> AuthStore:
    store = AuthStore()
    for udata in auth_data.get("users", []):
        user = User(
            username=udata["username"],
            api_key_hash=udata["api_key_hash"],
            created_at=udata["created_at"],
            last_seen_at=udata["last_seen_at"],
        )
        store.users[user.username] = user
        store.key_to_user[user.api_key_hash] = user
    return store


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def save_snapshot(engine: MarketEngine, path: str,
                  auth_store: Optional[AuthStore] = None) -> None:
    """
    Save complete engine + auth state to a JSON file.
    Atomic: writes to .tmp then renames.
    """
    ledger = engine.ledger
    state = {
        "version": CURRENT_VERSION,
        "counters": dict(_counters),
        "ledger": {
            "balances": dict(ledger.balances),
            "allowances": {owner: dict(a)
                           for owner, a in ledger.allowances.items()},
            "transactions": [_serialize(tx) for tx in ledger.transactions],
        },
        "markets": [_serialize(m) for m in engine.markets.values()],
        "fees": {
            "entries": {str(mid): _serialize(e)
                        for mid, e in engine.fees.entries.items()},
            "total_withdrawn": engine.fees.total_withdrawn,
        },
        "auth": _serialize_auth(auth_store, engine.authorizer),
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp, path)


def load_snapshot(path: str,
                  engine_factory: Optional[
                      Callable[[TokenLedger], MarketEngine]] = None,
                  ) -> tuple[MarketEngine, AuthStore]:
    """
    Load engine + auth state from a JSON snapshot.
    Applies migrations automatically if the snapshot is an older version.

    engine_factory builds the engine around the restored ledger, so the
    caller picks the authorizer, config and clock. Defaults to
    MarketEngine(ledger).

    Returns (engine, auth_store) ready to use.
    """
    with open(path) as f:
        state = json.load(f)

    state = _apply_migrations(state)

    # Restore ID counters
    reset_counters()
    for kind, value in state["counters"].items():
        set_counter(kind, value)

    # Restore token ledger
    ledger = TokenLedger()
    ldata = state["ledger"]
    ledger.balances = dict(ldata["balances"])
    ledger.allowances = {owner: dict(a)
                         for owner, a in ldata["allowances"].items()}
    ledger.transactions = [_load_transaction(t)
                           for t in ldata["transactions"]]

    # Restore market engine
    engine = engine_factory(ledger) if engine_factory else MarketEngine(ledger)
    for mdata in state["markets"]:
        market = _load_market(mdata)
        engine.markets[market.id] = market

    fdata = state.get("fees", {})
    for mid, edata in fdata.get("entries", {}).items():
        engine.fees.entries[int(mid)] = FeeEntry(**edata)
    engine.fees.total_withdrawn = fdata.get("total_withdrawn", 0)

    # Restore auth
    auth = state.get("auth", {})
    if isinstance(engine.authorizer, RoleAuthorizer):
        for caller, actions in auth.get("grants", {}).items():
            engine.authorizer.grant(caller, *(Action(a) for a in actions))
    auth_store = _load_auth(auth)

    return engine, auth_store
