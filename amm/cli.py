#!/usr/bin/env python3
"""
AMM engine CLI. Every invocation: lock → load → execute → save → unlock.

Usage:
    amm-engine mint ADDRESS AMOUNT
    amm-engine approve OWNER AMOUNT
    amm-engine --as admin create-market QUESTION LIQUIDITY [--option NAME ...]
    amm-engine --as admin validate MARKET_ID
    amm-engine --as admin invalidate MARKET_ID
    amm-engine --as alice buy MARKET_ID OPTION_ID QUANTITY [--max-cost X]
    amm-engine --as alice sell MARKET_ID OPTION_ID QUANTITY [--min-proceeds X]
    amm-engine --as admin resolve MARKET_ID OPTION_ID
    amm-engine --as alice claim MARKET_ID
    amm-engine quote-buy MARKET_ID OPTION_ID QUANTITY
    amm-engine quote-sell MARKET_ID OPTION_ID QUANTITY
    amm-engine odds MARKET_ID
    amm-engine market MARKET_ID
    amm-engine markets
    amm-engine balance ADDRESS
    amm-engine --as admin withdraw-fees

Amounts are decimal strings ("1.5"). Output: JSON, one line.
{"ok": true, ...} or {"ok": false, "error": "...", "code": "..."}
State: AMM_STATE env var, default ./amm_state.json
"""

import argparse
import fcntl
import json
import os
import sys
from contextlib import contextmanager

from amm.auth import AuthStore, RoleAuthorizer
from amm.config import EngineConfig, configure_logging
from amm.errors import AMMError
from amm.fixed_point import format_wad, to_wad
from amm.market_engine import MarketEngine
from amm.models import Quote, Trade, reset_counters
from amm.persistence import save_snapshot, load_snapshot
from amm.token_ledger import TokenLedger


STATE_PATH = os.environ.get("AMM_STATE", "./amm_state.json")


@contextmanager
def file_lock(path):
    """Exclusive file lock. Prevents concurrent CLI invocations from corrupting state."""
    lock_path = path + ".lock"
    f = open(lock_path, "w")
    try:
        fcntl.flock(f, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(f, fcntl.LOCK_UN)
        f.close()


def _engine(ledger: TokenLedger) -> MarketEngine:
    config = EngineConfig.from_env()
    return MarketEngine(
        ledger,
        authorizer=RoleAuthorizer(admins={config.admin_address}),
        config=config,
    )


def load_or_create(path) -> tuple[MarketEngine, AuthStore]:
    if os.path.exists(path):
        return load_snapshot(path, _engine)
    reset_counters()
    return _engine(TokenLedger()), AuthStore()


def reply(data):
    print(json.dumps(data))


def _trade(trade: Trade) -> dict:
    return {"ok": True, "trade_id": trade.id,
            "side": trade.side.value,
            "quantity": format_wad(trade.quantity),
            "raw_amount": format_wad(trade.raw_amount),
            "fee": format_wad(trade.fee),
            "total_amount": format_wad(trade.total_amount),
            "avg_price": format_wad(trade.avg_price)}


def _quote(q: Quote) -> dict:
    return {"ok": True,
            "raw_amount": format_wad(q.raw_amount),
            "fee": format_wad(q.fee),
            "total_amount": format_wad(q.total_amount),
            "avg_price": format_wad(q.avg_price)}


def _optional_wad(value):
    return to_wad(value) if value is not None else None


def cmd_mint(me, args):
    me.ledger.mint(args.address, to_wad(args.amount))
    return {"ok": True, "address": args.address,
            "balance": format_wad(me.ledger.balance_of(args.address))}


def cmd_approve(me, args):
    amount = to_wad(args.amount)
    me.ledger.approve(args.owner, me.config.pool_address, amount)
    return {"ok": True, "owner": args.owner,
            "spender": me.config.pool_address,
            "allowance": format_wad(amount)}


def cmd_create_market(me, args):
    market = me.create_market(
        args.caller,
        question=args.question,
        description=args.description,
        option_names=args.option or None,
        duration=args.duration,
        category=args.category,
        initial_liquidity=to_wad(args.liquidity),
        early_resolution_allowed=args.early_resolution,
    )
    return {"ok": True, "market_id": market.id,
            "b": format_wad(market.b),
            "prices": [format_wad(p) for p in market.prices]}


def cmd_validate(me, args):
    me.validate_market(args.caller, args.market_id)
    return {"ok": True, "market_id": args.market_id, "status": "validated"}


def cmd_invalidate(me, args):
    refund = me.invalidate_market(args.caller, args.market_id)
    return {"ok": True, "market_id": args.market_id,
            "refund": format_wad(refund)}


def cmd_buy(me, args):
    trade = me.buy_shares(args.caller, args.market_id, args.option_id,
                          to_wad(args.quantity),
                          max_price_per_share=_optional_wad(args.max_price),
                          max_total_cost=_optional_wad(args.max_cost))
    return _trade(trade)


def cmd_sell(me, args):
    trade = me.sell_shares(args.caller, args.market_id, args.option_id,
                           to_wad(args.quantity),
                           min_price_per_share=_optional_wad(args.min_price),
                           min_total_proceeds=_optional_wad(args.min_proceeds))
    return _trade(trade)


def cmd_resolve(me, args):
    me.resolve_market(args.caller, args.market_id, args.option_id)
    return {"ok": True, "market_id": args.market_id,
            "winning_option": args.option_id}


def cmd_claim(me, args):
    payout = me.claim_winnings(args.caller, args.market_id)
    return {"ok": True, "market_id": args.market_id,
            "payout": format_wad(payout)}


def cmd_quote_buy(me, args):
    return _quote(me.quote_buy(args.market_id, args.option_id,
                               to_wad(args.quantity)))


def cmd_quote_sell(me, args):
    return _quote(me.quote_sell(args.market_id, args.option_id,
                                to_wad(args.quantity)))


def cmd_odds(me, args):
    return {"ok": True, "market_id": args.market_id,
            "prices": [format_wad(p) for p in me.market_odds(args.market_id)]}


def cmd_market(me, args):
    market = me.get_market(args.market_id)
    positions = {
        addr: [format_wad(s) for s in shares]
        for addr, shares in market.positions.items()
    }
    return {"ok": True, "market_id": market.id,
            "question": market.question,
            "status": market.status.value,
            "options": [o.name for o in market.options],
            "prices": [format_wad(p) for p in market.prices],
            "b": format_wad(market.b),
            "liquidity": format_wad(market.available_liquidity),
            "positions": positions,
            "num_trades": len(market.trades),
            "winning_option": market.winning_option}


def cmd_markets(me, args):
    result = []
    for m in me.markets.values():
        result.append({
            "market_id": m.id,
            "question": m.question,
            "status": m.status.value,
            "prices": [format_wad(p) for p in m.prices],
            "num_trades": len(m.trades),
        })
    return {"ok": True, "markets": result}


def cmd_balance(me, args):
    return {"ok": True, "address": args.address,
            "balance": format_wad(me.ledger.balance_of(args.address)),
            "allowance": format_wad(me.ledger.allowance(
                args.address, me.config.pool_address))}


def cmd_withdraw_fees(me, args):
    amount = me.withdraw_fees(args.caller)
    return {"ok": True, "collector": me.config.fee_collector,
            "amount": format_wad(amount)}


# Commands that mutate state (need save after)
MUTATING = {"mint", "approve", "create-market", "validate", "invalidate",
            "buy", "sell", "resolve", "claim", "withdraw-fees"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LMSR AMM engine CLI")
    parser.add_argument("--state", default=STATE_PATH,
                        help="Path to state file")
    parser.add_argument("--as", dest="caller", default=None,
                        help="Address the command acts as "
                             "(default: AMM_ADMIN_ADDRESS)")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("mint")
    p.add_argument("address")
    p.add_argument("amount")

    p = sub.add_parser("approve", help="Approve the pool to spend OWNER's tokens")
    p.add_argument("owner")
    p.add_argument("amount")

    p = sub.add_parser("create-market")
    p.add_argument("question")
    p.add_argument("liquidity")
    p.add_argument("--option", action="append",
                   help="Option name, repeatable (default yes/no)")
    p.add_argument("--description", default="")
    p.add_argument("--category", default="")
    p.add_argument("--duration", type=int, default=7 * 24 * 3600)
    p.add_argument("--early-resolution", action="store_true")

    for name in ("validate", "invalidate", "claim", "odds", "market"):
        p = sub.add_parser(name)
        p.add_argument("market_id", type=int)

    p = sub.add_parser("buy")
    p.add_argument("market_id", type=int)
    p.add_argument("option_id", type=int)
    p.add_argument("quantity")
    p.add_argument("--max-price", default=None)
    p.add_argument("--max-cost", default=None)

    p = sub.add_parser("sell")
    p.add_argument("market_id", type=int)
    p.add_argument("option_id", type=int)
    p.add_argument("quantity")
    p.add_argument("--min-price", default=None)
    p.add_argument("--min-proceeds", default=None)

    p = sub.add_parser("resolve")
    p.add_argument("market_id", type=int)
    p.add_argument("option_id", type=int)

    for name in ("quote-buy", "quote-sell"):
        p = sub.add_parser(name)
        p.add_argument("market_id", type=int)
        p.add_argument("option_id", type=int)
        p.add_argument("quantity")

    sub.add_parser("markets")

    p = sub.add_parser("balance")
    p.add_argument("address")

    sub.add_parser("withdraw-fees")
    return parser


COMMANDS = {
    "mint": cmd_mint,
    "approve": cmd_approve,
    "create-market": cmd_create_market,
    "validate": cmd_validate,
    "invalidate": cmd_invalidate,
    "buy": cmd_buy,
    "sell": cmd_sell,
    "resolve": cmd_resolve,
    "claim": cmd_claim,
    "quote-buy": cmd_quote_buy,
    "quote-sell": cmd_quote_sell,
    "odds": cmd_odds,
    "market": cmd_market,
    "markets": cmd_markets,
    "balance": cmd_balance,
    "withdraw-fees": cmd_withdraw_fees,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(level=os.environ.get("AMM_LOG_LEVEL", "WARNING"))
    state_path = args.state

    try:
        with file_lock(state_path):
            me, auth_store = load_or_create(state_path)
            args.caller = args.caller or me.config.admin_address
            result = COMMANDS[args.command](me, args)

            if args.command in MUTATING:
                save_snapshot(me, state_path, auth_store=auth_store)

            reply(result)
    except AMMError as e:
        reply({"ok": False, "error": e.message, "code": e.code})
        sys.exit(1)
    except (OSError, ValueError) as e:
        reply({"ok": False, "error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
