#!/usr/bin/env python3
"""
Escrow ledger CLI. Every invocation: lock → load → execute → save → unlock.

Usage:
    python3 -m escrow.cli fund ADDRESS AMOUNT
    python3 -m escrow.cli create-token ADDRESS [--symbol SYM]
    python3 -m escrow.cli mint-token TOKEN ADDRESS AMOUNT
    python3 -m escrow.cli approve TOKEN OWNER AMOUNT
    python3 -m escrow.cli deposit OWNER AMOUNT [--asset A] [--value V]
    python3 -m escrow.cli withdraw OWNER AMOUNT [--asset A]
    python3 -m escrow.cli list SELLER ITEM_REF PRICE [--asset A] [--value V]
    python3 -m escrow.cli update-price SELLER INDEX PRICE [--value V]
    python3 -m escrow.cli cancel SELLER INDEX
    python3 -m escrow.cli buy BUYER SELLER INDEX [--value V]
    python3 -m escrow.cli cancel-buy BUYER SELLER INDEX
    python3 -m escrow.cli mark-sent SELLER INDEX
    python3 -m escrow.cli mark-received BUYER SELLER INDEX
    python3 -m escrow.cli item SELLER INDEX
    python3 -m escrow.cli items SELLER
    python3 -m escrow.cli balance OWNER [--asset A]

Output: JSON, one line. {"ok": true, ...} or {"ok": false, "error": "...",
"code": "..."}
State: ESCROW_STATE env var, default ./escrow_state.json
"""

import argparse
import fcntl
import json
import logging
import os
import sys
from contextlib import contextmanager

from escrow.collateral_ledger import CollateralLedger
from escrow.errors import EscrowError
from escrow.listing_registry import ListingRegistry
from escrow.models import NATIVE, Listing, reset_counters
from escrow.persistence import save_snapshot, load_snapshot
from escrow.transfer import MemoryToken


STATE_PATH = os.environ.get("ESCROW_STATE", "./escrow_state.json")
LOG_LEVEL = os.environ.get("ESCROW_LOG_LEVEL", "INFO")


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


def load_or_create(path) -> ListingRegistry:
    if os.path.exists(path):
        return load_snapshot(path)
    reset_counters()
    return ListingRegistry(CollateralLedger())


def reply(data):
    print(json.dumps(data))


def listing_json(listing: Listing) -> dict:
    return {
        "seller": listing.seller,
        "index": listing.index,
        "item_reference": "0x" + listing.item_reference.hex(),
        "price": str(listing.price),
        "asset": listing.asset,
        "buyer": listing.buyer,
        "state": listing.state.value,
    }


def balance_json(reg: ListingRegistry, owner: str, asset: str) -> dict:
    bal = reg.ledger.get_balance(owner, asset)
    return {"ok": True, "owner": owner, "asset": asset,
            "open": str(bal.open), "locked": str(bal.locked)}


# ---------------------------------------------------------------------------
# Asset setup (simulation)
# ---------------------------------------------------------------------------

def cmd_fund(reg, args):
    bank = reg.ledger.adapter.bank
    bank.credit(args.address, args.amount)
    return {"ok": True, "address": args.address,
            "wallet": str(bank.balance_of(args.address))}


def cmd_create_token(reg, args):
    adapter = reg.ledger.adapter
    if args.address == NATIVE or args.address in adapter.tokens:
        raise ValueError(f"asset {args.address} already exists")
    adapter.register_token(MemoryToken(args.address, args.symbol))
    return {"ok": True, "token": args.address}


def cmd_mint_token(reg, args):
    token = _token(reg, args.token)
    token.mint(args.address, args.amount)
    return {"ok": True, "token": args.token, "address": args.address,
            "balance": str(token.balance_of(args.address))}


def cmd_approve(reg, args):
    token = _token(reg, args.token)
    custody = reg.ledger.adapter.custody
    token.approve(args.owner, custody, args.amount)
    return {"ok": True, "token": args.token, "owner": args.owner,
            "allowance": str(token.allowance(args.owner, custody))}


def _token(reg, address):
    token = reg.ledger.adapter.tokens.get(address)
    if token is None:
        raise ValueError(f"token {address} not found")
    return token


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def cmd_deposit(reg, args):
    reg.deposit(args.owner, args.asset, args.amount, value=args.value)
    return balance_json(reg, args.owner, args.asset)


def cmd_withdraw(reg, args):
    reg.withdraw(args.owner, args.asset, args.amount)
    return balance_json(reg, args.owner, args.asset)


def cmd_balance(reg, args):
    return balance_json(reg, args.owner, args.asset)


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

def cmd_list(reg, args):
    listing = reg.list_item(args.seller, args.item_ref, args.price,
                            asset=args.asset, value=args.value)
    return {"ok": True, **listing_json(listing)}


def cmd_update_price(reg, args):
    listing = reg.update_price(args.seller, args.index, args.price,
                               value=args.value)
    return {"ok": True, **listing_json(listing)}


def cmd_cancel(reg, args):
    return {"ok": True, **listing_json(reg.cancel(args.seller, args.index))}


def cmd_buy(reg, args):
    listing = reg.buy(args.buyer, args.seller, args.index, value=args.value)
    return {"ok": True, **listing_json(listing)}


def cmd_cancel_buy(reg, args):
    listing = reg.cancel_buy(args.buyer, args.seller, args.index)
    return {"ok": True, **listing_json(listing)}


def cmd_mark_sent(reg, args):
    return {"ok": True, **listing_json(reg.mark_sent(args.seller, args.index))}


def cmd_mark_received(reg, args):
    listing = reg.mark_received(args.buyer, args.seller, args.index)
    return {"ok": True, **listing_json(listing)}


def cmd_item(reg, args):
    return {"ok": True, **listing_json(reg.get_item(args.seller, args.index))}


def cmd_items(reg, args):
    return {"ok": True, "seller": args.seller,
            "items": [listing_json(l) for l in reg.get_items(args.seller)]}


# Commands that mutate state (need save after)
MUTATING = {"fund", "create-token", "mint-token", "approve", "deposit",
            "withdraw", "list", "update-price", "cancel", "buy",
            "cancel-buy", "mark-sent", "mark-received"}

COMMANDS = {
    "fund": cmd_fund,
    "create-token": cmd_create_token,
    "mint-token": cmd_mint_token,
    "approve": cmd_approve,
    "deposit": cmd_deposit,
    "withdraw": cmd_withdraw,
    "balance": cmd_balance,
    "list": cmd_list,
    "update-price": cmd_update_price,
    "cancel": cmd_cancel,
    "buy": cmd_buy,
    "cancel-buy": cmd_cancel_buy,
    "mark-sent": cmd_mark_sent,
    "mark-received": cmd_mark_received,
    "item": cmd_item,
    "items": cmd_items,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Collateralized escrow CLI")
    parser.add_argument("--state", default=STATE_PATH,
                        help="Path to state file")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("fund")
    p.add_argument("address")
    p.add_argument("amount", type=int)

    p = sub.add_parser("create-token")
    p.add_argument("address")
    p.add_argument("--symbol", default="")

    p = sub.add_parser("mint-token")
    p.add_argument("token")
    p.add_argument("address")
    p.add_argument("amount", type=int)

    p = sub.add_parser("approve")
    p.add_argument("token")
    p.add_argument("owner")
    p.add_argument("amount", type=int)

    for name in ("deposit", "withdraw"):
        p = sub.add_parser(name)
        p.add_argument("owner")
        p.add_argument("amount", type=int)
        p.add_argument("--asset", default=NATIVE)
        if name == "deposit":
            p.add_argument("--value", type=int, default=0,
                           help="Native value attached to the call")

    p = sub.add_parser("balance")
    p.add_argument("owner")
    p.add_argument("--asset", default=NATIVE)

    p = sub.add_parser("list")
    p.add_argument("seller")
    p.add_argument("item_ref")
    p.add_argument("price", type=int)
    p.add_argument("--asset", default=NATIVE)
    p.add_argument("--value", type=int, default=0)

    p = sub.add_parser("update-price")
    p.add_argument("seller")
    p.add_argument("index", type=int)
    p.add_argument("price", type=int)
    p.add_argument("--value", type=int, default=0)

    for name in ("cancel", "mark-sent", "item"):
        p = sub.add_parser(name)
        p.add_argument("seller")
        p.add_argument("index", type=int)

    p = sub.add_parser("buy")
    p.add_argument("buyer")
    p.add_argument("seller")
    p.add_argument("index", type=int)
    p.add_argument("--value", type=int, default=0)

    for name in ("cancel-buy", "mark-received"):
        p = sub.add_parser(name)
        p.add_argument("buyer")
        p.add_argument("seller")
        p.add_argument("index", type=int)

    p = sub.add_parser("items")
    p.add_argument("seller")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=LOG_LEVEL, stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    state_path = args.state

    try:
        with file_lock(state_path):
            reg = load_or_create(state_path)
            result = COMMANDS[args.command](reg, args)

            if args.command in MUTATING:
                save_snapshot(reg, state_path)

            reply(result)
    except EscrowError as e:
        reply({"ok": False, "error": str(e), "code": e.code})
        sys.exit(1)
    except Exception as e:
        reply({"ok": False, "error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
