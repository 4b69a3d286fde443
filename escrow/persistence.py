"""
Persistence layer. JSON snapshot + atomic writes.

The snapshot contains the complete state:
  - Ledger: balance records, transaction journal
  - Registry: listings per seller
  - Assets: native wallets and in-memory tokens (balances, allowances)
  - ID counters (so transaction IDs resume correctly after restart)

Save after every complete registry operation. On startup, load the
snapshot. No replay needed. Native receive hooks are code, not state, and
are not persisted.

Atomic write: write to .tmp, then os.replace. A crash mid-write
leaves the previous snapshot intact.
"""

import dataclasses
import json
import os
from enum import Enum

from escrow.collateral_ledger import CollateralLedger
from escrow.listing_registry import ListingRegistry
from escrow.models import (
    Balance, Listing, ListingState, Transaction,
    _counters, set_counter, reset_counters,
)
from escrow.transfer import MemoryToken, NativeBank, TransferAdapter


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize(obj):
    """Recursively serialize dataclasses, enums and bytes to JSON-safe types."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, bytes):
        return "0x" + obj.hex()
    if dataclasses.is_dataclass(obj):
        return {
            f.name: _serialize(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, (list, tuple, set)):
        return [_serialize(item) for item in obj]
    if isinstance(obj, dict):
        return {str(k): _serialize(v) for k, v in obj.items()}
    return obj


def _serialize_assets(adapter: TransferAdapter) -> dict:
    return {
        "custody": adapter.custody,
        "native": {
            "wallets": dict(adapter.bank.wallets),
            "rejecting": sorted(adapter.bank.rejecting),
        },
        "tokens": [
            {
                "address": token.address,
                "symbol": token.symbol,
                "balances": dict(token.balances),
                "allowances": {o: dict(a)
                               for o, a in token.allowances.items()},
            }
            for token in adapter.tokens.values()
        ],
    }


# ---------------------------------------------------------------------------
# Deserialization helpers
# ---------------------------------------------------------------------------

def _load_balance(d: dict) -> Balance:
    return Balance(
        owner=d["owner"],
        asset=d["asset"],
        open=int(d["open"]),
        locked=int(d["locked"]),
    )


def _load_transaction(d: dict) -> Transaction:
    return Transaction(
        id=d["id"],
        owner=d["owner"],
        asset=d["asset"],
        open_delta=int(d["open_delta"]),
        locked_delta=int(d["locked_delta"]),
        reason=d["reason"],
        seller=d.get("seller"),
        index=d.get("index"),
        created_at=d["created_at"],
    )


def _load_listing(d: dict) -> Listing:
    return Listing(
        seller=d["seller"],
        index=d["index"],
        item_reference=bytes.fromhex(d["item_reference"][2:]),
        price=int(d["price"]),
        asset=d["asset"],
        buyer=d.get("buyer"),
        state=ListingState(d["state"]),
        created_at=d["created_at"],
        updated_at=d["updated_at"],
    )


def _load_assets(d: dict) -> TransferAdapter:
    bank = NativeBank()
    bank.wallets = {addr: int(v) for addr, v in d["native"]["wallets"].items()}
    bank.rejecting = set(d["native"].get("rejecting", []))
    adapter = TransferAdapter(bank=bank, custody=d.get("custody", "escrow"))
    for tdata in d.get("tokens", []):
        token = MemoryToken(tdata["address"], tdata.get("symbol", ""))
        token.balances = {a: int(v) for a, v in tdata["balances"].items()}
        token.allowances = {
            owner: {spender: int(v) for spender, v in allowed.items()}
            for owner, allowed in tdata["allowances"].items()
        }
        adapter.register_token(token)
    return adapter


# ---------------------------------------------------------------------------
# Schema versioning
# ---------------------------------------------------------------------------

CURRENT_VERSION = 2


def _migrate_1_to_2(state: dict) -> dict:
    """Add listing timestamps, which version 1 didn't record."""
    for items in state["listings"].values():
        for item in items:
            item.setdefault("created_at", "")
            item.setdefault("updated_at", item["created_at"])
    state["version"] = 2
    return state


_MIGRATIONS: dict[int, callable] = {1: _migrate_1_to_2}


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
# Public API
# ---------------------------------------------------------------------------

def save_snapshot(registry: ListingRegistry, path: str) -> None:
    """
    Save complete ledger + registry + asset state to a JSON file.
    Atomic: writes to .tmp then renames.
    """
    ledger = registry.ledger
    state = {
        "version": CURRENT_VERSION,
        "counters": dict(_counters),
        "balances": [_serialize(b) for b in ledger.balances.values()],
        "transactions": [_serialize(tx) for tx in ledger.transactions],
        "listings": {seller: [_serialize(item) for item in items]
                     for seller, items in registry.listings.items()},
        "assets": _serialize_assets(ledger.adapter),
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp, path)


def load_snapshot(path: str) -> ListingRegistry:
    """
    Load ledger + registry + asset state from a JSON snapshot.
    Applies migrations automatically if the snapshot is an older version.
    Returns a ListingRegistry wired to its ledger and adapter.
    """
    with open(path) as f:
        state = json.load(f)

    state = _apply_migrations(state)

    # Restore ID counters
    reset_counters()
    for kind, value in state["counters"].items():
        set_counter(kind, value)

    # Restore ledger
    ledger = CollateralLedger(_load_assets(state["assets"]))
    for bdata in state["balances"]:
        bal = _load_balance(bdata)
        ledger.balances[(bal.owner, bal.asset)] = bal
    ledger.transactions = [_load_transaction(t)
                           for t in state["transactions"]]

    # Restore registry
    registry = ListingRegistry(ledger)
    for seller, items in state["listings"].items():
        registry.listings[seller] = [_load_listing(d) for d in items]

    return registry
