"""
Data models for the collateralized escrow ledger.

Two separate domains:
- Ledger side: balance records and the transaction journal (the
  collateral ledger's world)
- Registry side: listings and their lifecycle (the listing registry's world)

The ledger tracks open and locked collateral per (owner, asset). What it
doesn't know is which listing a lock belongs to. That belongs to the
registry, which only ever talks to the ledger in (owner, asset, amount).

All amounts are non-negative ints in the asset's smallest unit.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


ZERO = 0
NATIVE = "native"
ITEM_REF_SIZE = 32


# ---------------------------------------------------------------------------
# Sequential IDs
# ---------------------------------------------------------------------------

_counters: dict[str, int] = defaultdict(int)


def next_id(kind: str) -> int:
    """Sequential ID. Kinds: tx."""
    _counters[kind] += 1
    return _counters[kind]


def reset_counters() -> None:
    """Reset all counters. For testing."""
    _counters.clear()


def set_counter(kind: str, value: int) -> None:
    """Set a counter. For loading persisted state."""
    _counters[kind] = value


def current_id(kind: str) -> int:
    """Last ID handed out for `kind`, 0 if none."""
    return _counters.get(kind, 0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_native(asset: str) -> bool:
    return asset == NATIVE


def item_ref(value) -> bytes:
    """
    Normalize an item reference to a fixed 32-byte handle.

    Accepts bytes, or a str (a 0x-prefixed hex string is decoded, anything
    else is UTF-8 encoded). Shorter values are right-padded with zeros.
    Raises ValueError if the value doesn't fit.
    """
    if isinstance(value, str):
        if value.startswith("0x"):
            raw = bytes.fromhex(value[2:])
        else:
            raw = value.encode("utf-8")
    else:
        raw = bytes(value)
    if len(raw) > ITEM_REF_SIZE:
        raise ValueError(
            f"item reference is {len(raw)} bytes, max {ITEM_REF_SIZE}")
    return raw.ljust(ITEM_REF_SIZE, b"\x00")


def is_empty_ref(ref: bytes) -> bool:
    return not any(ref)


# ---------------------------------------------------------------------------
# Ledger side
# ---------------------------------------------------------------------------

@dataclass
class Balance:
    """
    Collateral one owner holds in one asset.

    open:   free to withdraw or to back a new commitment.
    locked: pledged against listings (as seller or buyer).

    A zeroed record is equivalent to an absent one.
    """
    owner: str
    asset: str
    open: int = ZERO
    locked: int = ZERO

    @property
    def total(self) -> int:
        return self.open + self.locked


@dataclass
class Transaction:
    """
    Append-only journal entry. Every balance change gets one of these.

    open_delta:   change to open balance (positive = credit)
    locked_delta: change to locked balance (positive = lock)

    On deposit:  open_delta = +amount
    On lock:     open_delta = -from_open, locked_delta = +amount
    On settle:   locked_delta = -amount on the payer, open_delta = +amount
                 on the payee (two entries)
    On withdraw: open_delta = -amount

    Ids are sequential. A rolled-back atomic scope hands its ids out again.
    A withdraw reversed after a failed push leaves a gap.
    """
    id: int
    owner: str
    asset: str
    open_delta: int
    locked_delta: int
    reason: str
    seller: Optional[str] = None
    index: Optional[int] = None
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(owner: str, asset: str, open_delta: int, locked_delta: int,
            reason: str, listing: Optional[tuple[str, int]] = None,
            ) -> "Transaction":
        seller, index = listing if listing else (None, None)
        return Transaction(
            id=next_id("tx"),
            owner=owner,
            asset=asset,
            open_delta=open_delta,
            locked_delta=locked_delta,
            reason=reason,
            seller=seller,
            index=index,
        )


# ---------------------------------------------------------------------------
# Registry side
# ---------------------------------------------------------------------------

class ListingState(str, Enum):
    """
    Listing lifecycle.

        LISTED -> BUY_COMMITTED -> SENT -> RECEIVED
          |  ^         |
          |  +---------+  (cancel_buy)
          v
        CANCELED

    RECEIVED and CANCELED are terminal.
    """
    LISTED = "listed"
    CANCELED = "canceled"
    BUY_COMMITTED = "buy_committed"
    SENT = "sent"
    RECEIVED = "received"

    @property
    def terminal(self) -> bool:
        return self in (ListingState.CANCELED, ListingState.RECEIVED)


@dataclass
class Listing:
    """
    An item offered by a seller, keyed by (seller, index).

    The seller keeps `price` locked while the listing is live. Once a buyer
    commits they keep `2 * price` locked: the payment plus matching
    collateral that makes walking away after SENT expensive.
    """
    seller: str
    index: int
    item_reference: bytes
    price: int
    asset: str = NATIVE
    buyer: Optional[str] = None
    state: ListingState = ListingState.LISTED
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def key(self) -> tuple[str, int]:
        return (self.seller, self.index)

    @property
    def buyer_collateral(self) -> int:
        return self.price * 2

    def touch(self) -> None:
        self.updated_at = _now()
