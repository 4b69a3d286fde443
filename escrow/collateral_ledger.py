"""
Collateral ledger. Manages open/locked balances per (owner, asset) and the
transaction journal.

Every balance mutation produces a Transaction. The ledger is the single
source of truth for who has how much and how much of it is locked.

The ledger does NOT know about listings. It just knows: owners hold open
and locked collateral per asset, value enters through deposit (or the
implicit deposit inside lock) and leaves through withdraw.

Invariant, per asset:
    sum(open + locked over owners) == deposits - withdrawals == custody

Arithmetic is checked. A subtraction that would go below zero raises
InsufficientOpen or InsufficientLocked and nothing is mutated.

Ordering: inbound transfers complete before balances change; outbound
transfers happen after balances change (and are undone if the push fails).
A recipient re-entering during a push sees the already-reduced balance.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from escrow.errors import (
    InsufficientLocked, InsufficientOpen, InsufficientValueSent,
    InvalidAmount, NotAuthorized, TransferFailed, ValueMismatch,
)
from escrow.models import (
    Balance, Transaction, ZERO, current_id, is_native, set_counter,
)
from escrow.transfer import TransferAdapter


logger = logging.getLogger(__name__)


def _require_amount(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"amount must be an integer, got {amount!r}")
    if amount <= ZERO:
        raise InvalidAmount(f"amount must be positive, got {amount}")


def _require_value(value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < ZERO:
        raise InvalidAmount(f"attached value must be a non-negative "
                            f"integer, got {value!r}")


class CollateralLedger:

    def __init__(self, adapter: Optional[TransferAdapter] = None):
        self.adapter = adapter if adapter is not None else TransferAdapter()
        self.balances: dict[tuple[str, str], Balance] = {}
        self.transactions: list[Transaction] = []

    def get_balance(self, owner: str, asset: str) -> Balance:
        """Balance record for (owner, asset). Zeroed if never touched."""
        bal = self.balances.get((owner, asset))
        if bal is None:
            return Balance(owner=owner, asset=asset)
        return bal

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    def deposit(self, owner: str, asset: str, amount: int,
                value: int = ZERO) -> Transaction:
        """
        Bring value into custody and credit it as open collateral.

        Native: `value` is what the caller attached. Less than `amount` is
        InsufficientValueSent; more would strand the excess, so it is a
        ValueMismatch. Tokens: pulled against the owner's allowance.
        """
        self._require_owner(owner)
        _require_amount(amount)
        _require_value(value)
        if is_native(asset):
            if value < amount:
                raise InsufficientValueSent(
                    f"deposit of {amount} with only {value} attached")
            if value > amount:
                raise ValueMismatch(
                    f"deposit of {amount} with {value} attached")

        self.adapter.pull(owner, asset, amount, value)

        bal = self._record(owner, asset)
        bal.open += amount
        return self._journal(owner, asset, amount, ZERO, "deposit")

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def check(self, owner: str, asset: str, required: int) -> tuple[bool, int]:
        """(has_enough, shortfall) of open collateral against `required`."""
        available = self.get_balance(owner, asset).open
        shortfall = max(ZERO, required - available)
        return shortfall == ZERO, shortfall

    def lock(self, owner: str, asset: str, required: int, value: int = ZERO,
             listing: Optional[tuple[str, int]] = None) -> Transaction:
        """
        Make sure `required` is locked for owner.

        Enough open: move `required` from open to locked. Attaching value
        is then a ValueMismatch.
        Not enough: pull the shortfall in (deposit-and-lock), drain open to
        zero and lock the full `required`. For native assets the attached
        value must equal the shortfall exactly.
        """
        self._require_owner(owner)
        _require_amount(required)
        _require_value(value)
        has_enough, shortfall = self.check(owner, asset, required)

        if has_enough:
            if value != ZERO:
                raise ValueMismatch(
                    f"{owner} has {required} open; {value} attached "
                    f"would be stranded")
        else:
            self.adapter.pull(owner, asset, shortfall, value)

        bal = self._record(owner, asset)
        if shortfall:
            bal.open += shortfall
            self._journal(owner, asset, shortfall, ZERO, "deposit", listing)
        bal.open = self._debit(bal.open, required, InsufficientOpen(
            f"{owner}: need {required} open {asset}, have {bal.open}"))
        bal.locked += required
        return self._journal(owner, asset, -required, required, "lock",
                             listing)

    def unlock(self, owner: str, asset: str, amount: int,
               listing: Optional[tuple[str, int]] = None) -> Transaction:
        """Move locked collateral back to open."""
        _require_amount(amount)
        bal = self.get_balance(owner, asset)
        bal.locked = self._debit(bal.locked, amount, InsufficientLocked(
            f"{owner}: can't unlock {amount} {asset}, "
            f"only {bal.locked} locked"))
        bal = self._record(owner, asset, bal)
        bal.open += amount
        return self._journal(owner, asset, amount, -amount, "unlock", listing)

    def settle(self, from_locked_owner: str, from_locked_amount: int,
               to_open_owner: str, to_open_amount: int, asset: str,
               listing: Optional[tuple[str, int]] = None,
               ) -> tuple[Transaction, Transaction]:
        """
        Consume locked collateral from one owner, credit open to another.
        The owners may be the same. Amounts must match: value is moved,
        never created or destroyed.
        """
        _require_amount(from_locked_amount)
        if to_open_amount != from_locked_amount:
            raise ValueMismatch(
                f"settle out {from_locked_amount} != in {to_open_amount}")

        payer = self.get_balance(from_locked_owner, asset)
        payer.locked = self._debit(
            payer.locked, from_locked_amount, InsufficientLocked(
                f"{from_locked_owner}: can't settle {from_locked_amount} "
                f"{asset}, only {payer.locked} locked"))
        self._record(from_locked_owner, asset, payer)
        tx_out = self._journal(from_locked_owner, asset, ZERO,
                               -from_locked_amount, "settle:out", listing)

        payee = self._record(to_open_owner, asset)
        payee.open += to_open_amount
        tx_in = self._journal(to_open_owner, asset, to_open_amount, ZERO,
                              "settle:in", listing)
        return tx_out, tx_in

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def withdraw(self, owner: str, asset: str, amount: int) -> Transaction:
        """
        Pay open collateral out to owner.

        The balance is reduced before the push. If the push fails the
        reduction is reversed and TransferFailed propagates.
        """
        self._require_owner(owner)
        _require_amount(amount)
        bal = self.get_balance(owner, asset)
        bal.open = self._debit(bal.open, amount, InsufficientOpen(
            f"{owner}: can't withdraw {amount} {asset}, "
            f"only {bal.open} open"))
        bal = self._record(owner, asset, bal)
        tx = self._journal(owner, asset, -amount, ZERO, "withdraw")

        try:
            self.adapter.push(owner, asset, amount)
        except TransferFailed:
            bal.open += amount
            self.transactions.remove(tx)
            raise
        logger.info("withdrew %d %s to %s", amount, asset, owner)
        return tx

    # ------------------------------------------------------------------
    # Atomic scope
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self):
        """
        All-or-nothing scope for a sequence of ledger calls. If the block
        raises, every balance record, the journal and the transaction id
        counter are put back.
        """
        saved = {key: (b.open, b.locked) for key, b in self.balances.items()}
        journal = list(self.transactions)
        last_id = current_id("tx")
        try:
            yield self
        except Exception:
            for key in list(self.balances):
                if key not in saved:
                    del self.balances[key]
            for key, (open_, locked) in saved.items():
                bal = self.balances[key]
                bal.open, bal.locked = open_, locked
            self.transactions[:] = journal
            set_counter("tx", last_id)
            raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def open_collateral(self, owner: str, asset: str) -> int:
        return self.get_balance(owner, asset).open

    def locked_collateral(self, owner: str, asset: str) -> int:
        return self.get_balance(owner, asset).locked

    def total_held(self, asset: str) -> int:
        """Sum of open + locked over every owner of `asset`."""
        return sum((b.total for b in self.balances.values()
                    if b.asset == asset), ZERO)

    def net_deposits(self, asset: str) -> int:
        """Deposits minus withdrawals, from the journal."""
        return sum(
            (tx.open_delta for tx in self.transactions
             if tx.asset == asset and tx.reason in ("deposit", "withdraw")),
            ZERO,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_owner(self, owner: str) -> None:
        if owner == self.adapter.custody:
            raise NotAuthorized(f"{owner} is the custody account")

    def _record(self, owner: str, asset: str,
                bal: Optional[Balance] = None) -> Balance:
        key = (owner, asset)
        if key not in self.balances:
            self.balances[key] = bal or Balance(owner=owner, asset=asset)
        return self.balances[key]

    @staticmethod
    def _debit(current: int, amount: int, error: Exception) -> int:
        if current < amount:
            raise error
        return current - amount

    def _journal(self, owner: str, asset: str, open_delta: int,
                 locked_delta: int, reason: str,
                 listing: Optional[tuple[str, int]] = None) -> Transaction:
        tx = Transaction.new(owner, asset, open_delta, locked_delta, reason,
                             listing=listing)
        self.transactions.append(tx)
        return tx
