"""
Asset transfer adapter. Moves value into and out of the ledger's custody.

Two variants behind one interface:
  - NativeTransfer: the chain's native value. Inbound value is whatever the
    caller attached to the call; outbound value is pushed to the recipient,
    who may reject it.
  - TokenTransfer: a fungible token. Inbound pulls via transfer_from against
    an allowance the owner granted to custody; outbound uses transfer.

No retries. A transfer either completes or raises TransferFailed, and the
ledger treats that as terminal for the call.

Outside a chain the adapter talks to the in-memory backends below
(NativeBank, MemoryToken). Anything with the same methods works.
"""

import logging
from typing import Callable, Optional

from escrow.errors import InvalidAmount, TransferFailed, ValueMismatch
from escrow.models import NATIVE, ZERO


logger = logging.getLogger(__name__)

CUSTODY = "escrow"


# ---------------------------------------------------------------------------
# In-memory asset backends
# ---------------------------------------------------------------------------

class NativeBank:
    """
    Native value wallets.

    hooks: per-recipient callables, hook(sender, amount), run after the
    sender is debited and before the recipient is credited. A hook that
    raises rejects the payment and the sender is refunded. While the hook
    runs the recipient can only spend what it held before the send.
    Hooks are untrusted code and may call back into the ledger.
    rejecting: recipients that refuse all value.
    """

    def __init__(self):
        self.wallets: dict[str, int] = {}
        self.hooks: dict[str, Callable[[str, int], None]] = {}
        self.rejecting: set[str] = set()

    def balance_of(self, address: str) -> int:
        return self.wallets.get(address, ZERO)

    def credit(self, address: str, amount: int) -> None:
        """Faucet. The only way native value enters the simulation."""
        _require_mint(amount)
        self.wallets[address] = self.balance_of(address) + amount

    def send(self, sender: str, to: str, amount: int) -> bool:
        if self.balance_of(sender) < amount or to in self.rejecting:
            return False
        self.wallets[sender] = self.balance_of(sender) - amount
        hook = self.hooks.get(to)
        if hook is not None:
            try:
                hook(sender, amount)
            except Exception:
                self.wallets[sender] += amount
                raise
        self.wallets[to] = self.balance_of(to) + amount
        return True


class MemoryToken:
    """Fungible token with allowances. Non-success is a False return."""

    def __init__(self, address: str, symbol: str = ""):
        self.address = address
        self.symbol = symbol or address
        self.balances: dict[str, int] = {}
        self.allowances: dict[str, dict[str, int]] = {}

    def balance_of(self, address: str) -> int:
        return self.balances.get(address, ZERO)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get(owner, {}).get(spender, ZERO)

    def mint(self, to: str, amount: int) -> None:
        _require_mint(amount)
        self.balances[to] = self.balance_of(to) + amount

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        self.allowances.setdefault(owner, {})[spender] = amount
        return True

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        if self.balance_of(sender) < amount:
            return False
        self.balances[sender] -= amount
        self.balances[to] = self.balance_of(to) + amount
        return True

    def transfer_from(self, spender: str, owner: str, to: str,
                      amount: int) -> bool:
        allowed = self.allowance(owner, spender)
        if allowed < amount or self.balance_of(owner) < amount:
            return False
        self.allowances[owner][spender] = allowed - amount
        self.balances[owner] -= amount
        self.balances[to] = self.balance_of(to) + amount
        return True


def _require_mint(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) \
            or amount <= ZERO:
        raise InvalidAmount(f"minted amount must be a positive integer, "
                            f"got {amount!r}")


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

class NativeTransfer:

    def __init__(self, bank: NativeBank, custody: str = CUSTODY):
        self.bank = bank
        self.custody = custody

    def pull(self, owner: str, amount: int, value: int) -> None:
        """Take the value attached to the call into custody."""
        if value != amount:
            raise ValueMismatch(
                f"attached value {value} != required {amount}")
        self._send(owner, self.custody, amount)

    def push(self, to: str, amount: int) -> None:
        self._send(self.custody, to, amount)

    def balance(self) -> int:
        return self.bank.balance_of(self.custody)

    def _send(self, sender: str, to: str, amount: int) -> None:
        try:
            ok = self.bank.send(sender, to, amount)
        except Exception as e:
            raise TransferFailed(
                f"native transfer {sender} -> {to} of {amount} "
                f"rejected: {e}") from e
        if not ok:
            raise TransferFailed(
                f"native transfer {sender} -> {to} of {amount} failed")


class TokenTransfer:

    def __init__(self, token, custody: str = CUSTODY):
        self.token = token
        self.custody = custody

    def pull(self, owner: str, amount: int, value: int) -> None:
        """Pull from owner against the allowance granted to custody."""
        if value != ZERO:
            raise ValueMismatch(
                f"native value {value} attached to a token transfer")
        self._call("transfer_from", self.custody, owner, self.custody, amount)

    def push(self, to: str, amount: int) -> None:
        self._call("transfer", self.custody, to, amount)

    def balance(self) -> int:
        return self.token.balance_of(self.custody)

    def _call(self, method: str, *args) -> None:
        try:
            ok = getattr(self.token, method)(*args)
        except Exception as e:
            raise TransferFailed(
                f"token {self.token.address}.{method} raised: {e}") from e
        if not ok:
            raise TransferFailed(
                f"token {self.token.address}.{method}{args} returned failure")


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class TransferAdapter:
    """Routes each asset to its variant. Assets: NATIVE or a token address."""

    def __init__(self, bank: Optional[NativeBank] = None,
                 custody: str = CUSTODY):
        self.custody = custody
        self.bank = bank if bank is not None else NativeBank()
        self.tokens: dict[str, object] = {}

    def register_token(self, token) -> None:
        self.tokens[token.address] = token

    def variant(self, asset: str):
        if asset == NATIVE:
            return NativeTransfer(self.bank, self.custody)
        token = self.tokens.get(asset)
        if token is None:
            raise TransferFailed(f"unknown asset {asset}")
        return TokenTransfer(token, self.custody)

    def pull(self, owner: str, asset: str, amount: int,
             value: int = ZERO) -> None:
        try:
            self.variant(asset).pull(owner, amount, value)
        except TransferFailed as e:
            logger.warning("inbound %s from %s failed: %s", asset, owner, e)
            raise

    def push(self, to: str, asset: str, amount: int) -> None:
        try:
            self.variant(asset).push(to, amount)
        except TransferFailed as e:
            logger.warning("outbound %s to %s failed: %s", asset, to, e)
            raise

    def custody_balance(self, asset: str) -> int:
        return self.variant(asset).balance()
