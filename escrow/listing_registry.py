"""
Listing registry. Manages listings per seller and their lifecycle, and
talks to the collateral ledger for every balance change (lock/unlock/
settle). It never touches a balance record itself.

Collateral model:
  - Listed:        seller has `price` locked.
  - BuyCommitted:  seller `price` locked, buyer `2 * price` locked
                   (payment plus matching collateral).
  - Sent:          same as BuyCommitted.
  - Received:      everything settled. Seller's own `price` and the buyer's
                   payment `price` land in the seller's open balance; the
                   buyer's remaining `price` of collateral returns to the
                   buyer's open balance.
  - Canceled:      seller's `price` unlocked.

Every operation checks all preconditions first, then runs its ledger calls
inside ledger.atomic(), so a failure anywhere leaves both the registry and
the ledger exactly as they were.

Indices are a per-seller counter. They are never reused, even after a
listing is canceled.
"""

import logging

from escrow.collateral_ledger import CollateralLedger
from escrow.errors import (
    InsufficientLocked, InvalidAmount, InvalidListing, InvalidState,
    NotAuthorized, ValueMismatch,
)
from escrow.models import (
    Listing, ListingState, NATIVE, ZERO, is_empty_ref, item_ref,
)


logger = logging.getLogger(__name__)


class ListingRegistry:

    def __init__(self, ledger: CollateralLedger):
        self.ledger = ledger
        self.listings: dict[str, list[Listing]] = {}

    # ------------------------------------------------------------------
    # Seller operations
    # ------------------------------------------------------------------

    def list_item(self, seller: str, item_reference, price: int,
                  asset: str = NATIVE, value: int = ZERO) -> Listing:
        """
        List an item at the seller's next index and lock `price` of the
        seller's collateral. Any shortfall is pulled in via `value`.
        """
        _require_account(seller)
        try:
            ref = item_ref(item_reference)
        except (TypeError, ValueError) as e:
            raise InvalidListing(f"bad item reference: {e}") from e
        if is_empty_ref(ref):
            raise InvalidListing("item reference is empty")
        _require_price(price)

        items = self.listings.get(seller, [])
        listing = Listing(seller=seller, index=len(items),
                          item_reference=ref, price=price, asset=asset)

        with self.ledger.atomic():
            self.ledger.lock(seller, asset, price, value=value,
                             listing=listing.key)
        self.listings.setdefault(seller, []).append(listing)
        logger.info("listed %s#%d at %d %s", seller, listing.index, price,
                    asset)
        return listing

    def update_price(self, seller: str, index: int, new_price: int,
                     value: int = ZERO) -> Listing:
        """
        Change the price of a Listed item. An increase locks the difference
        (pulling any shortfall via `value`); a decrease unlocks it.
        """
        listing = self._get_listing(seller, index)
        _require_state(listing, ListingState.LISTED)
        _require_price(new_price)
        if new_price == listing.price:
            raise InvalidAmount(
                f"{seller}#{index} is already priced at {new_price}")

        with self.ledger.atomic():
            if new_price > listing.price:
                self.ledger.lock(seller, listing.asset,
                                 new_price - listing.price, value=value,
                                 listing=listing.key)
            elif value != ZERO:
                raise ValueMismatch(
                    f"{value} attached to a price decrease on "
                    f"{seller}#{index}")
            else:
                self._unlock(seller, listing, listing.price - new_price)
        old_price = listing.price
        listing.price = new_price
        listing.touch()
        logger.info("repriced %s#%d %d -> %d", seller, index, old_price,
                    new_price)
        return listing

    def cancel(self, seller: str, index: int) -> Listing:
        """Withdraw a Listed item from sale. The seller's lock is released."""
        listing = self._get_listing(seller, index)
        _require_state(listing, ListingState.LISTED)

        with self.ledger.atomic():
            self._unlock(seller, listing, listing.price)
        listing.state = ListingState.CANCELED
        listing.touch()
        logger.info("canceled %s#%d", seller, index)
        return listing

    def mark_sent(self, seller: str, index: int) -> Listing:
        """Seller reports the item handed over. No balance change."""
        listing = self._get_listing(seller, index)
        _require_state(listing, ListingState.BUY_COMMITTED)
        listing.state = ListingState.SENT
        listing.touch()
        logger.info("sent %s#%d to %s", seller, index, listing.buyer)
        return listing

    # ------------------------------------------------------------------
    # Buyer operations
    # ------------------------------------------------------------------

    def buy(self, buyer: str, seller: str, index: int,
            value: int = ZERO) -> Listing:
        """Commit to buy. Locks `2 * price` of the buyer's collateral."""
        _require_account(buyer)
        listing = self._get_listing(seller, index)
        _require_state(listing, ListingState.LISTED)
        if buyer == seller:
            raise NotAuthorized(f"{seller} can't buy their own listing")

        with self.ledger.atomic():
            self.ledger.lock(buyer, listing.asset, listing.buyer_collateral,
                             value=value, listing=listing.key)
        listing.buyer = buyer
        listing.state = ListingState.BUY_COMMITTED
        listing.touch()
        logger.info("%s committed to buy %s#%d", buyer, seller, index)
        return listing

    def cancel_buy(self, buyer: str, seller: str, index: int) -> Listing:
        """Back out before the item is sent. Buyer's lock is released."""
        listing = self._get_listing(seller, index)
        _require_state(listing, ListingState.BUY_COMMITTED)
        _require_buyer(listing, buyer)

        with self.ledger.atomic():
            self._unlock(buyer, listing, listing.buyer_collateral)
        listing.buyer = None
        listing.state = ListingState.LISTED
        listing.touch()
        logger.info("%s canceled buy of %s#%d", buyer, seller, index)
        return listing

    def mark_received(self, buyer: str, seller: str, index: int) -> Listing:
        """
        Buyer confirms receipt. Settles all collateral on the listing:

            seller locked price  -> seller open price
            buyer  locked price  -> seller open price   (payment)
            buyer  locked price  -> buyer  open price   (collateral back)
        """
        listing = self._get_listing(seller, index)
        _require_state(listing, ListingState.SENT)
        _require_buyer(listing, buyer)

        price, asset, key = listing.price, listing.asset, listing.key
        try:
            with self.ledger.atomic():
                self.ledger.settle(seller, price, seller, price, asset, key)
                self.ledger.settle(buyer, price, seller, price, asset, key)
                self.ledger.settle(buyer, price, buyer, price, asset, key)
        except InsufficientLocked as e:
            raise self._inconsistency(listing, e) from e
        listing.state = ListingState.RECEIVED
        listing.touch()
        logger.info("%s received %s#%d, settled %d %s", buyer, seller, index,
                    price, asset)
        return listing

    # ------------------------------------------------------------------
    # Pass-throughs to the ledger
    # ------------------------------------------------------------------

    def deposit(self, owner: str, asset: str, amount: int,
                value: int = ZERO):
        _require_account(owner)
        return self.ledger.deposit(owner, asset, amount, value=value)

    def withdraw(self, owner: str, asset: str, amount: int):
        return self.ledger.withdraw(owner, asset, amount)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_item(self, seller: str, index: int) -> Listing:
        return self._get_listing(seller, index)

    def get_items(self, seller: str) -> list[Listing]:
        return list(self.listings.get(seller, []))

    def check_open_collateral(self, owner: str, asset: str = NATIVE) -> int:
        return self.ledger.open_collateral(owner, asset)

    def check_locked_collateral(self, owner: str, asset: str = NATIVE) -> int:
        return self.ledger.locked_collateral(owner, asset)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _get_listing(self, seller: str, index: int) -> Listing:
        items = self.listings.get(seller, [])
        if isinstance(index, bool) or not isinstance(index, int) \
                or not 0 <= index < len(items):
            raise InvalidListing(f"listing {seller}#{index} not found")
        return items[index]

    def _unlock(self, owner: str, listing: Listing, amount: int) -> None:
        try:
            self.ledger.unlock(owner, listing.asset, amount,
                               listing=listing.key)
        except InsufficientLocked as e:
            raise self._inconsistency(listing, e) from e

    def _inconsistency(self, listing: Listing,
                       exc: InsufficientLocked) -> InsufficientLocked:
        """The listing says collateral is locked; the ledger disagrees."""
        logger.error("ledger inconsistency on %s#%d (%s): %s",
                     listing.seller, listing.index, listing.state.value, exc)
        return InsufficientLocked(str(exc), internal=True)


def _require_account(account: str) -> None:
    if not isinstance(account, str) or not account:
        raise NotAuthorized(f"invalid account {account!r}")


def _require_price(price: int) -> None:
    if isinstance(price, bool) or not isinstance(price, int) or price <= ZERO:
        raise InvalidAmount(f"price must be a positive integer, got {price!r}")


def _require_state(listing: Listing, state: ListingState) -> None:
    if listing.state.terminal:
        raise InvalidState(
            f"listing {listing.seller}#{listing.index} is "
            f"{listing.state.value} and can no longer change")
    if listing.state != state:
        raise InvalidState(
            f"listing {listing.seller}#{listing.index} is "
            f"{listing.state.value}, needs {state.value}")


def _require_buyer(listing: Listing, caller: str) -> None:
    if listing.buyer != caller:
        raise NotAuthorized(
            f"{caller} is not the buyer of {listing.seller}#{listing.index}")
