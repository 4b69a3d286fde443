"""
Engine exceptions. Every failure aborts the whole operation; nothing is
retried. The API translates these into structured errors (api_errors.py).
"""


class EscrowError(Exception):
    """Base class. `code` is the machine-readable name used on the wire."""
    code = "escrow_error"


class InsufficientOpen(EscrowError):
    code = "insufficient_open"


class InsufficientLocked(EscrowError):
    """
    Locked balance too small for an unlock or settle.

    internal=True marks a fault in the registry's own bookkeeping (a listing
    believes collateral is locked that the ledger doesn't have) rather than
    a bad request from a caller.
    """
    code = "insufficient_locked"

    def __init__(self, message: str, internal: bool = False):
        super().__init__(message)
        self.internal = internal


class ValueMismatch(EscrowError):
    code = "value_mismatch"


class InsufficientValueSent(EscrowError):
    code = "insufficient_value_sent"


class TransferFailed(EscrowError):
    code = "transfer_failed"


class InvalidState(EscrowError):
    code = "invalid_state"


class NotAuthorized(EscrowError):
    code = "not_authorized"


class InvalidListing(EscrowError):
    code = "invalid_listing"


class InvalidAmount(EscrowError):
    code = "invalid_amount"
