"""Ledger error kinds.

Every error carries a stable ``kind`` that the UI layer renders as a
notification. ``ConflictError`` and ``TransientIOError`` are retryable with
the same input; everything else is a precondition violation.
"""

from uuid import UUID

from .models import format_minor_units


class LedgerServiceError(Exception):
    kind = "LedgerError"
    retryable = False

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self), "retryable": self.retryable}


class NotFoundError(LedgerServiceError):
    kind = "NotFound"


class AccountNotFoundError(NotFoundError):
    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class PayoutNotFoundError(NotFoundError):
    def __init__(self, payout_id: UUID):
        self.payout_id = payout_id
        super().__init__(f"Payout request {payout_id} not found")


class AccountExistsError(LedgerServiceError):
    kind = "AccountExists"

    def __init__(self, account_id: UUID):
        self.account_id = account_id
        super().__init__(f"Account {account_id} already exists")


class DuplicateReferralError(LedgerServiceError):
    kind = "DuplicateReferral"

    def __init__(self, referred_id: UUID):
        self.referred_id = referred_id
        super().__init__(f"Account {referred_id} has already been referred")


class SelfReferralError(LedgerServiceError):
    kind = "SelfReferral"

    def __init__(self, account_id: UUID):
        self.account_id = account_id
        super().__init__("You cannot refer yourself")


class InvalidEmailError(LedgerServiceError):
    kind = "InvalidEmail"


class NoPayoutEmailError(LedgerServiceError):
    kind = "NoPayoutEmail"

    def __init__(self, account_id: UUID):
        self.account_id = account_id
        super().__init__("Please set your Interac email first")


class BelowMinimumError(LedgerServiceError):
    kind = "BelowMinimum"

    def __init__(self, balance: int, minimum: int):
        self.balance = balance
        self.minimum = minimum
        super().__init__(
            f"Minimum ${format_minor_units(minimum)} CAD required for payout"
        )


class InvalidStateTransitionError(LedgerServiceError):
    kind = "InvalidStateTransition"


class ConflictError(LedgerServiceError):
    """Concurrent update collision; retry with the same input."""

    kind = "ConflictError"
    retryable = True


class TransientIOError(LedgerServiceError):
    """Storage unavailable or timed out; retry with the same input."""

    kind = "TransientIO"
    retryable = True
