"""
Earnings ledger for the Interac referral dashboard

This module provides:
- Signup bonus and referral credits, at most one referrer per account
- Payout requests that drain the balance atomically
- Pending → settled / rejected payout lifecycle, with refund on rejection
- Balances as integer CAD cents
"""

from .errors import (
    LedgerServiceError,
    NotFoundError,
    AccountExistsError,
    AccountNotFoundError,
    PayoutNotFoundError,
    DuplicateReferralError,
    SelfReferralError,
    InvalidEmailError,
    NoPayoutEmailError,
    BelowMinimumError,
    InvalidStateTransitionError,
    ConflictError,
    TransientIOError,
)
from .models import (
    Account,
    AccountPatch,
    AccountSummary,
    PayoutRequest,
    PayoutStatus,
    ReferralEdge,
)
from .service import LedgerService
from .store import InMemoryStore, LedgerStore

__all__ = [
    "LedgerServiceError",
    "NotFoundError",
    "AccountExistsError",
    "AccountNotFoundError",
    "PayoutNotFoundError",
    "DuplicateReferralError",
    "SelfReferralError",
    "InvalidEmailError",
    "NoPayoutEmailError",
    "BelowMinimumError",
    "InvalidStateTransitionError",
    "ConflictError",
    "TransientIOError",
    "Account",
    "AccountPatch",
    "AccountSummary",
    "PayoutRequest",
    "PayoutStatus",
    "ReferralEdge",
    "LedgerService",
    "InMemoryStore",
    "LedgerStore",
]
