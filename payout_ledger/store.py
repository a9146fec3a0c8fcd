"""Data-access interface consumed by the ledger service, plus the in-memory store."""

import threading
from contextlib import contextmanager
from typing import ContextManager, Iterator, Optional, Protocol
from uuid import UUID

from .errors import (
    AccountExistsError,
    AccountNotFoundError,
    ConflictError,
    DuplicateReferralError,
    PayoutNotFoundError,
)
from .models import Account, AccountPatch, PayoutRequest, ReferralEdge


class LedgerStore(Protocol):
    """Persistence contract for accounts, referral edges and payout requests.

    Implementations must apply ``balance_delta`` as an atomic increment, reject
    a second edge for the same ``referred_id`` at the data layer, and make
    every call issued inside ``transaction()`` all-or-nothing.
    """

    def transaction(self) -> ContextManager["LedgerStore"]:
        ...

    def get_account(self, account_id: UUID) -> Account:
        ...

    def find_account_by_referral_code(self, code: str) -> Account:
        ...

    def insert_account(self, account: Account) -> Account:
        ...

    def update_account(
        self, account_id: UUID, patch: AccountPatch, expected_version: Optional[int] = None
    ) -> Account:
        ...

    def insert_referral_edge(self, edge: ReferralEdge) -> ReferralEdge:
        ...

    def list_referral_edges(self, referrer_id: UUID) -> list[ReferralEdge]:
        ...

    def insert_payout_request(self, request: PayoutRequest) -> PayoutRequest:
        ...

    def get_payout_request(self, payout_id: UUID) -> PayoutRequest:
        ...

    def update_payout_request(self, request: PayoutRequest) -> PayoutRequest:
        ...

    def list_payout_requests(self, account_id: UUID) -> list[PayoutRequest]:
        ...


class InMemoryStore:
    """Process-local store.

    Stored models are never mutated in place; writes replace them with
    copies, so a transaction snapshot is a shallow copy of the dicts.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.accounts: dict[UUID, Account] = {}
        self.referral_codes: dict[str, UUID] = {}
        self.referral_edges: dict[UUID, ReferralEdge] = {}  # keyed by referred_id
        self.payout_requests: dict[UUID, PayoutRequest] = {}

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        with self._lock:
            snapshot = self._snapshot()
            try:
                yield self
            except Exception:
                self._restore(snapshot)
                raise

    def _snapshot(self) -> tuple:
        return (
            dict(self.accounts),
            dict(self.referral_codes),
            dict(self.referral_edges),
            dict(self.payout_requests),
        )

    def _restore(self, snapshot: tuple) -> None:
        (self.accounts, self.referral_codes,
         self.referral_edges, self.payout_requests) = snapshot

    def get_account(self, account_id: UUID) -> Account:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return account.model_copy()

    def find_account_by_referral_code(self, code: str) -> Account:
        with self._lock:
            account_id = self.referral_codes.get(code)
            if account_id is None:
                raise AccountNotFoundError(code)
            return self.get_account(account_id)

    def insert_account(self, account: Account) -> Account:
        with self._lock:
            if account.id in self.accounts:
                raise AccountExistsError(account.id)
            if account.referral_code in self.referral_codes:
                raise ConflictError(f"Referral code {account.referral_code} already in use")
            self.accounts[account.id] = account.model_copy()
            self.referral_codes[account.referral_code] = account.id
            return account.model_copy()

    def update_account(
        self, account_id: UUID, patch: AccountPatch, expected_version: Optional[int] = None
    ) -> Account:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            if expected_version is not None and account.version != expected_version:
                raise ConflictError(
                    f"Account {account_id} was modified concurrently, please retry"
                )
            new_balance = account.balance + patch.balance_delta
            if new_balance < 0:
                raise ConflictError(f"Account {account_id} balance cannot go below zero")

            updates = {"balance": new_balance, "version": account.version + 1}
            if patch.payout_email is not None:
                updates["payout_email"] = patch.payout_email
            updated = account.model_copy(update=updates)
            self.accounts[account_id] = updated
            return updated.model_copy()

    def insert_referral_edge(self, edge: ReferralEdge) -> ReferralEdge:
        with self._lock:
            if edge.referred_id in self.referral_edges:
                raise DuplicateReferralError(edge.referred_id)
            self.referral_edges[edge.referred_id] = edge.model_copy()
            return edge.model_copy()

    def list_referral_edges(self, referrer_id: UUID) -> list[ReferralEdge]:
        with self._lock:
            edges = [e.model_copy() for e in self.referral_edges.values() if e.referrer_id == referrer_id]
        edges.sort(key=lambda e: e.created_at)
        return edges

    def insert_payout_request(self, request: PayoutRequest) -> PayoutRequest:
        with self._lock:
            if request.id in self.payout_requests:
                raise ConflictError(f"Payout request {request.id} already exists")
            self.payout_requests[request.id] = request.model_copy()
            return request.model_copy()

    def get_payout_request(self, payout_id: UUID) -> PayoutRequest:
        with self._lock:
            request = self.payout_requests.get(payout_id)
            if request is None:
                raise PayoutNotFoundError(payout_id)
            return request.model_copy()

    def update_payout_request(self, request: PayoutRequest) -> PayoutRequest:
        with self._lock:
            if request.id not in self.payout_requests:
                raise PayoutNotFoundError(request.id)
            self.payout_requests[request.id] = request.model_copy()
            return request.model_copy()

    def list_payout_requests(self, account_id: UUID) -> list[PayoutRequest]:
        with self._lock:
            requests = [p.model_copy() for p in self.payout_requests.values() if p.account_id == account_id]
        requests.sort(key=lambda p: p.created_at, reverse=True)
        return requests
