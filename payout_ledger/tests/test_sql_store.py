"""Tests for the SQLAlchemy store, run against in-memory SQLite."""

import threading
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

import pytest

from payout_ledger.errors import (
    AccountExistsError,
    AccountNotFoundError,
    BelowMinimumError,
    ConflictError,
    DuplicateReferralError,
    PayoutNotFoundError,
    TransientIOError,
)
from payout_ledger.models import Account, AccountPatch, PayoutRequest, PayoutStatus, ReferralEdge
from payout_ledger.service import LedgerService
from payout_ledger.settings import Settings
from payout_ledger.sql_store import SqlStore


@pytest.fixture
def store():
    sql_store = SqlStore("sqlite://", timeout_seconds=5)
    sql_store.create_tables()
    yield sql_store
    sql_store.drop_tables()
    sql_store.engine.dispose()


@pytest.fixture
def service(store):
    return LedgerService(store=store, settings=Settings(signup_bonus=1000, referral_bonus=1000, minimum_payout=1000))


def insert(store, balance=0, code=None, email=None) -> Account:
    return store.insert_account(Account(referral_code=code or uuid4().hex[:8].upper(), balance=balance, payout_email=email))


class TestAccounts:
    def test_roundtrip(self, store):
        account = insert(store, balance=1000, code="ABCD2345")

        loaded = store.get_account(account.id)
        assert loaded.balance == 1000
        assert loaded.version == 0
        assert store.find_account_by_referral_code("ABCD2345").id == account.id

    def test_missing_account(self, store):
        with pytest.raises(AccountNotFoundError):
            store.get_account(uuid4())
        with pytest.raises(AccountNotFoundError):
            store.find_account_by_referral_code("NOPE")

    def test_duplicate_id_is_terminal(self, store):
        """Re-inserting an existing id is not reported as a retryable conflict."""
        account = insert(store, code="FIRST234")

        with pytest.raises(AccountExistsError) as exc_info:
            store.insert_account(Account(id=account.id, referral_code="OTHER234"))

        assert not exc_info.value.retryable
        assert store.get_account(account.id).referral_code == "FIRST234"

    def test_duplicate_referral_code(self, store):
        insert(store, code="SAME2345")

        with pytest.raises(ConflictError):
            insert(store, code="SAME2345")

    def test_increment_bumps_version(self, store):
        account = insert(store, balance=100)

        updated = store.update_account(account.id, AccountPatch(balance_delta=250))

        assert updated.balance == 350
        assert updated.version == 1

    def test_negative_balance_refused(self, store):
        """A debit larger than the balance changes nothing."""
        account = insert(store, balance=100)

        with pytest.raises(ConflictError):
            store.update_account(account.id, AccountPatch(balance_delta=-101))

        assert store.get_account(account.id).balance == 100

    def test_stale_version_refused(self, store):
        account = insert(store, balance=1000)
        store.update_account(account.id, AccountPatch(balance_delta=5))

        with pytest.raises(ConflictError):
            store.update_account(account.id, AccountPatch(balance_delta=-1000), expected_version=0)

        assert store.get_account(account.id).balance == 1005

    def test_update_missing_account(self, store):
        with pytest.raises(AccountNotFoundError):
            store.update_account(uuid4(), AccountPatch(balance_delta=1))

    def test_patch_email_only(self, store):
        account = insert(store, balance=700)

        updated = store.update_account(account.id, AccountPatch(payout_email="user@example.com"))

        assert updated.payout_email == "user@example.com"
        assert updated.balance == 700


class TestReferralEdges:
    def test_unique_referred_id(self, store):
        """The unique constraint rejects a second edge for the same account."""
        referrer = insert(store)
        other = insert(store)
        referred_id = uuid4()
        store.insert_referral_edge(ReferralEdge(referrer_id=referrer.id, referred_id=referred_id, bonus_amount=1000))

        with pytest.raises(DuplicateReferralError):
            store.insert_referral_edge(ReferralEdge(referrer_id=other.id, referred_id=referred_id, bonus_amount=1000))

        assert len(store.list_referral_edges(referrer.id)) == 1
        assert store.list_referral_edges(other.id) == []


class TestTransactions:
    def test_rollback_on_error(self, store):
        """Nothing inside a failed transaction is persisted."""
        account = insert(store, balance=1000, email="user@example.com")

        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.update_account(account.id, AccountPatch(balance_delta=-1000))
                tx.insert_payout_request(PayoutRequest(
                    account_id=account.id, amount_requested=1000, destination_email="user@example.com",
                ))
                raise RuntimeError("boom")

        assert store.get_account(account.id).balance == 1000
        assert store.list_payout_requests(account.id) == []

    def test_payout_not_found(self, store):
        with pytest.raises(PayoutNotFoundError):
            store.get_payout_request(uuid4())


class TestServiceOnSql:
    """End-to-end ledger flows against the SQL store."""

    def test_referral_then_payout(self, service):
        referrer = service.open_account()
        service.open_account(referral_code=referrer.referral_code)
        service.set_payout_destination(referrer.id, "user@example.com")

        summary = service.get_account_summary(referrer.id)
        assert summary.balance == 2000
        assert summary.referral_count == 1

        payout = service.request_payout(referrer.id)
        assert payout.amount_requested == 2000
        assert service.get_account_summary(referrer.id).balance == 0

        with pytest.raises(BelowMinimumError):
            service.request_payout(referrer.id)

    def test_duplicate_referral_single_credit(self, service):
        referrer = service.open_account()
        referred = service.open_account()

        service.credit_referral_bonus(referrer.id, referred.id)
        with pytest.raises(DuplicateReferralError):
            service.credit_referral_bonus(referrer.id, referred.id)

        assert service.get_account(referrer.id).balance == 2000

    def test_reject_refunds(self, service):
        account = service.open_account()
        service.set_payout_destination(account.id, "user@example.com")
        payout = service.request_payout(account.id)

        rejected = service.reject_payout(payout.id, "bounced")

        assert rejected.status == PayoutStatus.REJECTED
        assert service.get_payout(payout.id).status == PayoutStatus.REJECTED
        assert service.get_account(account.id).balance == 1000

    def test_open_account_with_existing_id(self, service):
        account = service.open_account()

        with pytest.raises(AccountExistsError):
            service.open_account(account_id=account.id)

        assert service.get_account(account.id).balance == 1000


class TestConcurrentPayouts:
    """Simultaneous payout requests on one account drain it exactly once."""

    @pytest.mark.parametrize("backend", ["memory", "file"])
    def test_only_one_payout_succeeds(self, backend, tmp_path):
        url = "sqlite://" if backend == "memory" else f"sqlite:///{tmp_path / 'ledger.db'}"
        sql_store = SqlStore(url, timeout_seconds=5)
        sql_store.create_tables()
        service = LedgerService(store=sql_store, settings=Settings(minimum_payout=1000))
        account = insert(sql_store, balance=5000, email="user@example.com")
        workers = 8
        barrier = threading.Barrier(workers)

        def attempt(_):
            barrier.wait()
            try:
                return service.request_payout(account.id)
            except (ConflictError, BelowMinimumError, TransientIOError) as e:
                return e

        try:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(attempt, range(workers)))

            successes = [r for r in results if not isinstance(r, Exception)]
            payouts = sql_store.list_payout_requests(account.id)
            assert len(successes) == 1
            assert successes[0].amount_requested == 5000
            assert sql_store.get_account(account.id).balance == 0
            assert [p.id for p in payouts] == [successes[0].id]
            assert sum(p.amount_requested for p in payouts) == 5000
        finally:
            sql_store.drop_tables()
            sql_store.engine.dispose()
