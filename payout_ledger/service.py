import secrets
from typing import Optional
from uuid import UUID, uuid4

from pydantic import validate_email
from pydantic_core import PydanticCustomError

from .errors import (
    BelowMinimumError,
    ConflictError,
    InvalidEmailError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NoPayoutEmailError,
    NotFoundError,
    SelfReferralError,
)
from .logging_config import get_logger
from .models import (
    Account,
    AccountPatch,
    AccountSummary,
    PayoutRequest,
    PayoutStatus,
    ReferralEdge,
    format_minor_units,
    utcnow,
)
from .settings import Settings, settings as default_settings
from .store import InMemoryStore, LedgerStore

logger = get_logger(__name__)

# No 0/O, 1/I/L: codes get read aloud and retyped
REFERRAL_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
REFERRAL_CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 10


def generate_referral_code(length: int = REFERRAL_CODE_LENGTH) -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))


def normalize_email(email: str) -> str:
    """Return ``email`` stripped, or raise InvalidEmailError if malformed."""
    candidate = (email or "").strip()
    if not candidate:
        raise InvalidEmailError("Please enter your Interac email")
    if "<" in candidate or ">" in candidate:
        # "Name <addr>" would pass validation with the name silently dropped
        raise InvalidEmailError(f"'{candidate}' is not a valid email address")
    try:
        _, normalized = validate_email(candidate)
    except PydanticCustomError as e:
        raise InvalidEmailError(f"'{candidate}' is not a valid email address") from e
    return normalized


class LedgerService:
    """Owns every mutation of an account balance.

    The caller supplies the authenticated account id on every call. No
    operation retries on its own: ``ConflictError`` and ``TransientIOError``
    go back to the caller, who may repeat the call unchanged.
    """

    def __init__(self, store: Optional[LedgerStore] = None, settings: Optional[Settings] = None):
        self.store = store or InMemoryStore()
        self.settings = settings or default_settings

    # -- accounts ---------------------------------------------------------

    def open_account(self, referral_code: Optional[str] = None, account_id: Optional[UUID] = None) -> Account:
        """Create an account holding the signup bonus.

        A referral code attributes the signup to its owner, who is credited
        in a separate transaction. A bad code never fails the signup.
        """
        account = self._insert_new_account(account_id or uuid4())
        logger.info(
            "account_opened",
            account_id=str(account.id),
            referral_code=account.referral_code,
            signup_bonus=account.balance,
        )

        code = (referral_code or "").strip().upper()
        if code:
            try:
                referrer = self.store.find_account_by_referral_code(code)
                self.credit_referral_bonus(referrer.id, account.id)
            except NotFoundError as e:
                logger.warning(
                    "signup_referral_skipped",
                    account_id=str(account.id),
                    referral_code=code,
                    kind=e.kind,
                    error=str(e),
                )
        return self.store.get_account(account.id)

    def _insert_new_account(self, account_id: UUID) -> Account:
        # AccountExistsError is terminal and propagates; only code collisions retry
        for attempt in range(MAX_CODE_ATTEMPTS):
            account = Account(
                id=account_id,
                referral_code=generate_referral_code(),
                balance=self.settings.signup_bonus,
            )
            try:
                return self.store.insert_account(account)
            except ConflictError:
                if attempt == MAX_CODE_ATTEMPTS - 1:
                    raise
                logger.debug("referral_code_collision", code=account.referral_code)
        raise ConflictError("Could not allocate a unique referral code")

    def get_account(self, account_id: UUID) -> Account:
        return self.store.get_account(account_id)

    def get_account_summary(self, account_id: UUID) -> AccountSummary:
        account = self.store.get_account(account_id)
        referral_count = len(self.store.list_referral_edges(account_id))
        return AccountSummary(
            account_id=account.id,
            balance=account.balance,
            balance_display=format_minor_units(account.balance),
            payout_email=account.payout_email,
            referral_code=account.referral_code,
            referral_count=referral_count,
        )

    def referral_link(self, account_id: UUID, base_url: Optional[str] = None) -> str:
        account = self.store.get_account(account_id)
        base = (base_url or self.settings.public_base_url).rstrip("/")
        return f"{base}?ref={account.referral_code}"

    # -- referrals --------------------------------------------------------

    def credit_referral_bonus(
        self, referrer_id: UUID, referred_id: UUID, bonus_amount: Optional[int] = None
    ) -> ReferralEdge:
        if referrer_id == referred_id:
            logger.warning("referral_rejected", kind=SelfReferralError.kind, account_id=str(referrer_id))
            raise SelfReferralError(referrer_id)

        amount = self.settings.referral_bonus if bonus_amount is None else bonus_amount
        if amount <= 0:
            raise ValueError("Referral bonus must be positive")

        edge = ReferralEdge(referrer_id=referrer_id, referred_id=referred_id, bonus_amount=amount)
        try:
            with self.store.transaction() as tx:
                tx.get_account(referrer_id)
                edge = tx.insert_referral_edge(edge)
                referrer = tx.update_account(referrer_id, AccountPatch(balance_delta=amount))
        except LedgerServiceError as e:
            logger.warning(
                "referral_rejected",
                kind=e.kind,
                referrer_id=str(referrer_id),
                referred_id=str(referred_id),
            )
            raise

        logger.info(
            "referral_credited",
            referrer_id=str(referrer_id),
            referred_id=str(referred_id),
            amount=amount,
            new_balance=referrer.balance,
        )
        return edge

    def list_referrals(self, account_id: UUID) -> list[ReferralEdge]:
        self.store.get_account(account_id)
        return self.store.list_referral_edges(account_id)

    # -- payouts ----------------------------------------------------------

    def set_payout_destination(self, account_id: UUID, email: str) -> Account:
        try:
            normalized = normalize_email(email)
        except InvalidEmailError:
            logger.warning("payout_destination_rejected", account_id=str(account_id), kind=InvalidEmailError.kind)
            raise

        account = self.store.update_account(account_id, AccountPatch(payout_email=normalized))
        logger.info("payout_destination_updated", account_id=str(account_id))
        return account

    def request_payout(self, account_id: UUID) -> PayoutRequest:
        """Drain the whole balance into a pending payout request.

        The balance check and the drain are tied together by the account
        version: if another writer touched the account in between, the
        drain fails with ConflictError and nothing is written.
        """
        account = self.store.get_account(account_id)

        if not account.payout_email:
            logger.warning("payout_rejected", account_id=str(account_id), kind=NoPayoutEmailError.kind)
            raise NoPayoutEmailError(account_id)

        if account.balance < self.settings.minimum_payout:
            logger.warning(
                "payout_rejected",
                account_id=str(account_id),
                kind=BelowMinimumError.kind,
                balance=account.balance,
            )
            raise BelowMinimumError(account.balance, self.settings.minimum_payout)

        payout = PayoutRequest(
            account_id=account_id,
            amount_requested=account.balance,
            destination_email=account.payout_email,
            currency=self.settings.currency,
        )
        try:
            with self.store.transaction() as tx:
                tx.update_account(
                    account_id,
                    AccountPatch(balance_delta=-account.balance),
                    expected_version=account.version,
                )
                payout = tx.insert_payout_request(payout)
        except ConflictError:
            logger.warning("payout_conflict", account_id=str(account_id), version=account.version)
            raise

        logger.info(
            "payout_requested",
            account_id=str(account_id),
            payout_id=str(payout.id),
            amount=payout.amount_requested,
        )
        return payout

    def get_payout(self, payout_id: UUID) -> PayoutRequest:
        return self.store.get_payout_request(payout_id)

    def list_payouts(self, account_id: UUID) -> list[PayoutRequest]:
        self.store.get_account(account_id)
        return self.store.list_payout_requests(account_id)

    # -- settlement -------------------------------------------------------

    def settle_payout(self, payout_id: UUID) -> PayoutRequest:
        with self.store.transaction() as tx:
            payout = tx.get_payout_request(payout_id)
            if not payout.can_resolve():
                raise InvalidStateTransitionError(f"Cannot settle payout in {payout.status.value} state")
            payout = tx.update_payout_request(
                payout.model_copy(update={"status": PayoutStatus.SETTLED, "resolved_at": utcnow()})
            )

        logger.info("payout_settled", payout_id=str(payout_id), account_id=str(payout.account_id))
        return payout

    def reject_payout(self, payout_id: UUID, reason: str) -> PayoutRequest:
        """Mark a pending payout as failed and give the amount back."""
        with self.store.transaction() as tx:
            payout = tx.get_payout_request(payout_id)
            if not payout.can_resolve():
                raise InvalidStateTransitionError(
                    f"Cannot reject payout in {payout.status.value} state. Only PENDING payouts can be rejected."
                )
            payout = tx.update_payout_request(
                payout.model_copy(update={
                    "status": PayoutStatus.REJECTED,
                    "resolved_at": utcnow(),
                    "rejection_reason": reason,
                })
            )
            account = tx.update_account(payout.account_id, AccountPatch(balance_delta=payout.amount_requested))

        logger.info(
            "payout_rejected_refunded",
            payout_id=str(payout_id),
            account_id=str(payout.account_id),
            amount=payout.amount_requested,
            new_balance=account.balance,
            reason=reason,
        )
        return payout
