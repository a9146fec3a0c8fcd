"""SQLAlchemy-backed ledger store."""

import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Integer, String, Uuid, create_engine, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import (
    AccountExistsError,
    AccountNotFoundError,
    ConflictError,
    DuplicateReferralError,
    PayoutNotFoundError,
    TransientIOError,
)
from .logging_config import get_logger
from .models import Account, AccountPatch, PayoutRequest, PayoutStatus, ReferralEdge
from .settings import settings

logger = get_logger(__name__)

IN_MEMORY_SQLITE_URLS = ("sqlite://", "sqlite:///:memory:")


class Base(DeclarativeBase):
    """Base class for all ledger tables."""
    pass


class AccountRow(Base):
    __tablename__ = "accounts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    referral_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    payout_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # minor units
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReferralEdgeRow(Base):
    __tablename__ = "referral_edges"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    referrer_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)
    # one referrer per account, enforced here rather than in the service
    referred_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True)
    bonus_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PayoutRequestRow(Base):
    __tablename__ = "payout_requests"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)
    amount_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    destination_email: Mapped[str] = mapped_column(String(320), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CAD")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PayoutStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)


class SqlStore:
    """Ledger store on a relational database.

    Balance writes are single conditional UPDATE statements, so concurrent
    writers never lose an increment and a stale ``expected_version`` affects
    zero rows instead of overwriting.
    """

    def __init__(self, database_url: Optional[str] = None, timeout_seconds: Optional[float] = None):
        self.database_url = database_url or settings.database_url
        if not self.database_url:
            raise ValueError("database_url is required for SqlStore")
        timeout = timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds

        self.engine = create_engine(self.database_url, **self._engine_options(self.database_url, timeout))
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        self._local = threading.local()
        # in-memory SQLite hands every session the same connection, so
        # transactions from different threads must not interleave on it
        self._shared_connection = self.database_url in IN_MEMORY_SQLITE_URLS
        self._connection_lock = threading.RLock()
        logger.info("sql_store_initialized", url=self.engine.url.render_as_string(hide_password=True))

    @staticmethod
    def _engine_options(database_url: str, timeout: float) -> dict:
        if database_url.startswith("sqlite"):
            options = {"connect_args": {"timeout": timeout, "check_same_thread": False}}
            if database_url in IN_MEMORY_SQLITE_URLS:
                options["poolclass"] = StaticPool
            return options
        return {
            "pool_pre_ping": True,
            "pool_timeout": timeout,
            "connect_args": {"connect_timeout": int(timeout)},
        }

    def create_tables(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        logger.info("tables_created")

    def drop_tables(self) -> None:
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("tables_dropped")

    @contextmanager
    def transaction(self) -> Iterator["SqlStore"]:
        """Run the enclosed store calls in one database transaction.

        Nested calls join the outermost transaction of the current thread.
        """
        if getattr(self._local, "session", None) is not None:
            yield self
            return

        with self._connection_lock if self._shared_connection else nullcontext():
            with self._session_scope():
                yield self

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session = self.SessionLocal()
        self._local.session = session
        try:
            yield session
            session.commit()
        except (OperationalError, PoolTimeoutError) as e:
            session.rollback()
            logger.warning("store_unavailable", error=str(e))
            raise TransientIOError("Storage is temporarily unavailable, please retry") from e
        except IntegrityError as e:
            session.rollback()
            raise ConflictError("Write rejected by a concurrent change, please retry") from e
        except DBAPIError as e:
            session.rollback()
            if e.connection_invalidated:
                raise TransientIOError("Storage connection lost, please retry") from e
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            self._local.session = None
            session.close()

    @property
    def _session(self) -> Session:
        return self._local.session

    def get_account(self, account_id: UUID) -> Account:
        with self.transaction():
            row = self._session.get(AccountRow, account_id)
            if row is None:
                raise AccountNotFoundError(account_id)
            return Account.model_validate(row)

    def find_account_by_referral_code(self, code: str) -> Account:
        with self.transaction():
            row = self._session.scalars(
                select(AccountRow).where(AccountRow.referral_code == code)
            ).first()
            if row is None:
                raise AccountNotFoundError(code)
            return Account.model_validate(row)

    def insert_account(self, account: Account) -> Account:
        with self.transaction():
            if self._session.get(AccountRow, account.id) is not None:
                raise AccountExistsError(account.id)
            self._session.add(AccountRow(**account.model_dump()))
            try:
                self._session.flush()
            except IntegrityError as e:
                raise ConflictError(f"Referral code {account.referral_code} already in use") from e
            return account.model_copy()

    def update_account(
        self, account_id: UUID, patch: AccountPatch, expected_version: Optional[int] = None
    ) -> Account:
        with self.transaction():
            values = {
                "balance": AccountRow.balance + patch.balance_delta,
                "version": AccountRow.version + 1,
            }
            if patch.payout_email is not None:
                values["payout_email"] = patch.payout_email

            stmt = update(AccountRow).where(
                AccountRow.id == account_id,
                AccountRow.balance + patch.balance_delta >= 0,
            )
            if expected_version is not None:
                stmt = stmt.where(AccountRow.version == expected_version)
            result = self._session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )

            row = self._session.get(AccountRow, account_id, populate_existing=True)
            if row is None:
                raise AccountNotFoundError(account_id)
            if result.rowcount == 0:
                if expected_version is not None and row.version != expected_version:
                    raise ConflictError(f"Account {account_id} was modified concurrently, please retry")
                raise ConflictError(f"Account {account_id} balance cannot go below zero")
            return Account.model_validate(row)

    def insert_referral_edge(self, edge: ReferralEdge) -> ReferralEdge:
        with self.transaction():
            self._session.add(ReferralEdgeRow(**edge.model_dump()))
            try:
                self._session.flush()
            except IntegrityError as e:
                raise DuplicateReferralError(edge.referred_id) from e
            return edge.model_copy()

    def list_referral_edges(self, referrer_id: UUID) -> list[ReferralEdge]:
        with self.transaction():
            rows = self._session.scalars(
                select(ReferralEdgeRow)
                .where(ReferralEdgeRow.referrer_id == referrer_id)
                .order_by(ReferralEdgeRow.created_at)
            ).all()
            return [ReferralEdge.model_validate(r) for r in rows]

    def insert_payout_request(self, request: PayoutRequest) -> PayoutRequest:
        with self.transaction():
            data = request.model_dump()
            data["status"] = request.status.value
            self._session.add(PayoutRequestRow(**data))
            self._session.flush()
            return request.model_copy()

    def get_payout_request(self, payout_id: UUID) -> PayoutRequest:
        with self.transaction():
            row = self._session.get(PayoutRequestRow, payout_id)
            if row is None:
                raise PayoutNotFoundError(payout_id)
            return PayoutRequest.model_validate(row)

    def update_payout_request(self, request: PayoutRequest) -> PayoutRequest:
        with self.transaction():
            row = self._session.get(PayoutRequestRow, request.id)
            if row is None:
                raise PayoutNotFoundError(request.id)
            row.status = request.status.value
            row.resolved_at = request.resolved_at
            row.rejection_reason = request.rejection_reason
            self._session.flush()
            return PayoutRequest.model_validate(row)

    def list_payout_requests(self, account_id: UUID) -> list[PayoutRequest]:
        with self.transaction():
            rows = self._session.scalars(
                select(PayoutRequestRow)
                .where(PayoutRequestRow.account_id == account_id)
                .order_by(PayoutRequestRow.created_at.desc())
            ).all()
            return [PayoutRequest.model_validate(r) for r in rows]
