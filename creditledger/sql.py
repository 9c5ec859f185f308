"""SQLAlchemy-backed ledger storage."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import AccountNotFound, DuplicateKey, InsufficientFunds, LedgerStoreError
from .models import CreditClass, NewTransaction, Transaction, TransactionStatus, User

log = logging.getLogger(__name__)

Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=False)
    api_token = Column(String, unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String, unique=True, nullable=True)


class AccountRow(Base):
    """Balance of one credit class for one user."""

    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    credit_class = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)


class TransactionRow(Base):
    """Immutable transaction log entry."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    credit_class = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    balance_after = Column(Integer, nullable=True)
    reference_tx_id = Column(String, unique=True, nullable=True)
    stripe_event_id = Column(String, unique=True, nullable=True)
    related_tx_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


def create_ledger_engine(database_url: str, timeout: float) -> Engine:
    """Engine whose connections give up after ``timeout`` seconds."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"timeout": timeout, "check_same_thread": False},
        )
    connect_args = {}
    if database_url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": max(int(timeout), 1),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    return create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True,
        pool_timeout=timeout,
    )


class SqlStorage:
    def __init__(self, database_url: str, timeout: float = 5.0, engine: Optional[Engine] = None):
        self.engine = engine or create_ledger_engine(database_url, timeout)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        log.info("ledger.schema.ready", extra={"url": self.engine.url.render_as_string(hide_password=True)})

    def add_user(
        self,
        user_id: int,
        api_token: str,
        stripe_customer_id: Optional[str] = None,
        basis: int = 0,
        premium: int = 0,
    ) -> User:
        with self.unit_of_work() as session:
            session.db.add(UserRow(id=user_id, api_token=api_token, stripe_customer_id=stripe_customer_id))
            session.db.flush()
            session.db.add_all([
                AccountRow(user_id=user_id, credit_class=CreditClass.BASIS.value, balance=basis),
                AccountRow(user_id=user_id, credit_class=CreditClass.PREMIUM.value, balance=premium),
            ])
        return User(id=user_id, api_token=api_token, stripe_customer_id=stripe_customer_id)

    @contextmanager
    def unit_of_work(self) -> Iterator["_SqlSession"]:
        db = self._session_factory()
        try:
            yield _SqlSession(db)
            db.commit()
        except OperationalError as exc:
            db.rollback()
            raise LedgerStoreError(f"ledger store unavailable: {exc.orig}") from exc
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()


class _SqlSession:
    def __init__(self, db: Session):
        self.db = db

    def get_balance(self, user_id: int, credit_class: CreditClass) -> int:
        balance = self.db.execute(
            select(AccountRow.balance).where(
                AccountRow.user_id == user_id,
                AccountRow.credit_class == CreditClass(credit_class).value,
            )
        ).scalar_one_or_none()
        if balance is None:
            raise AccountNotFound(f"No {CreditClass(credit_class).value} account for user {user_id}")
        return int(balance)

    def adjust_balance(self, user_id: int, credit_class: CreditClass, delta: int) -> int:
        # Conditional update: the row lock serialises concurrent writers and
        # the guard is re-checked against the committed balance.
        accounts = AccountRow.__table__
        result = self.db.execute(
            update(accounts)
            .where(
                accounts.c.user_id == user_id,
                accounts.c.credit_class == CreditClass(credit_class).value,
                accounts.c.balance + delta >= 0,
            )
            .values(balance=accounts.c.balance + delta)
        )
        if result.rowcount == 0:
            current = self.get_balance(user_id, credit_class)
            raise InsufficientFunds(current, -delta)
        return self.get_balance(user_id, credit_class)

    def append(self, transaction: NewTransaction) -> int:
        values = transaction.model_dump()
        values["type"] = transaction.type.value
        values["credit_class"] = transaction.credit_class.value
        values["status"] = transaction.status.value
        row = TransactionRow(**values)
        self.db.add(row)
        try:
            self.db.flush()
        except IntegrityError as exc:
            if transaction.stripe_event_id:
                raise DuplicateKey("stripe_event_id", transaction.stripe_event_id) from exc
            if transaction.reference_tx_id:
                raise DuplicateKey("reference_tx_id", transaction.reference_tx_id) from exc
            raise LedgerStoreError(f"transaction rejected by store: {exc.orig}") from exc
        return row.id

    def get(self, transaction_id: int) -> Optional[Transaction]:
        row = self.db.get(TransactionRow, transaction_id)
        return Transaction.model_validate(row) if row else None

    def _find_one(self, *criteria) -> Optional[Transaction]:
        row = self.db.execute(select(TransactionRow).where(*criteria)).scalar_one_or_none()
        return Transaction.model_validate(row) if row else None

    def find_by_reference(self, reference_tx_id: str) -> Optional[Transaction]:
        return self._find_one(TransactionRow.reference_tx_id == reference_tx_id)

    def find_by_stripe_event(self, stripe_event_id: str) -> Optional[Transaction]:
        return self._find_one(TransactionRow.stripe_event_id == stripe_event_id)

    def list_transactions(self, user_id: int, limit: int = 50, offset: int = 0) -> tuple[list[Transaction], int]:
        total = self.db.execute(
            select(func.count()).select_from(TransactionRow).where(TransactionRow.user_id == user_id)
        ).scalar_one()
        rows = self.db.execute(
            select(TransactionRow)
            .where(TransactionRow.user_id == user_id)
            .order_by(TransactionRow.id.desc())
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return [Transaction.model_validate(r) for r in rows], int(total)

    def list_by_status(self, status: TransactionStatus) -> list[Transaction]:
        rows = self.db.execute(
            select(TransactionRow)
            .where(TransactionRow.status == TransactionStatus(status).value)
            .order_by(TransactionRow.id)
        ).scalars().all()
        return [Transaction.model_validate(r) for r in rows]

    def _find_user(self, *criteria) -> Optional[User]:
        row = self.db.execute(select(UserRow).where(*criteria)).scalar_one_or_none()
        return User.model_validate(row) if row else None

    def find_user(self, user_id: int) -> Optional[User]:
        return self._find_user(UserRow.id == user_id)

    def find_user_by_token(self, api_token: str) -> Optional[User]:
        return self._find_user(UserRow.api_token == api_token)

    def find_user_by_stripe_customer(self, stripe_customer_id: str) -> Optional[User]:
        return self._find_user(UserRow.stripe_customer_id == stripe_customer_id)
