"""
Ledger storage contracts and the in-memory backend.

A storage hands out units of work. Everything done through the session of
one unit of work commits together or not at all: the balance change and the
transaction-log append of a charge, refund or purchase are never split.
"""

import threading
from contextlib import contextmanager
from typing import ContextManager, Iterator, Optional, Protocol

from .errors import AccountNotFound, DuplicateKey, InsufficientFunds, LedgerStoreError
from .models import CreditClass, NewTransaction, Transaction, TransactionStatus, User


class AccountStore(Protocol):
    def get_balance(self, user_id: int, credit_class: CreditClass) -> int:
        ...

    def adjust_balance(self, user_id: int, credit_class: CreditClass, delta: int) -> int:
        ...


class TransactionStore(Protocol):
    def append(self, transaction: NewTransaction) -> int:
        ...

    def find_by_reference(self, reference_tx_id: str) -> Optional[Transaction]:
        ...

    def find_by_stripe_event(self, stripe_event_id: str) -> Optional[Transaction]:
        ...


class LedgerSession(AccountStore, TransactionStore, Protocol):
    def get(self, transaction_id: int) -> Optional[Transaction]:
        ...

    def list_transactions(self, user_id: int, limit: int = 50, offset: int = 0) -> tuple[list[Transaction], int]:
        ...

    def list_by_status(self, status: TransactionStatus) -> list[Transaction]:
        ...

    def find_user(self, user_id: int) -> Optional[User]:
        ...

    def find_user_by_token(self, api_token: str) -> Optional[User]:
        ...

    def find_user_by_stripe_customer(self, stripe_customer_id: str) -> Optional[User]:
        ...


class LedgerStorage(Protocol):
    def unit_of_work(self) -> ContextManager[LedgerSession]:
        ...

    def add_user(
        self,
        user_id: int,
        api_token: str,
        stripe_customer_id: Optional[str] = None,
        basis: int = 0,
        premium: int = 0,
    ) -> User:
        ...


class InMemoryStorage:
    def __init__(self, timeout: float = 5.0):
        self.users: dict[int, dict] = {}
        self.accounts: dict[tuple[int, CreditClass], int] = {}
        self.transactions: dict[int, dict] = {}
        self.reference_index: dict[str, int] = {}
        self.stripe_event_index: dict[str, int] = {}
        self.timeout = timeout
        self._next_id = 1
        self._lock = threading.RLock()

    def add_user(
        self,
        user_id: int,
        api_token: str,
        stripe_customer_id: Optional[str] = None,
        basis: int = 0,
        premium: int = 0,
    ) -> User:
        with self._lock:
            self.users[user_id] = {
                "id": user_id,
                "api_token": api_token,
                "stripe_customer_id": stripe_customer_id,
            }
            self.accounts[(user_id, CreditClass.BASIS)] = basis
            self.accounts[(user_id, CreditClass.PREMIUM)] = premium
        return User(**self.users[user_id])

    @contextmanager
    def unit_of_work(self) -> Iterator["_InMemorySession"]:
        if not self._lock.acquire(timeout=self.timeout):
            raise LedgerStoreError(f"ledger store busy for more than {self.timeout}s")
        try:
            snapshot = self._snapshot()
            try:
                yield _InMemorySession(self)
            except BaseException:
                self._restore(snapshot)
                raise
        finally:
            self._lock.release()

    def _snapshot(self) -> tuple:
        return (
            dict(self.accounts),
            dict(self.transactions),
            dict(self.reference_index),
            dict(self.stripe_event_index),
            self._next_id,
        )

    def _restore(self, snapshot: tuple) -> None:
        (
            self.accounts,
            self.transactions,
            self.reference_index,
            self.stripe_event_index,
            self._next_id,
        ) = snapshot


class _InMemorySession:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def get_balance(self, user_id: int, credit_class: CreditClass) -> int:
        key = (user_id, CreditClass(credit_class))
        if key not in self.storage.accounts:
            raise AccountNotFound(f"No {CreditClass(credit_class).value} account for user {user_id}")
        return self.storage.accounts[key]

    def adjust_balance(self, user_id: int, credit_class: CreditClass, delta: int) -> int:
        current = self.get_balance(user_id, credit_class)
        new_balance = current + delta
        if new_balance < 0:
            raise InsufficientFunds(current, -delta)
        self.storage.accounts[(user_id, CreditClass(credit_class))] = new_balance
        return new_balance

    def append(self, transaction: NewTransaction) -> int:
        if transaction.reference_tx_id and transaction.reference_tx_id in self.storage.reference_index:
            raise DuplicateKey("reference_tx_id", transaction.reference_tx_id)
        if transaction.stripe_event_id and transaction.stripe_event_id in self.storage.stripe_event_index:
            raise DuplicateKey("stripe_event_id", transaction.stripe_event_id)

        transaction_id = self.storage._next_id
        self.storage._next_id += 1
        self.storage.transactions[transaction_id] = {"id": transaction_id, **transaction.model_dump()}
        if transaction.reference_tx_id:
            self.storage.reference_index[transaction.reference_tx_id] = transaction_id
        if transaction.stripe_event_id:
            self.storage.stripe_event_index[transaction.stripe_event_id] = transaction_id
        return transaction_id

    def get(self, transaction_id: int) -> Optional[Transaction]:
        data = self.storage.transactions.get(transaction_id)
        return Transaction(**data) if data else None

    def find_by_reference(self, reference_tx_id: str) -> Optional[Transaction]:
        transaction_id = self.storage.reference_index.get(reference_tx_id)
        return self.get(transaction_id) if transaction_id else None

    def find_by_stripe_event(self, stripe_event_id: str) -> Optional[Transaction]:
        transaction_id = self.storage.stripe_event_index.get(stripe_event_id)
        return self.get(transaction_id) if transaction_id else None

    def list_transactions(self, user_id: int, limit: int = 50, offset: int = 0) -> tuple[list[Transaction], int]:
        entries = [
            Transaction(**t) for t in self.storage.transactions.values()
            if t["user_id"] == user_id
        ]
        entries.sort(key=lambda t: t.id, reverse=True)
        return entries[offset:offset + limit], len(entries)

    def list_by_status(self, status: TransactionStatus) -> list[Transaction]:
        return [
            Transaction(**t) for t in self.storage.transactions.values()
            if t["status"] == status
        ]

    def find_user(self, user_id: int) -> Optional[User]:
        data = self.storage.users.get(user_id)
        return User(**data) if data else None

    def find_user_by_token(self, api_token: str) -> Optional[User]:
        for data in self.storage.users.values():
            if data["api_token"] == api_token:
                return User(**data)
        return None

    def find_user_by_stripe_customer(self, stripe_customer_id: str) -> Optional[User]:
        for data in self.storage.users.values():
            if data["stripe_customer_id"] == stripe_customer_id:
                return User(**data)
        return None
