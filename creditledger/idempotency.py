import logging
from typing import Callable, Optional, TypeVar

from .errors import DuplicateKey
from .models import Transaction
from .storage import LedgerStorage

log = logging.getLogger(__name__)

T = TypeVar("T")


class IdempotencyResolver:
    """Runs an operation at most once per idempotency key.

    The key is first looked up in the transaction log; a hit is replayed
    without touching balances. A miss runs the operation, which records the
    key on the transaction it appends. When a concurrent request wins that
    append, the store's unique constraint raises ``DuplicateKey`` and the
    winner's record is replayed instead.
    """

    def __init__(self, storage: LedgerStorage):
        self.storage = storage

    def find_reference(self, reference_tx_id: str) -> Optional[Transaction]:
        with self.storage.unit_of_work() as session:
            return session.find_by_reference(reference_tx_id)

    def find_stripe_event(self, stripe_event_id: str) -> Optional[Transaction]:
        with self.storage.unit_of_work() as session:
            return session.find_by_stripe_event(stripe_event_id)

    def run(
        self,
        key: Optional[str],
        find: Callable[[str], Optional[Transaction]],
        operation: Callable[[], T],
        replay: Callable[[Transaction], T],
    ) -> T:
        if not key:
            return operation()

        existing = find(key)
        if existing is not None:
            log.info("idempotency.hit", extra={"key": key, "transaction_id": existing.id})
            return replay(existing)

        try:
            return operation()
        except DuplicateKey:
            winner = find(key)
            if winner is None:
                raise
            log.info("idempotency.race_lost", extra={"key": key, "transaction_id": winner.id})
            return replay(winner)

    def run_charge(
        self,
        reference_tx_id: Optional[str],
        operation: Callable[[], T],
        replay: Callable[[Transaction], T],
    ) -> T:
        return self.run(reference_tx_id, self.find_reference, operation, replay)

    def run_purchase(
        self,
        stripe_event_id: str,
        operation: Callable[[], T],
        replay: Callable[[Transaction], T],
    ) -> T:
        return self.run(stripe_event_id, self.find_stripe_event, operation, replay)
