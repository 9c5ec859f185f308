"""Flags for charges whose provider call failed and whose refund failed too.

Such a user has been debited for nothing. The flag is a REFUND transaction
with status FAILED: it does not move any balance, it only makes the case
queryable so an operator can credit the user by hand.
"""

import logging
from typing import Optional

from .clock import Clock, SystemClock
from .models import CreditClass, NewTransaction, Transaction, TransactionStatus, TransactionType
from .storage import LedgerStorage

log = logging.getLogger(__name__)


class ReconciliationLog:
    def __init__(self, storage: LedgerStorage, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()

    def flag_failed_refund(
        self,
        user_id: int,
        amount: int,
        credit_class: CreditClass,
        *,
        deduction_id: Optional[int],
        provider_error: str,
        refund_error: Optional[str],
    ) -> Optional[int]:
        context = {
            "user_id": user_id,
            "amount": amount,
            "credit_class": CreditClass(credit_class).value,
            "deduction_id": deduction_id,
            "provider_error": provider_error,
            "refund_error": refund_error,
        }
        log.error("ledger.refund.failed", extra=context)
        try:
            with self.storage.unit_of_work() as session:
                flag_id = session.append(NewTransaction(
                    user_id=user_id,
                    type=TransactionType.REFUND,
                    amount=amount,
                    credit_class=credit_class,
                    status=TransactionStatus.FAILED,
                    related_tx_id=deduction_id,
                    description=f"Refund failed after provider error: {provider_error}"[:500],
                    created_at=self.clock.now(),
                ))
        except Exception:
            log.critical("ledger.reconciliation.flag_failed", extra=context, exc_info=True)
            return None
        log.warning("ledger.reconciliation.flagged", extra={**context, "flag_id": flag_id})
        return flag_id

    def list_unreconciled(self) -> list[Transaction]:
        with self.storage.unit_of_work() as session:
            return [
                t for t in session.list_by_status(TransactionStatus.FAILED)
                if t.type == TransactionType.REFUND
            ]
