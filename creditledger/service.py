import hmac
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Optional

from .clock import Clock, SystemClock
from .errors import (
    AccountNotFound,
    IdempotencyConflictError,
    InsufficientFunds,
    InvalidAmount,
    LedgerStoreError,
    ProviderFailure,
    Unauthorized,
)
from .idempotency import IdempotencyResolver
from .models import (
    Balances,
    ChargeRequest,
    ChargeResult,
    CreditClass,
    LedgerHistoryResponse,
    NewTransaction,
    ProviderResult,
    RefundResult,
    Transaction,
    TransactionType,
    User,
)
from .providers import PaidAction, PaidRequest
from .reconciliation import ReconciliationLog
from .storage import InMemoryStorage, LedgerStorage

log = logging.getLogger(__name__)

REFUND_SUFFIX = ":refund"


class ChargeEngine:
    """Debits, refunds and the paid-action flow between them.

    Every balance change is one unit of work on the storage: the balance
    update and the transaction-log append commit together. A debit always
    commits before the paid action starts, so a crash in between leaves a
    refundable debit and never unpaid fulfilment.

    Paid actions run on one bounded worker pool owned by the engine; call
    ``close()`` on shutdown.
    """

    def __init__(
        self,
        storage: Optional[LedgerStorage] = None,
        clock: Optional[Clock] = None,
        provider_timeout: float = 30.0,
        reconciliation: Optional[ReconciliationLog] = None,
        service_token: str = "",
        provider_workers: int = 8,
    ):
        self.storage = storage or InMemoryStorage()
        self.clock = clock or SystemClock()
        self.provider_timeout = provider_timeout
        self.service_token = service_token
        self.resolver = IdempotencyResolver(self.storage)
        self.reconciliation = reconciliation or ReconciliationLog(self.storage, self.clock)
        self.executor = ThreadPoolExecutor(max_workers=provider_workers, thread_name_prefix="paid-action")

    def close(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    #   Identity
    # ------------------------------------------------------------------
    def authenticate(self, authorization: Optional[str]) -> User:
        return self.user_for_token(_bearer_token(authorization))

    def authorize_charge(self, authorization: Optional[str], request: ChargeRequest) -> User:
        """Resolve whose balance a charge request may touch.

        A user token charges its own account; a ``userId`` or body token
        naming anyone else is refused. Only the configured service token may
        charge on behalf of the user named in the body.
        """
        token = _bearer_token(authorization)
        if self.service_token and hmac.compare_digest(token.encode(), self.service_token.encode()):
            return self.resolve_user(request.user_id, request.token)

        user = self.user_for_token(token)
        if request.user_id is not None and request.user_id != user.id:
            raise Unauthorized("Bearer token does not belong to userId")
        if request.token and not hmac.compare_digest(request.token.encode(), user.api_token.encode()):
            raise Unauthorized("Bearer token does not match body token")
        return user

    def user_for_token(self, token: str) -> User:
        with self.storage.unit_of_work() as session:
            user = session.find_user_by_token(token)
        if user is None:
            raise Unauthorized("Invalid token")
        return user

    def resolve_user(self, user_id: Optional[int] = None, token: Optional[str] = None) -> User:
        if token:
            return self.user_for_token(token)
        if user_id is None:
            raise Unauthorized("missing userId or token to resolve user")
        with self.storage.unit_of_work() as session:
            user = session.find_user(user_id)
        if user is None:
            raise AccountNotFound(f"User {user_id} not found")
        return user

    # ------------------------------------------------------------------
    #   Charge / refund
    # ------------------------------------------------------------------
    def charge(
        self,
        user_id: int,
        amount: int,
        credit_class: CreditClass,
        reference_tx_id: Optional[str] = None,
    ) -> ChargeResult:
        amount = _positive_amount(amount)
        credit_class = CreditClass(credit_class)
        try:
            return self.resolver.run_charge(
                reference_tx_id,
                lambda: self._debit(user_id, amount, credit_class, reference_tx_id),
                lambda existing: self._replay_charge(existing, user_id, amount, credit_class),
            )
        except InsufficientFunds as exc:
            log.info(
                "ledger.charge.insufficient",
                extra={"user_id": user_id, "credit_class": credit_class.value, "amount": amount, "balance": exc.balance},
            )
            return ChargeResult(ok=False, reason="insufficient_credits", balance=exc.balance)
        except LedgerStoreError:
            log.exception("ledger.charge.store_failed", extra={"user_id": user_id, "amount": amount})
            return ChargeResult(ok=False, reason="charge_failed")

    def charge_request(self, request: ChargeRequest, authorization: Optional[str]) -> ChargeResult:
        user = self.authorize_charge(authorization, request)
        return self.charge(user.id, request.char_count, request.credit_class, request.reference_tx_id)

    def refund(
        self,
        user_id: int,
        amount: int,
        credit_class: CreditClass,
        reference_tx_id: Optional[str] = None,
        related_tx_id: Optional[int] = None,
    ) -> RefundResult:
        """Credit ``amount`` back. Never raises: failures come back as ``ok=False``."""
        try:
            amount = _positive_amount(amount)
            credit_class = CreditClass(credit_class)
            return self.resolver.run_charge(
                reference_tx_id,
                lambda: self._credit_back(user_id, amount, credit_class, reference_tx_id, related_tx_id),
                lambda existing: RefundResult(ok=True, refund_id=existing.id, existing=True),
            )
        except Exception as exc:
            log.error(
                "ledger.refund.error",
                extra={"user_id": user_id, "amount": amount, "reference_tx_id": reference_tx_id},
                exc_info=True,
            )
            return RefundResult(ok=False, error=str(exc))

    def charge_and_execute(
        self,
        user: User,
        action: PaidAction,
        request: PaidRequest,
        reference_tx_id: Optional[str] = None,
    ) -> tuple[ChargeResult, ProviderResult]:
        """Charge for ``request``, run ``action`` and refund if it fails.

        A reference that already paid for one execution never buys another:
        its replay raises ``IdempotencyConflictError`` whether the earlier
        attempt was fulfilled or refunded.
        """
        reference_tx_id = reference_tx_id or request.reference_tx_id
        amount = action.cost(request)
        credit_class = action.credit_class
        charge = self.charge(user.id, amount, credit_class, reference_tx_id)
        if not charge.ok:
            if charge.reason == "insufficient_credits":
                raise InsufficientFunds(charge.balance or 0, amount)
            raise LedgerStoreError("charge failed")

        if charge.existing:
            if self.resolver.find_reference(reference_tx_id + REFUND_SUFFIX) is not None:
                raise IdempotencyConflictError(
                    f"Charge {reference_tx_id!r} was refunded after a failed attempt; retry with a new reference"
                )
            raise IdempotencyConflictError(
                f"Charge {reference_tx_id!r} already paid for a {action.name} call; retry with a new reference"
            )

        try:
            result = self._execute(action, request)
        except Exception as exc:
            failure = exc if isinstance(exc, ProviderFailure) else ProviderFailure(
                f"{action.name} failed: {exc}", provider=action.name
            )
            failure.refund = self._compensate(user.id, amount, credit_class, charge, reference_tx_id, failure)
            if failure is exc:
                raise
            raise failure from exc

        log.info(
            "ledger.paid_action.completed",
            extra={"user_id": user.id, "provider": action.name, "amount": amount, "deduction_id": charge.deduction_id},
        )
        return charge, result

    # ------------------------------------------------------------------
    #   Queries
    # ------------------------------------------------------------------
    def get_balances(self, user_id: int) -> Balances:
        with self.storage.unit_of_work() as session:
            return Balances(
                user_id=user_id,
                basis=session.get_balance(user_id, CreditClass.BASIS),
                premium=session.get_balance(user_id, CreditClass.PREMIUM),
            )

    def get_history(self, user_id: int, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.storage.unit_of_work() as session:
            entries, total = session.list_transactions(user_id, limit, offset)
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries,
            total_count=total,
            balances=self.get_balances(user_id),
        )

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    def _debit(self, user_id: int, amount: int, credit_class: CreditClass, reference_tx_id: Optional[str]) -> ChargeResult:
        with self.storage.unit_of_work() as session:
            remaining = session.adjust_balance(user_id, credit_class, -amount)
            deduction_id = session.append(NewTransaction(
                user_id=user_id,
                type=TransactionType.deduction(credit_class),
                amount=amount,
                credit_class=credit_class,
                balance_after=remaining,
                reference_tx_id=reference_tx_id,
                created_at=self.clock.now(),
            ))
        log.info(
            "ledger.charge.applied",
            extra={
                "user_id": user_id,
                "credit_class": credit_class.value,
                "amount": amount,
                "remaining": remaining,
                "deduction_id": deduction_id,
            },
        )
        return ChargeResult(ok=True, remaining=remaining, deduction_id=deduction_id)

    def _replay_charge(self, existing: Transaction, user_id: int, amount: int, credit_class: CreditClass) -> ChargeResult:
        if (
            existing.user_id != user_id
            or existing.amount != amount
            or existing.type != TransactionType.deduction(credit_class)
        ):
            raise IdempotencyConflictError(
                f"Reference {existing.reference_tx_id!r} already used for a different operation"
            )
        return ChargeResult(ok=True, remaining=existing.balance_after, deduction_id=existing.id, existing=True)

    def _credit_back(
        self,
        user_id: int,
        amount: int,
        credit_class: CreditClass,
        reference_tx_id: Optional[str],
        related_tx_id: Optional[int],
    ) -> RefundResult:
        with self.storage.unit_of_work() as session:
            balance = session.adjust_balance(user_id, credit_class, amount)
            refund_id = session.append(NewTransaction(
                user_id=user_id,
                type=TransactionType.REFUND,
                amount=amount,
                credit_class=credit_class,
                balance_after=balance,
                reference_tx_id=reference_tx_id,
                related_tx_id=related_tx_id,
                created_at=self.clock.now(),
            ))
        log.info(
            "ledger.refund.applied",
            extra={"user_id": user_id, "credit_class": credit_class.value, "amount": amount, "refund_id": refund_id},
        )
        return RefundResult(ok=True, refund_id=refund_id)

    def _execute(self, action: PaidAction, request: PaidRequest) -> ProviderResult:
        future = self.executor.submit(action.execute, request)
        try:
            return future.result(timeout=self.provider_timeout)
        except FutureTimeout:
            # A call already running cannot be interrupted; it keeps its
            # worker until the provider client's own timeout ends it.
            future.cancel()
            raise ProviderFailure(
                f"{action.name} did not answer within {self.provider_timeout}s", provider=action.name
            )

    def _compensate(
        self,
        user_id: int,
        amount: int,
        credit_class: CreditClass,
        charge: ChargeResult,
        reference_tx_id: Optional[str],
        failure: ProviderFailure,
    ) -> RefundResult:
        log.warning(
            "ledger.paid_action.failed",
            extra={"user_id": user_id, "provider": failure.provider, "error": str(failure), "deduction_id": charge.deduction_id},
        )
        refund = self.refund(
            user_id,
            amount,
            credit_class,
            reference_tx_id=reference_tx_id + REFUND_SUFFIX if reference_tx_id else None,
            related_tx_id=charge.deduction_id,
        )
        if not refund.ok:
            self.reconciliation.flag_failed_refund(
                user_id,
                amount,
                credit_class,
                deduction_id=charge.deduction_id,
                provider_error=str(failure),
                refund_error=refund.error,
            )
        return refund


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Missing or invalid Authorization Bearer token")
    return token.strip()


def _positive_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"amount must be a positive integer, got {amount!r}")
    return amount
