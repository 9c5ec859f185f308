"""
Stripe purchase webhooks.

An event goes RECEIVED -> SIGNATURE_VERIFIED -> DEDUPLICATED -> APPLIED.
Bad signatures and stale timestamps are rejected, events of other types are
acknowledged and ignored, and an event id already in the transaction log is
acknowledged without crediting again. The balance increment and the
PURCHASE_* append share one unit of work.
"""

import json
import logging
from typing import Any, Optional, Union

import stripe

from .clock import Clock, SystemClock
from .errors import AccountNotFound, MalformedEvent, MalformedMetadata, SignatureInvalid, StaleTimestamp
from .idempotency import IdempotencyResolver
from .models import CreditClass, NewTransaction, Transaction, TransactionType, WebhookOutcome, WebhookState
from .storage import LedgerStorage

log = logging.getLogger(__name__)

USER_ID_KEYS = ("user_id", "userId", "customer_user_id")
QUANTITY_KEYS = ("char_quantity", "charQuantity", "chars")
CLASS_KEYS = ("char_type", "charType", "type")


def _first(mapping: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise MalformedMetadata(f"{field} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise MalformedMetadata(f"{field} must be an integer, got {value!r}")


def _normalize_header(header: str) -> str:
    return ",".join(part.strip() for part in header.split(",") if part.strip())


def _header_timestamp(header: str) -> int:
    for part in header.split(","):
        key, _, value = part.partition("=")
        if key.strip() == "t":
            try:
                return int(value.strip())
            except ValueError:
                break
    raise SignatureInvalid("Unable to extract timestamp from signature header")


class WebhookCreditApplier:
    def __init__(
        self,
        storage: LedgerStorage,
        secret: str,
        tolerance_seconds: int = 300,
        purchase_event_types: tuple[str, ...] = ("checkout.session.completed",),
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.purchase_event_types = tuple(purchase_event_types)
        self.clock = clock or SystemClock()
        self.resolver = IdempotencyResolver(storage)

    def apply(self, payload: Union[bytes, str], signature_header: Optional[str]) -> WebhookOutcome:
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as exc:
                log.warning("webhook.rejected", extra={"state": WebhookState.REJECTED_SIGNATURE.value, "error": str(exc)})
                raise MalformedEvent("Payload is not UTF-8 text") from exc

        try:
            self.verify_signature(payload, signature_header)
        except (SignatureInvalid, StaleTimestamp) as exc:
            log.warning("webhook.rejected", extra={"state": WebhookState.REJECTED_SIGNATURE.value, "error": str(exc)})
            raise

        event = self._parse_event(payload)
        event_id = event["id"]
        event_type = event.get("type")
        log.info("webhook.verified", extra={"event_id": event_id, "event_type": event_type})

        if event_type not in self.purchase_event_types:
            log.info("webhook.ignored", extra={"event_id": event_id, "event_type": event_type})
            return WebhookOutcome(state=WebhookState.IGNORED_WRONG_TYPE, event_id=event_id, event_type=event_type)

        return self.resolver.run_purchase(
            event_id,
            lambda: self._apply_purchase(event),
            lambda existing: self._duplicate(event, existing),
        )

    def verify_signature(self, payload: str, signature_header: Optional[str]) -> None:
        if not self.secret:
            raise SignatureInvalid("Webhook secret not configured")
        if not signature_header:
            raise SignatureInvalid("Missing signature header")

        header = _normalize_header(signature_header)
        try:
            stripe.WebhookSignature.verify_header(payload, header, self.secret, tolerance=None)
        except stripe.SignatureVerificationError as exc:
            raise SignatureInvalid(str(exc)) from exc

        age = self.clock.now().timestamp() - _header_timestamp(header)
        if age > self.tolerance_seconds:
            raise StaleTimestamp(f"Signed timestamp is {int(age)}s old, tolerance is {self.tolerance_seconds}s")

    def _parse_event(self, payload: str) -> dict:
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise MalformedEvent(f"Invalid JSON payload: {exc}") from exc
        if not isinstance(event, dict) or not event.get("id"):
            raise MalformedEvent("Event has no id")
        if not isinstance(event["id"], str):
            raise MalformedEvent(f"Event id must be a string, got {event['id']!r}")
        return event

    def _purchase_details(self, event: dict) -> tuple[Optional[int], Optional[str], int, CreditClass]:
        data = event.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise MalformedMetadata("Event has no data.object")
        metadata = obj.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise MalformedMetadata("metadata must be an object")

        raw_user = _first(metadata, USER_ID_KEYS)
        raw_quantity = _first(metadata, QUANTITY_KEYS)
        raw_class = _first(metadata, CLASS_KEYS)
        customer = obj.get("customer")
        if raw_quantity is None or raw_class is None or (raw_user is None and not customer):
            raise MalformedMetadata(
                f"Missing required metadata: user_id={raw_user!r} char_quantity={raw_quantity!r} char_type={raw_class!r}"
            )

        quantity = _as_int(raw_quantity, "char_quantity")
        if quantity <= 0:
            raise MalformedMetadata(f"char_quantity must be positive, got {quantity}")
        try:
            credit_class = CreditClass(str(raw_class).strip().lower())
        except ValueError as exc:
            raise MalformedMetadata(f"Unknown char_type: {raw_class!r}") from exc

        user_id = _as_int(raw_user, "user_id") if raw_user is not None else None
        return user_id, customer, quantity, credit_class

    def _apply_purchase(self, event: dict) -> WebhookOutcome:
        event_id = event["id"]
        user_id, customer, quantity, credit_class = self._purchase_details(event)

        with self.storage.unit_of_work() as session:
            if user_id is not None:
                user = session.find_user(user_id)
            else:
                user = session.find_user_by_stripe_customer(customer)
            if user is None:
                raise AccountNotFound(f"No user for purchase event {event_id} (user_id={user_id}, customer={customer})")

            balance = session.adjust_balance(user.id, credit_class, quantity)
            transaction_id = session.append(NewTransaction(
                user_id=user.id,
                type=TransactionType.purchase(credit_class),
                amount=quantity,
                credit_class=credit_class,
                balance_after=balance,
                stripe_event_id=event_id,
                description=f"Stripe {event.get('type')}",
                created_at=self.clock.now(),
            ))

        log.info(
            "webhook.applied",
            extra={
                "event_id": event_id,
                "user_id": user.id,
                "credit_class": credit_class.value,
                "quantity": quantity,
                "transaction_id": transaction_id,
            },
        )
        return WebhookOutcome(
            state=WebhookState.APPLIED,
            event_id=event_id,
            event_type=event.get("type"),
            transaction_id=transaction_id,
            user_id=user.id,
            credited=quantity,
        )

    def _duplicate(self, event: dict, existing: Transaction) -> WebhookOutcome:
        log.info("webhook.duplicate", extra={"event_id": event["id"], "transaction_id": existing.id})
        return WebhookOutcome(
            state=WebhookState.IGNORED_DUPLICATE,
            event_id=event["id"],
            event_type=event.get("type"),
            transaction_id=existing.id,
            user_id=existing.user_id,
        )
