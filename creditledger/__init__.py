"""
Credit Ledger for Metered Paid Services

This module provides:
- Per-user balances for the basis and premium credit classes
- An append-only transaction log with idempotency keys
- Idempotent charges and refunds around paid provider calls
- Exactly-once crediting of signed Stripe purchase webhooks
- Flags for failed refunds that need manual reconciliation
"""

from .errors import (
    AccountNotFound,
    InsufficientFunds,
    LedgerServiceError,
    ProviderFailure,
    Unauthorized,
)
from .models import (
    ChargeResult,
    CreditClass,
    RefundResult,
    Transaction,
    TransactionStatus,
    TransactionType,
    WebhookOutcome,
    WebhookState,
)
from .service import ChargeEngine
from .storage import InMemoryStorage
from .webhook import WebhookCreditApplier

__all__ = [
    "AccountNotFound",
    "InsufficientFunds",
    "LedgerServiceError",
    "ProviderFailure",
    "Unauthorized",
    "ChargeResult",
    "CreditClass",
    "RefundResult",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "WebhookOutcome",
    "WebhookState",
    "ChargeEngine",
    "InMemoryStorage",
    "WebhookCreditApplier",
]
