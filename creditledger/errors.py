from typing import Optional


class LedgerServiceError(Exception):
    pass


class Unauthorized(LedgerServiceError):
    pass


class AccountNotFound(LedgerServiceError):
    pass


class InvalidAmount(LedgerServiceError):
    pass


class InsufficientFunds(LedgerServiceError):
    """Raised when a debit would take a balance below zero."""

    def __init__(self, balance: int, required: int):
        super().__init__(f"insufficient credits: have {balance}, need {required}")
        self.balance = balance
        self.required = required


class DuplicateKey(LedgerServiceError):
    """An idempotency key is already recorded on another transaction."""

    def __init__(self, column: str, key: str):
        super().__init__(f"{column} {key!r} already recorded")
        self.column = column
        self.key = key


class IdempotencyConflictError(LedgerServiceError):
    pass


class LedgerStoreError(LedgerServiceError):
    pass


class WebhookError(LedgerServiceError):
    pass


class SignatureInvalid(WebhookError):
    pass


class StaleTimestamp(WebhookError):
    pass


class MalformedEvent(WebhookError):
    pass


class MalformedMetadata(WebhookError):
    pass


class ProviderFailure(LedgerServiceError):
    """The paid action failed after the charge was committed.

    ``refund`` holds the outcome of the compensating refund, when one was
    attempted.
    """

    def __init__(self, message: str, *, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.refund = None


class UnsupportedProvider(ProviderFailure):
    pass
