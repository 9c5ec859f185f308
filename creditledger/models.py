from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class CreditClass(str, Enum):
    BASIS = "basis"
    PREMIUM = "premium"


class TransactionType(str, Enum):
    DEDUCTION_BASIS = "DEDUCTION_BASIS"
    DEDUCTION_PREMIUM = "DEDUCTION_PREMIUM"
    REFUND = "REFUND"
    PURCHASE_BASIS = "PURCHASE_BASIS"
    PURCHASE_PREMIUM = "PURCHASE_PREMIUM"

    @classmethod
    def deduction(cls, credit_class: CreditClass) -> "TransactionType":
        if credit_class == CreditClass.PREMIUM:
            return cls.DEDUCTION_PREMIUM
        return cls.DEDUCTION_BASIS

    @classmethod
    def purchase(cls, credit_class: CreditClass) -> "TransactionType":
        if credit_class == CreditClass.PREMIUM:
            return cls.PURCHASE_PREMIUM
        return cls.PURCHASE_BASIS


class TransactionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class WebhookState(str, Enum):
    RECEIVED = "RECEIVED"
    SIGNATURE_VERIFIED = "SIGNATURE_VERIFIED"
    DEDUPLICATED = "DEDUPLICATED"
    APPLIED = "APPLIED"
    REJECTED_SIGNATURE = "REJECTED_SIGNATURE"
    IGNORED_DUPLICATE = "IGNORED_DUPLICATE"
    IGNORED_WRONG_TYPE = "IGNORED_WRONG_TYPE"


class User(BaseModel):
    id: int
    api_token: str
    stripe_customer_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class NewTransaction(BaseModel):
    """A transaction before the store assigns its id."""

    user_id: int
    type: TransactionType
    amount: int = Field(..., gt=0)
    credit_class: CreditClass
    status: TransactionStatus = TransactionStatus.SUCCESS
    balance_after: Optional[int] = None
    reference_tx_id: Optional[str] = None
    stripe_event_id: Optional[str] = None
    related_tx_id: Optional[int] = None
    description: Optional[str] = None
    created_at: datetime


class Transaction(NewTransaction):
    id: int

    model_config = ConfigDict(from_attributes=True, frozen=True)


class ChargeRequest(BaseModel):
    user_id: Optional[int] = Field(default=None, alias="userId")
    token: Optional[str] = None
    char_count: int = Field(..., alias="charCount")
    is_premium: bool = Field(default=False, alias="isPremium")
    reference_tx_id: Optional[str] = Field(default=None, alias="referenceTxId")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "userId": 5,
            "charCount": 1200,
            "isPremium": False,
            "referenceTxId": "client-retry-7f3a",
        }
    })

    @property
    def credit_class(self) -> CreditClass:
        return CreditClass.PREMIUM if self.is_premium else CreditClass.BASIS


class ChargeResult(BaseModel):
    ok: bool
    remaining: Optional[int] = None
    deduction_id: Optional[int] = Field(default=None, serialization_alias="deductionId")
    existing: bool = False
    reason: Optional[str] = None
    balance: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)


class RefundResult(BaseModel):
    ok: bool
    refund_id: Optional[int] = Field(default=None, serialization_alias="refundId")
    existing: bool = False
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class WebhookOutcome(BaseModel):
    state: WebhookState
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    transaction_id: Optional[int] = None
    user_id: Optional[int] = None
    credited: int = 0

    @property
    def acknowledged(self) -> bool:
        return self.state in (
            WebhookState.APPLIED,
            WebhookState.IGNORED_DUPLICATE,
            WebhookState.IGNORED_WRONG_TYPE,
        )


class Balances(BaseModel):
    user_id: int
    basis: int
    premium: int


class LedgerHistoryResponse(BaseModel):
    user_id: int
    entries: list[Transaction]
    total_count: int
    balances: Balances


class TtsRequest(BaseModel):
    provider: str = "openai"
    text: str
    voice_id: Optional[str] = Field(default=None, alias="voiceId")
    reference_tx_id: Optional[str] = Field(default=None, alias="referenceTxId")

    model_config = ConfigDict(populate_by_name=True)


class AiProcessRequest(BaseModel):
    provider: str
    text: str
    prompt: str
    reference_tx_id: Optional[str] = Field(default=None, alias="referenceTxId")

    model_config = ConfigDict(populate_by_name=True)


class ProviderResult(BaseModel):
    """What a paid action hands back on success."""

    provider: str
    content_type: str = "application/json"
    audio: Optional[bytes] = None
    text: Optional[str] = None
