"""
Payment DTOs (Pydantic v2) used at application boundaries.

Card number and CVV are SecretStr so they never leak through repr, logs or
serialized results; only the last four digits travel beyond the gateway call.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic.types import condecimal

from application.dtos.base import DTOBase
from domain.payment.entity import ErrorKind, OrderStatus, TransactionStatus, TransactionType

# Common ISO-4217 currencies (extend as needed)
ISO_4217 = {
    "USD", "EUR", "GBP", "CAD", "AUD", "NZD", "CHF", "DKK", "NOK", "SEK", "PLN", "ZAR",
}

Amount = condecimal(gt=0, max_digits=15, decimal_places=2)


def _validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u


class CreditCard(BaseModel):
    card_number: SecretStr
    expiration_month: int = Field(ge=1, le=12)
    expiration_year: int = Field(ge=2000, le=2100)
    cvv: SecretStr
    name_on_card: Optional[str] = Field(default=None, max_length=100)

    @field_validator("card_number")
    @classmethod
    def _digits_only(cls, v: SecretStr) -> SecretStr:
        digits = v.get_secret_value().replace(" ", "").replace("-", "")
        if not digits.isdigit() or not 13 <= len(digits) <= 19:
            raise ValueError("card_number must be 13-19 digits")
        return SecretStr(digits)

    @field_validator("cvv")
    @classmethod
    def _cvv_digits(cls, v: SecretStr) -> SecretStr:
        raw = v.get_secret_value()
        if not raw.isdigit() or len(raw) not in (3, 4):
            raise ValueError("cvv must be 3 or 4 digits")
        return v

    @property
    def last_four(self) -> str:
        return self.card_number.get_secret_value()[-4:]


class PaymentRequest(BaseModel):
    """Purchase or authorize request; opens a new order."""

    customer_id: str = Field(min_length=1, max_length=100)
    amount: Amount  # type: ignore[valid-type]
    currency: str = Field(default="USD")
    credit_card: CreditCard
    description: Optional[str] = Field(default=None, max_length=500)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    request_id: Optional[str] = Field(default=None, max_length=255)

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _validate_currency(v)


class CaptureRequest(BaseModel):
    transaction_id: str
    amount: Amount  # type: ignore[valid-type]
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    request_id: Optional[str] = Field(default=None, max_length=255)


class VoidRequest(BaseModel):
    transaction_id: str
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    request_id: Optional[str] = Field(default=None, max_length=255)


class RefundRequest(BaseModel):
    transaction_id: str
    amount: Amount  # type: ignore[valid-type]
    reason: Optional[str] = Field(default=None, max_length=500)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    request_id: Optional[str] = Field(default=None, max_length=255)


class PaymentResult(BaseModel):
    success: bool
    transaction_id: str
    transaction_reference: str
    order_id: str
    order_number: str
    order_status: OrderStatus
    transaction_status: TransactionStatus
    amount: Decimal
    currency: str
    gateway_reference: Optional[str] = None
    message: str
    error_kind: Optional[ErrorKind] = None
    response_code: Optional[str] = None
    requires_reconciliation: bool = False


# ---------------------------------------------------------------------------
# Gateway port DTOs
# ---------------------------------------------------------------------------


class OrderContext(BaseModel):
    order_id: str
    order_number: str
    customer_id: str
    description: Optional[str] = None


class PaymentMethodSnapshot(BaseModel):
    last_four: str
    expiration_month: int
    expiration_year: int
    cardholder_name: Optional[str] = None


class GatewayRequest(BaseModel):
    operation: TransactionType
    amount: Decimal
    currency: str
    order: OrderContext
    transaction_reference: str
    card: Optional[CreditCard] = None
    reference_id: Optional[str] = None  # gateway id of the prior transaction
    payment_method: Optional[PaymentMethodSnapshot] = None


class GatewayResponse(BaseModel):
    reference_id: Optional[str] = None
    settlement_status: Optional[str] = None  # "settled" when the gateway reports it
    response_code: Optional[str] = None
    response_message: Optional[str] = None


class GatewayTransactionStatus(BaseModel):
    reference_id: str
    status: str  # approved / settled / declined / voided / held / error / unknown
    raw_status: Optional[str] = None
    settled_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


class TransactionDTO(DTOBase):
    id: str
    reference: str
    order_id: str
    type: TransactionType
    amount: Decimal
    status: TransactionStatus
    parent_id: Optional[str] = None
    gateway_reference: Optional[str] = None
    response_code: Optional[str] = None
    response_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    requires_reconciliation: bool = False
    reason: Optional[str] = None
    settled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OrderDTO(DTOBase):
    id: str
    order_number: str
    customer_id: str
    amount: Decimal
    currency: str
    status: OrderStatus
    description: Optional[str] = None
    authorized_amount: Decimal
    captured_amount: Decimal
    refunded_amount: Decimal
    refundable_amount: Decimal
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    transactions: list[TransactionDTO] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class RefundEligibilityDTO(DTOBase):
    transaction_id: str
    transaction_type: TransactionType
    transaction_status: TransactionStatus
    order_status: OrderStatus
    gateway_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    settles_at: Optional[datetime] = None
    settled: bool
    can_refund: bool
    should_void: bool
    refundable_amount: Decimal
    recommended_action: str
