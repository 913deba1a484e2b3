"""
支付领域实体 - 订单聚合与交易记录

Order is the aggregate root; Transaction rows are the append-only audit trail
of every operation attempted against it. Status changes are computed by
domain.payment.state_machine and applied here, never assigned directly.
"""
from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException


ZERO = Decimal("0")


class OrderStatus(str, Enum):
    """订单状态枚举"""
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    VOIDED = "voided"
    FAILED = "failed"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.VOIDED, OrderStatus.REFUNDED, OrderStatus.FAILED})


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    AUTHORIZE = "authorize"
    CAPTURE = "capture"
    VOID = "void"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    """交易状态枚举; PENDING is the only non-terminal state"""
    PENDING = "pending"
    SUCCESS = "success"
    DECLINED = "declined"
    ERROR = "error"
    HELD = "held"


class ErrorKind(str, Enum):
    """Closed taxonomy of failure kinds carried on results and transaction rows."""
    DECLINED = "declined"
    HELD_FOR_REVIEW = "held_for_review"
    GATEWAY_ERROR = "gateway_error"
    TRANSPORT_FAILURE = "transport_failure"
    UNKNOWN = "unknown"
    CONFIGURATION_ERROR = "configuration_error"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    CANCELLED = "cancelled"


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def generate_order_number(now: datetime) -> str:
    """Human readable order number: creation timestamp plus a random suffix."""
    return f"ORD_{now:%Y%m%d%H%M%S}_{secrets.token_hex(3).upper()}"


def generate_transaction_reference(now: datetime) -> str:
    return f"TXN_{now:%Y%m%d%H%M%S}_{uuid.uuid4().hex}"


@dataclass
class Order:
    """
    订单聚合根 - 一次客户支付意图

    业务规则：
    1. 金额必须大于0，货币在创建时固定
    2. 状态只能经由状态机转换
    3. 已退款金额不能超过已捕获金额
    4. 订单永不物理删除
    """

    id: str
    order_number: str
    customer_id: str
    amount: Decimal
    currency: str
    status: OrderStatus
    description: Optional[str] = None

    authorized_amount: Decimal = field(default_factory=lambda: ZERO)
    captured_amount: Decimal = field(default_factory=lambda: ZERO)
    refunded_amount: Decimal = field(default_factory=lambda: ZERO)
    version: int = 0

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"Order amount must be greater than 0: {self.amount}",
                field="amount",
            )
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(
                f"Invalid currency code: {self.currency}",
                field="currency",
            )
        self.currency = self.currency.upper()
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @property
    def refundable_amount(self) -> Decimal:
        """可退款金额"""
        return max(self.captured_amount - self.refunded_amount, ZERO)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def apply(
        self,
        status: OrderStatus,
        *,
        authorized_delta: Decimal = ZERO,
        captured_delta: Decimal = ZERO,
        refunded_delta: Decimal = ZERO,
        now: datetime,
    ) -> None:
        """Apply a transition computed by the state machine."""
        refunded = self.refunded_amount + refunded_delta
        captured = self.captured_amount + captured_delta
        if refunded > captured:
            raise DomainValidationException(
                f"Refunded amount {refunded} would exceed captured amount {captured}",
                field="refunded_amount",
            )
        self.status = status
        self.authorized_amount += authorized_delta
        self.captured_amount = captured
        self.refunded_amount = refunded
        self.updated_at = _ensure_utc(now)


@dataclass
class Transaction:
    """
    交易实体 - 针对订单的一次操作尝试

    Created PENDING before the gateway call and finalized exactly once after it.
    """

    id: str
    reference: str
    order_id: str
    type: TransactionType
    amount: Decimal
    status: TransactionStatus = TransactionStatus.PENDING
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

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"Transaction amount must be greater than 0: {self.amount}",
                field="amount",
            )
        self.created_at = _ensure_utc(self.created_at)
        self.finalized_at = _ensure_utc(self.finalized_at)
        self.settled_at = _ensure_utc(self.settled_at)

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def succeeded(self) -> bool:
        return self.status == TransactionStatus.SUCCESS

    def finalize(
        self,
        status: TransactionStatus,
        *,
        now: datetime,
        gateway_reference: Optional[str] = None,
        response_code: Optional[str] = None,
        response_message: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        requires_reconciliation: bool = False,
        settled: bool = False,
    ) -> None:
        """
        结束交易

        业务规则：只能从 pending 转为终态
        """
        if not self.is_pending:
            raise DomainValidationException(
                f"Transaction {self.reference} already finalized as {self.status.value}",
                field="status",
            )
        if status == TransactionStatus.PENDING:
            raise DomainValidationException("Cannot finalize a transaction as pending", field="status")
        self.status = status
        self.gateway_reference = gateway_reference or self.gateway_reference
        self.response_code = response_code
        self.response_message = response_message
        self.error_kind = error_kind
        self.requires_reconciliation = requires_reconciliation
        self.finalized_at = _ensure_utc(now)
        if settled:
            self.settled_at = self.finalized_at

    def resolve(
        self,
        status: TransactionStatus,
        *,
        error_kind: Optional[ErrorKind] = None,
        message: Optional[str] = None,
        settled_at: Optional[datetime] = None,
    ) -> None:
        """Reconciliation: settle an ambiguous outcome with the gateway's answer."""
        if not self.requires_reconciliation:
            raise DomainValidationException(
                f"Transaction {self.reference} does not require reconciliation",
                field="requires_reconciliation",
            )
        self.status = status
        self.error_kind = error_kind
        self.requires_reconciliation = False
        if message:
            self.response_message = message
        if settled_at is not None:
            self.settled_at = _ensure_utc(settled_at)

    def mark_settled(self, settled_at: datetime) -> None:
        if not self.succeeded:
            raise DomainValidationException(
                f"Only successful transactions settle, {self.reference} is {self.status.value}",
                field="settled_at",
            )
        if self.settled_at is None:
            self.settled_at = _ensure_utc(settled_at)


@dataclass
class PaymentMethodReference:
    """
    支付方式引用 - 仅保存非敏感信息（后四位/有效期/持卡人）

    Used to supply card-matching data on refunds; never stores PAN or CVV.
    """

    order_id: str
    last_four: str
    expiration_month: int
    expiration_year: int
    cardholder_name: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if len(self.last_four) != 4 or not self.last_four.isdigit():
            raise DomainValidationException("last_four must be exactly 4 digits", field="last_four")
        if not 1 <= self.expiration_month <= 12:
            raise DomainValidationException("expiration_month must be between 1 and 12", field="expiration_month")
        self.created_at = _ensure_utc(self.created_at)

    @property
    def masked_card_number(self) -> str:
        return self.last_four.rjust(16, "X")


@dataclass
class IdempotencyRecord:
    key: str
    operation: str
    request_hash: str
    status: IdempotencyStatus
    created_at: datetime
    expires_at: datetime
    transaction_id: Optional[str] = None
    response_body: Optional[str] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at)
        self.expires_at = _ensure_utc(self.expires_at)
        self.completed_at = _ensure_utc(self.completed_at)

    @property
    def is_completed(self) -> bool:
        return self.status == IdempotencyStatus.COMPLETED

    def is_expired(self, now: datetime) -> bool:
        # In-flight claims never expire
        return self.is_completed and _ensure_utc(now) >= self.expires_at
