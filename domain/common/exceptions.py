"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
Messages are safe to return to callers: they never include card data.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class InvalidStateTransitionException(BusinessException):
    """Operation is not legal for the order's current state. Raised before any gateway contact."""

    def __init__(
        self,
        current_status: str,
        operation: str,
        *,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        message = f"Cannot {operation} an order in status '{current_status}'"
        if reason:
            message = f"{message}: {reason}"
        full_details = {"current_status": current_status, "operation": operation}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.INVALID_STATE_TRANSITION,
            message=message,
            error_type="InvalidStateTransition",
            details=full_details,
        )
        self.current_status = current_status
        self.operation = operation


class CaptureAmountExceededException(InvalidStateTransitionException):
    def __init__(self, current_status: str, amount: Decimal, authorized: Decimal):
        super().__init__(
            current_status,
            "capture",
            reason=f"capture amount {amount} exceeds authorized amount {authorized}",
            details={"amount": str(amount), "authorized_amount": str(authorized)},
        )
        self.field = "amount"


class RefundAmountExceededException(InvalidStateTransitionException):
    def __init__(self, current_status: str, amount: Decimal, refundable: Decimal):
        super().__init__(
            current_status,
            "refund",
            reason=f"refund amount {amount} exceeds refundable balance {refundable}",
            details={"amount": str(amount), "refundable_amount": str(refundable)},
        )
        self.field = "amount"


class NotSettledException(BusinessException):
    """Refund attempted before the referenced transaction is settled."""

    def __init__(self, transaction_id: str, eligible_at: Optional[str] = None):
        details = {"transaction_id": transaction_id}
        if eligible_at:
            details["eligible_at"] = eligible_at
        super().__init__(
            code=PaymentCode.NOT_SETTLED,
            message="Transaction has not settled yet; void it instead or retry the refund after settlement",
            error_type="NotSettled",
            details=details,
        )


class PaymentConfigurationException(BusinessException):
    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.CONFIGURATION_ERROR,
            message=message,
            error_type="ConfigurationError",
            details=details,
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=PaymentCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details={"order_id": order_id},
        )


class TransactionNotFoundException(BusinessException):
    def __init__(self, transaction_id: str):
        super().__init__(
            code=PaymentCode.TRANSACTION_NOT_FOUND,
            message="Transaction not found",
            error_type="TransactionNotFound",
            details={"transaction_id": transaction_id},
        )


class IdempotencyKeyReuseException(BusinessException):
    """Same idempotency key submitted with a different request payload."""

    def __init__(self, key: str):
        super().__init__(
            code=PaymentCode.IDEMPOTENCY_KEY_REUSE,
            message="Idempotency key was already used with a different request",
            error_type="IdempotencyKeyReuse",
            details={"idempotency_key": key},
            field="idempotency_key",
        )


class IdempotencyRequestInProgressException(BusinessException):
    """Retryable: another request holding the same key has not finished yet."""

    def __init__(self, key: str):
        super().__init__(
            code=PaymentCode.IDEMPOTENCY_IN_PROGRESS,
            message="A request with the same idempotency key is still being processed; retry later",
            error_type="IdempotencyRequestInProgress",
            details={"idempotency_key": key, "retryable": True},
        )


class IdempotencyKeyReleasedException(BusinessException):
    """Retryable: the request holding the key failed before committing a result."""

    def __init__(self, key: str):
        super().__init__(
            code=PaymentCode.IDEMPOTENCY_RELEASED,
            message="The original request with this idempotency key failed; it is safe to retry",
            error_type="IdempotencyKeyReleased",
            details={"idempotency_key": key, "retryable": True},
        )
