"""
Order/transaction state machine and settlement policy.

Validation happens before the gateway is contacted; outcome application
computes the order transition for a finalized transaction. Both are pure
functions of the entities passed in, so the orchestrator can run them inside
any unit of work.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from domain.common.exceptions import (
    CaptureAmountExceededException,
    InvalidStateTransitionException,
    NotSettledException,
    RefundAmountExceededException,
)
from domain.payment.entity import (
    ZERO,
    Order,
    OrderStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)


# Operations against an existing order and the order states that permit them.
ALLOWED_ORDER_STATES: dict[TransactionType, frozenset[OrderStatus]] = {
    TransactionType.CAPTURE: frozenset({OrderStatus.AUTHORIZED}),
    TransactionType.VOID: frozenset({OrderStatus.AUTHORIZED, OrderStatus.CAPTURED}),
    TransactionType.REFUND: frozenset({OrderStatus.CAPTURED, OrderStatus.PARTIALLY_REFUNDED}),
}

# Which kind of prior transaction each follow-up operation may reference,
# keyed by the order state it is issued in.
REFERENCE_TYPES: dict[tuple[TransactionType, OrderStatus], frozenset[TransactionType]] = {
    (TransactionType.CAPTURE, OrderStatus.AUTHORIZED): frozenset({TransactionType.AUTHORIZE}),
    (TransactionType.VOID, OrderStatus.AUTHORIZED): frozenset({TransactionType.AUTHORIZE}),
    (TransactionType.VOID, OrderStatus.CAPTURED): frozenset({TransactionType.PURCHASE, TransactionType.CAPTURE}),
    (TransactionType.REFUND, OrderStatus.CAPTURED): frozenset({TransactionType.PURCHASE, TransactionType.CAPTURE}),
    (TransactionType.REFUND, OrderStatus.PARTIALLY_REFUNDED): frozenset({TransactionType.PURCHASE, TransactionType.CAPTURE}),
}

ORDER_OPENING_OPERATIONS = frozenset({TransactionType.PURCHASE, TransactionType.AUTHORIZE})

SETTLEABLE_TYPES = frozenset({TransactionType.PURCHASE, TransactionType.CAPTURE})


@dataclass(frozen=True)
class SettlementPolicy:
    """Treat a capture as settled once the gateway says so or once it is older than ``cutoff``."""

    cutoff: timedelta = timedelta(hours=24)

    def settles_at(self, transaction: Transaction) -> Optional[datetime]:
        if transaction.settled_at is not None:
            return transaction.settled_at
        if transaction.created_at is None:
            return None
        return transaction.created_at + self.cutoff

    def is_settled(self, transaction: Transaction, now: datetime) -> bool:
        settles_at = self.settles_at(transaction)
        return settles_at is not None and now >= settles_at


@dataclass(frozen=True)
class OrderTransition:
    status: OrderStatus
    authorized_delta: Decimal = ZERO
    captured_delta: Decimal = ZERO
    refunded_delta: Decimal = ZERO

    def changes(self, order: Order) -> bool:
        return (
            self.status != order.status
            or self.authorized_delta != ZERO
            or self.captured_delta != ZERO
            or self.refunded_delta != ZERO
        )


class TransactionStateMachine:
    """Enforces legal operation sequences per order and computes next states."""

    def __init__(self, settlement: Optional[SettlementPolicy] = None) -> None:
        self.settlement = settlement or SettlementPolicy()

    def is_refund_eligible(self, transaction: Transaction, now: datetime) -> bool:
        return (
            transaction.type in SETTLEABLE_TYPES
            and transaction.succeeded
            and bool(transaction.gateway_reference)
            and self.settlement.is_settled(transaction, now)
        )

    def validate_opening(self, operation: TransactionType) -> None:
        if operation not in ORDER_OPENING_OPERATIONS:
            raise InvalidStateTransitionException(
                "none",
                operation.value,
                reason="only purchase or authorize may open a new order",
            )

    def validate(
        self,
        operation: TransactionType,
        order: Order,
        reference: Transaction,
        amount: Decimal,
        now: datetime,
    ) -> None:
        """
        Check a follow-up operation against the order and the transaction it references.

        Raises InvalidStateTransitionException (or an amount subtype) or
        NotSettledException. Never touches the gateway.
        """
        status = order.status.value
        allowed = ALLOWED_ORDER_STATES.get(operation)
        if allowed is None or order.status not in allowed:
            raise InvalidStateTransitionException(status, operation.value)

        if reference.order_id != order.id:
            raise InvalidStateTransitionException(
                status, operation.value, reason="referenced transaction belongs to another order"
            )
        expected_types = REFERENCE_TYPES[(operation, order.status)]
        if reference.type not in expected_types:
            raise InvalidStateTransitionException(
                status,
                operation.value,
                reason=f"cannot reference a {reference.type.value} transaction",
                details={"reference_type": reference.type.value},
            )
        if not reference.succeeded or not reference.gateway_reference:
            raise InvalidStateTransitionException(
                status,
                operation.value,
                reason=f"referenced transaction is {reference.status.value}",
                details={"reference_status": reference.status.value},
            )

        if operation == TransactionType.CAPTURE:
            if amount > order.authorized_amount:
                raise CaptureAmountExceededException(status, amount, order.authorized_amount)
        elif operation == TransactionType.VOID:
            if order.status == OrderStatus.CAPTURED and self.settlement.is_settled(reference, now):
                raise InvalidStateTransitionException(
                    status, operation.value, reason="transaction already settled; refund it instead"
                )
        elif operation == TransactionType.REFUND:
            if not self.is_refund_eligible(reference, now):
                settles_at = self.settlement.settles_at(reference)
                raise NotSettledException(
                    reference.reference,
                    eligible_at=settles_at.isoformat() if settles_at else None,
                )
            if amount > order.refundable_amount:
                raise RefundAmountExceededException(status, amount, order.refundable_amount)

    def apply_outcome(
        self,
        operation: TransactionType,
        order: Order,
        status: TransactionStatus,
        amount: Decimal,
        *,
        ambiguous: bool = False,
    ) -> OrderTransition:
        """Order transition for a finalized transaction; unchanged status when nothing moved."""
        unchanged = OrderTransition(status=order.status)

        if operation in ORDER_OPENING_OPERATIONS:
            if status == TransactionStatus.SUCCESS:
                if operation == TransactionType.PURCHASE:
                    return OrderTransition(
                        status=OrderStatus.CAPTURED,
                        authorized_delta=amount,
                        captured_delta=amount,
                    )
                return OrderTransition(status=OrderStatus.AUTHORIZED, authorized_delta=amount)
            if status == TransactionStatus.DECLINED:
                return OrderTransition(status=OrderStatus.FAILED)
            if status == TransactionStatus.ERROR and not ambiguous:
                return OrderTransition(status=OrderStatus.FAILED)
            # held for review or ambiguous: left for reconciliation
            return unchanged

        if status != TransactionStatus.SUCCESS:
            return unchanged

        if operation == TransactionType.CAPTURE:
            return OrderTransition(status=OrderStatus.CAPTURED, captured_delta=amount)
        if operation == TransactionType.VOID:
            return OrderTransition(status=OrderStatus.VOIDED)
        if operation == TransactionType.REFUND:
            refunded = order.refunded_amount + amount
            next_status = (
                OrderStatus.REFUNDED if refunded >= order.captured_amount else OrderStatus.PARTIALLY_REFUNDED
            )
            return OrderTransition(status=next_status, refunded_delta=amount)
        return unchanged
