from .entity import (
    ErrorKind,
    IdempotencyRecord,
    IdempotencyStatus,
    Order,
    OrderStatus,
    PaymentMethodReference,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from .state_machine import SettlementPolicy, TransactionStateMachine

__all__ = [
    "ErrorKind",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "Order",
    "OrderStatus",
    "PaymentMethodReference",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "SettlementPolicy",
    "TransactionStateMachine",
]
