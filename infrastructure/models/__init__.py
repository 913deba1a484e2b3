"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import IdempotencyRecordModel, OrderModel, PaymentMethodModel, TransactionModel

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "TransactionModel",
    "PaymentMethodModel",
    "IdempotencyRecordModel",
]
