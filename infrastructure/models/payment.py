"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型

Transactions reference orders without cascading deletes: ledger rows are
never removed.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text,
)

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderModel(Base):
    """
    订单数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment 中
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    order_number = Column(String(64), unique=True, nullable=False, comment="订单号 ORD_...")
    customer_id = Column(String(100), nullable=False, index=True, comment="客户ID")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="订单金额")
    currency = Column(String(3), nullable=False, default="USD", comment="货币代码 ISO-4217")
    authorized_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="已授权金额")
    captured_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="已捕获金额")
    refunded_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="已退款金额")

    status = Column(
        String(32),
        nullable=False,
        default="created",
        index=True,
        comment="订单状态: created/authorized/captured/partially_refunded/refunded/voided/failed",
    )
    description = Column(String(500), nullable=True)
    # 乐观锁版本号，每次条件更新 +1
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="更新时间")

    __table_args__ = (
        Index("ix_orders_customer_status", "customer_id", "status"),
        Index("ix_orders_created_at", "created_at"),
    )

    def __repr__(self):
        return (
            f"<OrderModel(id='{self.id}', order_number='{self.order_number}', "
            f"amount={self.amount}, status='{self.status}', version={self.version})>"
        )


class TransactionModel(Base):
    """交易数据库模型 - 只追加"""
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True)
    reference = Column(String(64), unique=True, nullable=False, comment="对外交易编号 TXN_...")
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    parent_id = Column(String(36), ForeignKey("transactions.id"), nullable=True, comment="被引用的前序交易")

    type = Column(String(16), nullable=False, comment="purchase/authorize/capture/void/refund")
    amount = Column(Numeric(precision=15, scale=2), nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)

    gateway_reference = Column(String(64), nullable=True, index=True, comment="网关交易ID")
    response_code = Column(String(16), nullable=True)
    response_message = Column(Text, nullable=True)
    error_kind = Column(String(32), nullable=True)
    requires_reconciliation = Column(Boolean, nullable=False, default=False)
    reason = Column(String(500), nullable=True, comment="退款原因")

    settled_at = Column(DateTime(timezone=True), nullable=True, comment="网关报告的结算时间")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    finalized_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_transactions_order_created", "order_id", "created_at"),
        Index("ix_transactions_reconciliation", "requires_reconciliation"),
    )

    def __repr__(self):
        return (
            f"<TransactionModel(reference='{self.reference}', type='{self.type}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class PaymentMethodModel(Base):
    """支付方式引用 - 不保存完整卡号或CVV"""
    __tablename__ = "payment_methods"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), unique=True, nullable=False)
    last_four = Column(String(4), nullable=False)
    expiration_month = Column(Integer, nullable=False)
    expiration_year = Column(Integer, nullable=False)
    cardholder_name = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class IdempotencyRecordModel(Base):
    """幂等记录 - 主键冲突即为并发认领失败"""
    __tablename__ = "idempotency_records"

    key = Column(String(255), primary_key=True)
    operation = Column(String(16), nullable=False)
    request_hash = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="in_progress")
    transaction_id = Column(String(36), nullable=True)
    response_body = Column(Text, nullable=True, comment="结果快照 JSON")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
