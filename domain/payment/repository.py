"""
支付仓储接口 - 定义订单/交易/幂等记录数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from .entity import (
    IdempotencyRecord,
    Order,
    OrderStatus,
    PaymentMethodReference,
    Transaction,
)


class OrderRepository(ABC):
    """订单仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """创建订单"""
        pass

    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list(
        self,
        skip: int = 0,
        limit: int = 100,
        status: Optional[OrderStatus] = None,
        customer_id: Optional[str] = None,
    ) -> List[Order]:
        """按创建时间倒序列出订单"""
        pass

    @abstractmethod
    async def count(self, status: Optional[OrderStatus] = None, customer_id: Optional[str] = None) -> int:
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        order: Order,
        expected_status: OrderStatus,
        expected_version: int,
    ) -> bool:
        """
        Conditionally persist the order's new status and totals.

        Succeeds only when the stored row still has ``expected_status`` and
        ``expected_version``; on success the stored and in-memory version is
        bumped. Returns False when another writer got there first.
        """
        pass


class TransactionRepository(ABC):
    """交易仓储抽象接口；交易记录只追加，不删除"""

    @abstractmethod
    async def create(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_by_reference(self, reference: str) -> Optional[Transaction]:
        """根据对外交易编号 (TXN_...) 获取交易"""
        pass

    @abstractmethod
    async def list_by_order(self, order_id: str) -> List[Transaction]:
        """按创建时间正序列出订单的全部交易"""
        pass

    @abstractmethod
    async def finalize(self, transaction: Transaction) -> Transaction:
        """Persist the terminal state of a transaction that is still pending in storage."""
        pass

    @abstractmethod
    async def list_requiring_reconciliation(
        self, limit: int = 100, stale_pending_before: Optional[datetime] = None
    ) -> List[Transaction]:
        """Flagged rows, plus pending rows created before ``stale_pending_before`` when given."""
        pass

    @abstractmethod
    async def list_unsettled(self, limit: int = 100) -> List[Transaction]:
        """Successful purchase/capture rows the gateway has not yet reported as settled."""
        pass

    @abstractmethod
    async def update_reconciliation(self, transaction: Transaction) -> Transaction:
        """Persist the reconciliation job's resolution (status, flag, settled_at)."""
        pass


class PaymentMethodRepository(ABC):

    @abstractmethod
    async def create(self, reference: PaymentMethodReference) -> PaymentMethodReference:
        pass

    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> Optional[PaymentMethodReference]:
        pass


class IdempotencyRepository(ABC):
    """幂等记录仓储"""

    @abstractmethod
    async def create_if_absent(self, record: IdempotencyRecord) -> bool:
        """Atomic claim: insert the record unless the key exists. True when inserted."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        pass

    @abstractmethod
    async def complete(self, record: IdempotencyRecord) -> None:
        """Store the result snapshot and mark the record completed."""
        pass

    @abstractmethod
    async def delete_in_progress(self, key: str) -> bool:
        """Release an unfinished claim. Completed records are left alone."""
        pass

    @abstractmethod
    async def delete_expired(self, now: datetime, key: Optional[str] = None) -> int:
        """Purge completed records past their retention window (optionally just one key)."""
        pass
