"""
支付仓储实现 - 使用SQLAlchemy实现订单/交易/幂等记录的数据访问
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import (
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
from domain.payment.repository import (
    IdempotencyRepository,
    OrderRepository,
    PaymentMethodRepository,
    TransactionRepository,
)
from infrastructure.models.payment import (
    IdempotencyRecordModel,
    OrderModel,
    PaymentMethodModel,
    TransactionModel,
)


logger = get_logger(__name__)


def _decimal(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        """将数据库模型转换为领域实体"""
        return Order(
            id=model.id,
            order_number=model.order_number,
            customer_id=model.customer_id,
            amount=_decimal(model.amount),
            currency=model.currency,
            status=OrderStatus(model.status),
            description=model.description,
            authorized_amount=_decimal(model.authorized_amount),
            captured_amount=_decimal(model.captured_amount),
            refunded_amount=_decimal(model.refunded_amount),
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Order) -> OrderModel:
        """将领域实体转换为数据库模型"""
        return OrderModel(
            id=entity.id,
            order_number=entity.order_number,
            customer_id=entity.customer_id,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            description=entity.description,
            authorized_amount=entity.authorized_amount,
            captured_amount=entity.captured_amount,
            refunded_amount=entity.refunded_amount,
            version=entity.version,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def create(self, order: Order) -> Order:
        """创建订单"""
        db_order = self._to_model(order)
        self.session.add(db_order)
        await self.session.flush()
        logger.info("order_created", order_id=order.id, order_number=order.order_number)
        return order

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        # populate_existing: a conditional UPDATE may have changed the row behind the identity map
        result = await self.session.execute(
            select(OrderModel).where(OrderModel.id == order_id).execution_options(populate_existing=True)
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        result = await self.session.execute(
            select(OrderModel).where(OrderModel.order_number == order_number)
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def list(
        self,
        skip: int = 0,
        limit: int = 100,
        status: Optional[OrderStatus] = None,
        customer_id: Optional[str] = None,
    ) -> List[Order]:
        query = select(OrderModel)
        if status:
            query = query.where(OrderModel.status == status.value)
        if customer_id:
            query = query.where(OrderModel.customer_id == customer_id)
        query = query.order_by(OrderModel.created_at.desc()).offset(skip).limit(limit)

        result = await self.session.execute(query)
        return [self._to_entity(o) for o in result.scalars().all()]

    async def count(self, status: Optional[OrderStatus] = None, customer_id: Optional[str] = None) -> int:
        query = select(func.count(OrderModel.id))
        if status:
            query = query.where(OrderModel.status == status.value)
        if customer_id:
            query = query.where(OrderModel.customer_id == customer_id)
        result = await self.session.execute(query)
        return result.scalar_one()

    async def compare_and_set(
        self,
        order: Order,
        expected_status: OrderStatus,
        expected_version: int,
    ) -> bool:
        stmt = (
            update(OrderModel)
            .where(
                OrderModel.id == order.id,
                OrderModel.status == expected_status.value,
                OrderModel.version == expected_version,
            )
            .values(
                status=order.status.value,
                authorized_amount=order.authorized_amount,
                captured_amount=order.captured_amount,
                refunded_amount=order.refunded_amount,
                version=expected_version + 1,
                updated_at=order.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                "order_cas_lost",
                order_id=order.id,
                expected_status=expected_status.value,
                expected_version=expected_version,
            )
            return False
        order.version = expected_version + 1
        return True


class SQLAlchemyTransactionRepository(TransactionRepository):
    """交易仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: TransactionModel) -> Transaction:
        return Transaction(
            id=model.id,
            reference=model.reference,
            order_id=model.order_id,
            type=TransactionType(model.type),
            amount=_decimal(model.amount),
            status=TransactionStatus(model.status),
            parent_id=model.parent_id,
            gateway_reference=model.gateway_reference,
            response_code=model.response_code,
            response_message=model.response_message,
            error_kind=ErrorKind(model.error_kind) if model.error_kind else None,
            requires_reconciliation=bool(model.requires_reconciliation),
            reason=model.reason,
            settled_at=model.settled_at,
            created_at=model.created_at,
            finalized_at=model.finalized_at,
        )

    def _to_model(self, entity: Transaction) -> TransactionModel:
        return TransactionModel(
            id=entity.id,
            reference=entity.reference,
            order_id=entity.order_id,
            parent_id=entity.parent_id,
            type=entity.type.value,
            amount=entity.amount,
            status=entity.status.value,
            gateway_reference=entity.gateway_reference,
            response_code=entity.response_code,
            response_message=entity.response_message,
            error_kind=entity.error_kind.value if entity.error_kind else None,
            requires_reconciliation=entity.requires_reconciliation,
            reason=entity.reason,
            settled_at=entity.settled_at,
            created_at=entity.created_at,
            finalized_at=entity.finalized_at,
        )

    async def create(self, transaction: Transaction) -> Transaction:
        self.session.add(self._to_model(transaction))
        await self.session.flush()
        logger.info(
            "transaction_created",
            transaction_id=transaction.id,
            reference=transaction.reference,
            type=transaction.type.value,
            amount=str(transaction.amount),
        )
        return transaction

    async def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        db_txn = result.scalar_one_or_none()
        return self._to_entity(db_txn) if db_txn else None

    async def get_by_reference(self, reference: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(TransactionModel).where(TransactionModel.reference == reference)
        )
        db_txn = result.scalar_one_or_none()
        return self._to_entity(db_txn) if db_txn else None

    async def list_by_order(self, order_id: str) -> List[Transaction]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.order_id == order_id)
            .order_by(TransactionModel.created_at.asc(), TransactionModel.reference.asc())
        )
        return [self._to_entity(t) for t in result.scalars().all()]

    async def finalize(self, transaction: Transaction) -> Transaction:
        stmt = (
            update(TransactionModel)
            .where(
                TransactionModel.id == transaction.id,
                TransactionModel.status == TransactionStatus.PENDING.value,
            )
            .values(
                status=transaction.status.value,
                gateway_reference=transaction.gateway_reference,
                response_code=transaction.response_code,
                response_message=transaction.response_message,
                error_kind=transaction.error_kind.value if transaction.error_kind else None,
                requires_reconciliation=transaction.requires_reconciliation,
                settled_at=transaction.settled_at,
                finalized_at=transaction.finalized_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise DomainValidationException(
                f"Transaction {transaction.reference} is no longer pending",
                field="status",
            )
        return transaction

    async def list_requiring_reconciliation(
        self, limit: int = 100, stale_pending_before: Optional[datetime] = None
    ) -> List[Transaction]:
        condition = and_(
            TransactionModel.requires_reconciliation.is_(True),
            TransactionModel.status != TransactionStatus.PENDING.value,
        )
        if stale_pending_before is not None:
            condition = or_(
                condition,
                and_(
                    TransactionModel.status == TransactionStatus.PENDING.value,
                    TransactionModel.created_at < stale_pending_before,
                ),
            )
        result = await self.session.execute(
            select(TransactionModel)
            .where(condition)
            .order_by(TransactionModel.created_at.asc())
            .limit(limit)
        )
        return [self._to_entity(t) for t in result.scalars().all()]

    async def list_unsettled(self, limit: int = 100) -> List[Transaction]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(
                TransactionModel.status == TransactionStatus.SUCCESS.value,
                TransactionModel.type.in_([TransactionType.PURCHASE.value, TransactionType.CAPTURE.value]),
                TransactionModel.settled_at.is_(None),
                TransactionModel.gateway_reference.is_not(None),
            )
            .order_by(TransactionModel.created_at.desc())
            .limit(limit)
        )
        return [self._to_entity(t) for t in result.scalars().all()]

    async def update_reconciliation(self, transaction: Transaction) -> Transaction:
        stmt = (
            update(TransactionModel)
            .where(TransactionModel.id == transaction.id)
            .values(
                status=transaction.status.value,
                error_kind=transaction.error_kind.value if transaction.error_kind else None,
                requires_reconciliation=transaction.requires_reconciliation,
                response_message=transaction.response_message,
                settled_at=transaction.settled_at,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
        return transaction


class SQLAlchemyPaymentMethodRepository(PaymentMethodRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, reference: PaymentMethodReference) -> PaymentMethodReference:
        self.session.add(
            PaymentMethodModel(
                order_id=reference.order_id,
                last_four=reference.last_four,
                expiration_month=reference.expiration_month,
                expiration_year=reference.expiration_year,
                cardholder_name=reference.cardholder_name,
                created_at=reference.created_at,
            )
        )
        await self.session.flush()
        return reference

    async def get_by_order_id(self, order_id: str) -> Optional[PaymentMethodReference]:
        result = await self.session.execute(
            select(PaymentMethodModel).where(PaymentMethodModel.order_id == order_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return PaymentMethodReference(
            order_id=model.order_id,
            last_four=model.last_four,
            expiration_month=model.expiration_month,
            expiration_year=model.expiration_year,
            cardholder_name=model.cardholder_name,
            created_at=model.created_at,
        )


class SQLAlchemyIdempotencyRepository(IdempotencyRepository):
    """幂等记录仓储；认领依赖主键唯一约束"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: IdempotencyRecordModel) -> IdempotencyRecord:
        return IdempotencyRecord(
            key=model.key,
            operation=model.operation,
            request_hash=model.request_hash,
            status=IdempotencyStatus(model.status),
            created_at=model.created_at,
            expires_at=model.expires_at,
            transaction_id=model.transaction_id,
            response_body=model.response_body,
            completed_at=model.completed_at,
        )

    async def create_if_absent(self, record: IdempotencyRecord) -> bool:
        values = dict(
            key=record.key,
            operation=record.operation,
            request_hash=record.request_hash,
            status=record.status.value,
            transaction_id=record.transaction_id,
            response_body=record.response_body,
            created_at=record.created_at,
            completed_at=record.completed_at,
            expires_at=record.expires_at,
        )
        dialect = self.session.bind.dialect.name if self.session.bind is not None else ""
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            return await self._insert_with_savepoint(values)

        stmt = insert(IdempotencyRecordModel).values(**values).on_conflict_do_nothing(index_elements=["key"])
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def _insert_with_savepoint(self, values: dict) -> bool:
        try:
            async with self.session.begin_nested():
                self.session.add(IdempotencyRecordModel(**values))
        except IntegrityError:
            return False
        return True

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        result = await self.session.execute(
            select(IdempotencyRecordModel)
            .where(IdempotencyRecordModel.key == key)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def complete(self, record: IdempotencyRecord) -> None:
        await self.session.execute(
            update(IdempotencyRecordModel)
            .where(IdempotencyRecordModel.key == record.key)
            .values(
                status=IdempotencyStatus.COMPLETED.value,
                transaction_id=record.transaction_id,
                response_body=record.response_body,
                completed_at=record.completed_at,
                expires_at=record.expires_at,
            )
            .execution_options(synchronize_session=False)
        )

    async def delete_in_progress(self, key: str) -> bool:
        result = await self.session.execute(
            delete(IdempotencyRecordModel)
            .where(
                IdempotencyRecordModel.key == key,
                IdempotencyRecordModel.status == IdempotencyStatus.IN_PROGRESS.value,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def delete_expired(self, now: datetime, key: Optional[str] = None) -> int:
        stmt = delete(IdempotencyRecordModel).where(
            IdempotencyRecordModel.status == IdempotencyStatus.COMPLETED.value,
            IdempotencyRecordModel.expires_at <= now,
        )
        if key is not None:
            stmt = stmt.where(IdempotencyRecordModel.key == key)
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount or 0
