"""
订单查询服务 - read side of the ledger

Orders, their transaction history and the refund-eligibility report used by
support tooling to decide between void and refund.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from application.dtos.payments import OrderDTO, RefundEligibilityDTO, TransactionDTO
from application.services.idempotency import utcnow
from domain.common.exceptions import OrderNotFoundException, TransactionNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Order, OrderStatus, Transaction
from domain.payment.state_machine import SETTLEABLE_TYPES, SettlementPolicy, TransactionStateMachine


VOIDABLE_ORDER_STATES = frozenset({OrderStatus.AUTHORIZED, OrderStatus.CAPTURED})


class OrderQueryService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        settlement: Optional[SettlementPolicy] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self.state_machine = TransactionStateMachine(settlement)
        self._clock = clock

    async def get_order(self, order_id: str, *, include_transactions: bool = True) -> OrderDTO:
        """按ID或订单号获取订单"""
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.orders.get_by_id(order_id)
            if order is None:
                order = await uow.orders.get_by_order_number(order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            transactions = await uow.transactions.list_by_order(order.id) if include_transactions else []
        return self._order_dto(order, transactions)

    async def list_orders(
        self,
        *,
        skip: int = 0,
        limit: int = 20,
        status: Optional[OrderStatus] = None,
        customer_id: Optional[str] = None,
    ) -> Tuple[List[OrderDTO], int]:
        async with self._uow_factory(readonly=True) as uow:
            orders = await uow.orders.list(skip=skip, limit=limit, status=status, customer_id=customer_id)
            total = await uow.orders.count(status=status, customer_id=customer_id)
        return [self._order_dto(o, []) for o in orders], total

    async def list_transactions(self, order_id: str) -> List[TransactionDTO]:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.orders.get_by_id(order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            transactions = await uow.transactions.list_by_order(order.id)
        return [TransactionDTO.model_validate(t) for t in transactions]

    async def refund_eligibility(self, transaction_id: str) -> RefundEligibilityDTO:
        """Whether a transaction can be refunded now, or should be voided instead."""
        now = self._clock()
        async with self._uow_factory(readonly=True) as uow:
            txn = await uow.transactions.get_by_id(transaction_id)
            if txn is None:
                txn = await uow.transactions.get_by_reference(transaction_id)
            if txn is None:
                raise TransactionNotFoundException(transaction_id)
            order = await uow.orders.get_by_id(txn.order_id)
            if order is None:
                raise OrderNotFoundException(txn.order_id)

        policy = self.state_machine.settlement
        settles_at = policy.settles_at(txn) if txn.type in SETTLEABLE_TYPES else None
        settled = txn.type in SETTLEABLE_TYPES and policy.is_settled(txn, now)
        can_refund = self.state_machine.is_refund_eligible(txn, now) and order.refundable_amount > 0
        should_void = (
            not settled
            and txn.succeeded
            and bool(txn.gateway_reference)
            and order.status in VOIDABLE_ORDER_STATES
        )
        if can_refund:
            action = "refund"
        elif should_void:
            action = "void"
        else:
            action = "none"
        return RefundEligibilityDTO(
            transaction_id=txn.id,
            transaction_type=txn.type,
            transaction_status=txn.status,
            order_status=order.status,
            gateway_reference=txn.gateway_reference,
            created_at=txn.created_at,
            settles_at=settles_at,
            settled=settled,
            can_refund=can_refund,
            should_void=should_void,
            refundable_amount=order.refundable_amount,
            recommended_action=action,
        )

    @staticmethod
    def _order_dto(order: Order, transactions: List[Transaction]) -> OrderDTO:
        return OrderDTO(
            id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            amount=order.amount,
            currency=order.currency,
            status=order.status,
            description=order.description,
            authorized_amount=order.authorized_amount,
            captured_amount=order.captured_amount,
            refunded_amount=order.refunded_amount,
            refundable_amount=order.refundable_amount,
            created_at=order.created_at,
            updated_at=order.updated_at,
            transactions=[TransactionDTO.model_validate(t) for t in transactions],
        )
