"""
Reconciliation of ambiguous outcomes.

Transactions flagged ``requires_reconciliation`` (gateway errors, timeouts,
unknown codes, held for review, lost concurrency races) are re-queried at the
gateway and resolved here. Rows still pending past ``pending_grace`` never got
their finalize write and are flagged first. The same job stamps ``settled_at``
on captures the gateway reports as settled so refunds become eligible before
the cutoff.
Runs from Celery beat (infrastructure.tasks.payment_tasks).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from application.dtos.payments import GatewayTransactionStatus
from application.ports.payment_gateway import GatewayConfigurationError, GatewayTransportError, PaymentGateway
from application.services.idempotency import utcnow
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import ErrorKind, Order, OrderStatus, Transaction, TransactionStatus, TransactionType
from domain.payment.state_machine import ALLOWED_ORDER_STATES, ORDER_OPENING_OPERATIONS, TransactionStateMachine


logger = get_logger(__name__)


# Gateway-reported status -> (resolved transaction status, error kind)
RESOLUTIONS: dict[str, tuple[TransactionStatus, Optional[ErrorKind]]] = {
    "approved": (TransactionStatus.SUCCESS, None),
    "settled": (TransactionStatus.SUCCESS, None),
    "declined": (TransactionStatus.DECLINED, ErrorKind.DECLINED),
    "error": (TransactionStatus.ERROR, ErrorKind.GATEWAY_ERROR),
}


@dataclass
class ReconciliationReport:
    checked: int = 0
    resolved: int = 0
    unresolved: int = 0
    settled: int = 0


class ReconciliationService:
    def __init__(
        self,
        gateway: PaymentGateway,
        uow_factory: Callable[..., AbstractUnitOfWork],
        state_machine: Optional[TransactionStateMachine] = None,
        *,
        pending_grace: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self._uow_factory = uow_factory
        self.state_machine = state_machine or TransactionStateMachine()
        self.pending_grace = pending_grace
        self._clock = clock

    async def reconcile(self, limit: int = 100) -> ReconciliationReport:
        report = ReconciliationReport()
        async with self._uow_factory(readonly=True) as uow:
            flagged = await uow.transactions.list_requiring_reconciliation(
                limit=limit, stale_pending_before=self._clock() - self.pending_grace
            )

        for txn in flagged:
            report.checked += 1
            if txn.is_pending:
                await self._flag_stale_pending(txn.id)
                report.unresolved += 1
                continue
            if not txn.gateway_reference:
                # Timed out before the gateway answered: nothing to query by
                logger.info("reconciliation_no_gateway_reference", transaction_id=txn.id)
                report.unresolved += 1
                continue
            status = await self._query(txn.gateway_reference)
            if status is None or not await self._resolve(txn.id, status):
                report.unresolved += 1
            else:
                report.resolved += 1

        logger.info(
            "reconciliation_completed",
            checked=report.checked,
            resolved=report.resolved,
            unresolved=report.unresolved,
        )
        return report

    async def refresh_settlement(self, limit: int = 100) -> ReconciliationReport:
        report = ReconciliationReport()
        async with self._uow_factory(readonly=True) as uow:
            candidates = await uow.transactions.list_unsettled(limit=limit)

        for txn in candidates:
            report.checked += 1
            status = await self._query(txn.gateway_reference)
            if status is None or status.status != "settled":
                continue
            async with self._uow_factory() as uow:
                current = await uow.transactions.get_by_id(txn.id)
                if current is None or current.settled_at is not None:
                    continue
                current.mark_settled(status.settled_at or self._clock())
                await uow.transactions.update_reconciliation(current)
            report.settled += 1
            logger.info("transaction_settled", transaction_id=txn.id, settled_at=current.settled_at)
        return report

    async def _flag_stale_pending(self, transaction_id: str) -> None:
        """A pending row past the grace period never got its finalize write; surface it as ambiguous."""
        async with self._uow_factory() as uow:
            txn = await uow.transactions.get_by_id(transaction_id)
            if txn is None or not txn.is_pending:
                return
            txn.finalize(
                TransactionStatus.ERROR,
                now=self._clock(),
                response_message="Transaction left pending past the grace period; outcome unknown",
                error_kind=ErrorKind.UNKNOWN,
                requires_reconciliation=True,
            )
            await uow.transactions.finalize(txn)
        logger.warning("reconciliation_stale_pending_flagged", transaction_id=transaction_id)

    async def _query(self, gateway_reference: Optional[str]) -> Optional[GatewayTransactionStatus]:
        if not gateway_reference:
            return None
        try:
            return await self.gateway.query_transaction(gateway_reference)
        except (GatewayTransportError, GatewayConfigurationError) as exc:
            logger.warning("reconciliation_query_failed", gateway_reference=gateway_reference, error=exc.message)
            return None

    async def _resolve(self, transaction_id: str, status: GatewayTransactionStatus) -> bool:
        gateway_status = status.status
        async with self._uow_factory() as uow:
            txn = await uow.transactions.get_by_id(transaction_id)
            if txn is None or not txn.requires_reconciliation:
                return False
            order = await uow.orders.get_by_id(txn.order_id)

            if txn.type == TransactionType.VOID and gateway_status == "voided":
                resolution = (TransactionStatus.SUCCESS, None)
            else:
                resolution = RESOLUTIONS.get(gateway_status)
            if resolution is None or order is None:
                logger.info(
                    "reconciliation_still_ambiguous",
                    transaction_id=txn.id,
                    gateway_status=gateway_status,
                )
                return False

            new_status, kind = resolution
            if not self._order_accepts(txn, order, new_status):
                logger.warning(
                    "reconciliation_manual_review",
                    transaction_id=txn.id,
                    order_id=order.id,
                    order_status=order.status.value,
                    gateway_status=gateway_status,
                )
                return False

            transition = self.state_machine.apply_outcome(txn.type, order, new_status, txn.amount)
            if transition.changes(order):
                expected_status, expected_version = order.status, order.version
                order.apply(
                    transition.status,
                    authorized_delta=transition.authorized_delta,
                    captured_delta=transition.captured_delta,
                    refunded_delta=transition.refunded_delta,
                    now=self._clock(),
                )
                if not await uow.orders.compare_and_set(order, expected_status, expected_version):
                    logger.info("reconciliation_conflict", transaction_id=txn.id, order_id=order.id)
                    return False

            settled_at = None
            if gateway_status == "settled":
                settled_at = status.settled_at or self._clock()
            txn.resolve(
                new_status,
                error_kind=kind,
                message=f"Resolved by reconciliation: gateway reports {status.raw_status or gateway_status}",
                settled_at=settled_at,
            )
            await uow.transactions.update_reconciliation(txn)

        logger.info(
            "reconciliation_resolved",
            transaction_id=txn.id,
            transaction_status=txn.status.value,
            order_status=order.status.value,
        )
        return True

    @staticmethod
    def _order_accepts(txn: Transaction, order: Order, new_status: TransactionStatus) -> bool:
        """Only apply a late outcome when the order is still where the operation left it."""
        if txn.type in ORDER_OPENING_OPERATIONS:
            return order.status == OrderStatus.CREATED
        if new_status != TransactionStatus.SUCCESS:
            return True
        if order.status not in ALLOWED_ORDER_STATES[txn.type]:
            return False
        if txn.type == TransactionType.CAPTURE:
            return txn.amount <= order.authorized_amount
        if txn.type == TransactionType.REFUND:
            return txn.amount <= order.refundable_amount
        return True
