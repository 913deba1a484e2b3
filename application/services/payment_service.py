"""
Application service orchestrating payment use-cases.

This class depends only on the application PaymentGateway port, the ledger's
unit of work and DTOs. Gateway implementations are provided by
infrastructure and must be injected from the composition root (API/tasks),
keeping dependencies one-way.

Every operation follows the same protocol:

1. claim the idempotency key (or replay a committed result)
2. validate against the state machine, no gateway contact on failure
3. persist the pending transaction (plus order/payment method when opening)
4. call the gateway under a timeout
5. classify the response through the error mapper
6. conditionally update the order and finalize the transaction together
7. commit the idempotency record

Failures before step 4 release the key. Once the gateway has been contacted
the key is never released: a retry could move money twice.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from application.dtos.payments import (
    CaptureRequest,
    GatewayRequest,
    OrderContext,
    PaymentMethodSnapshot,
    PaymentRequest,
    PaymentResult,
    RefundRequest,
    VoidRequest,
)
from application.ports.payment_gateway import (
    GatewayConfigurationError,
    GatewayTransportError,
    PaymentGateway,
)
from application.services.idempotency import (
    IdempotencyKeyManager,
    Replay,
    derive_key,
    request_fingerprint,
    utcnow,
)
from core.logging_config import get_logger
from domain.common.exceptions import (
    OrderNotFoundException,
    PaymentConfigurationException,
    TransactionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    ErrorKind,
    Order,
    OrderStatus,
    PaymentMethodReference,
    Transaction,
    TransactionStatus,
    TransactionType,
    generate_order_number,
    generate_transaction_reference,
    new_id,
)
from domain.payment.error_mapper import GatewayOutcome, map_gateway_response, outcome_for_kind
from domain.payment.state_machine import SettlementPolicy, TransactionStateMachine


logger = get_logger(__name__)


@dataclass(frozen=True)
class OrchestratorConfig:
    """Explicit runtime knobs for the orchestrator; no module-level globals."""

    gateway_timeout: float = 30.0
    settlement_cutoff: timedelta = timedelta(hours=24)
    idempotency_retention: timedelta = timedelta(hours=24)
    idempotency_wait_timeout: float = 10.0
    idempotency_poll_interval: float = 0.05

    @classmethod
    def from_settings(cls, settings: Any) -> "OrchestratorConfig":
        return cls(
            gateway_timeout=settings.gateway.timeout_seconds,
            settlement_cutoff=timedelta(hours=settings.settlement.cutoff_hours),
            idempotency_retention=timedelta(hours=settings.idempotency.retention_hours),
            idempotency_wait_timeout=settings.idempotency.wait_timeout_seconds,
            idempotency_poll_interval=settings.idempotency.poll_interval_seconds,
        )


@dataclass
class _Attempt:
    """Book-keeping for one in-flight operation."""

    key: str
    operation: TransactionType
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    expected_status: Optional[OrderStatus] = None
    expected_version: int = 0
    amount: Decimal = field(default_factory=Decimal)
    gateway_contacted: bool = False

    def bind(self, order: Order, transaction: Transaction) -> None:
        self.order_id = order.id
        self.transaction_id = transaction.id
        self.expected_status = order.status
        self.expected_version = order.version
        self.amount = transaction.amount


Prepare = Callable[[Any, _Attempt], Awaitable[GatewayRequest]]


class PaymentOrchestrator:
    def __init__(
        self,
        gateway: PaymentGateway,
        uow_factory: Callable[..., AbstractUnitOfWork],
        config: Optional[OrchestratorConfig] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.config = config or OrchestratorConfig()
        self._uow_factory = uow_factory
        self._clock = clock
        self.state_machine = TransactionStateMachine(SettlementPolicy(cutoff=self.config.settlement_cutoff))
        self.idempotency = IdempotencyKeyManager(
            uow_factory,
            retention=self.config.idempotency_retention,
            wait_timeout=self.config.idempotency_wait_timeout,
            poll_interval=self.config.idempotency_poll_interval,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def purchase(self, req: PaymentRequest) -> PaymentResult:
        """Authorize and capture in one gateway call; opens a new order."""
        return await self._run(TransactionType.PURCHASE, req, self._prepare_opening)

    async def authorize(self, req: PaymentRequest) -> PaymentResult:
        return await self._run(TransactionType.AUTHORIZE, req, self._prepare_opening)

    async def capture(self, req: CaptureRequest) -> PaymentResult:
        return await self._run(TransactionType.CAPTURE, req, self._prepare_followup)

    async def void(self, req: VoidRequest) -> PaymentResult:
        return await self._run(TransactionType.VOID, req, self._prepare_followup)

    async def refund(self, req: RefundRequest) -> PaymentResult:
        """Refund a settled purchase/capture; unsettled ones must be voided instead."""
        return await self._run(TransactionType.REFUND, req, self._prepare_followup)

    async def aclose(self) -> None:
        # Best-effort close underlying resources
        close = getattr(self.gateway, "aclose", None)
        if callable(close):
            await close()

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    async def _run(self, operation: TransactionType, req: Any, prepare: Prepare) -> PaymentResult:
        key = derive_key(operation.value, req)
        outcome = await self.idempotency.begin(key, operation.value, request_fingerprint(operation.value, req))
        if isinstance(outcome, Replay):
            return outcome.result

        attempt = _Attempt(key=key, operation=operation)
        try:
            gateway_request = await prepare(req, attempt)
        except BaseException as exc:
            await self._abort(attempt, exc)
            raise

        attempt.gateway_contacted = True
        task = asyncio.ensure_future(self._complete(attempt, gateway_request))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # The gateway call is in flight: let it finish so the ledger reflects it
            logger.warning(
                "payment_cancelled_in_flight",
                operation=operation.value,
                transaction_id=attempt.transaction_id,
            )
            await task
            raise

    async def _abort(self, attempt: _Attempt, exc: BaseException) -> None:
        """Undo a request that never reached the gateway."""
        if attempt.transaction_id is not None:
            message = (
                "Request cancelled before gateway contact"
                if isinstance(exc, asyncio.CancelledError)
                else "Request aborted before gateway contact"
            )
            await self._finalize(attempt, outcome_for_kind(ErrorKind.CANCELLED, message=message), None, False)
        await self.idempotency.release(attempt.key)
        logger.info(
            "payment_aborted",
            operation=attempt.operation.value,
            error_type=type(exc).__name__,
            transaction_id=attempt.transaction_id,
        )

    async def _complete(self, attempt: _Attempt, gateway_request: GatewayRequest) -> PaymentResult:
        outcome, gateway_reference, settled = await self._call_gateway(gateway_request)
        try:
            result = await self._finalize(attempt, outcome, gateway_reference, settled)
        except Exception:
            logger.exception(
                "payment_finalize_failed",
                transaction_id=attempt.transaction_id,
                gateway_reference=gateway_reference,
            )
            # The gateway has answered: keep the key, flag the row and hand the
            # ambiguous result to replays instead of leaving the claim open
            result = await self._flag_unfinalized(attempt, outcome, gateway_reference)
            if result is None:
                raise
        await self.idempotency.commit(attempt.key, result, result.transaction_id)
        return result

    async def _flag_unfinalized(
        self,
        attempt: _Attempt,
        outcome: GatewayOutcome,
        gateway_reference: Optional[str],
    ) -> Optional[PaymentResult]:
        """Record the gateway answer on a row whose finalize write failed; the order is left to reconciliation."""
        try:
            async with self._uow_factory() as uow:
                order = await uow.orders.get_by_id(attempt.order_id)
                transaction = await uow.transactions.get_by_id(attempt.transaction_id)
                if order is None or transaction is None:
                    return None
                if transaction.is_pending:
                    transaction.finalize(
                        TransactionStatus.ERROR,
                        now=self._clock(),
                        gateway_reference=gateway_reference,
                        response_code=outcome.response_code,
                        response_message=(
                            f"Ledger update failed after gateway response ({outcome.status.value}); "
                            "flagged for reconciliation"
                        ),
                        error_kind=ErrorKind.UNKNOWN,
                        requires_reconciliation=True,
                    )
                    await uow.transactions.finalize(transaction)
        except Exception:
            logger.exception(
                "payment_flag_unfinalized_failed",
                transaction_id=attempt.transaction_id,
                gateway_reference=gateway_reference,
            )
            return None
        logger.warning(
            "payment_flagged_for_reconciliation",
            transaction_id=transaction.id,
            gateway_reference=gateway_reference,
            gateway_status=outcome.status.value,
        )
        return self._to_result(order, transaction)

    async def _prepare_opening(self, req: PaymentRequest, attempt: _Attempt) -> GatewayRequest:
        operation = attempt.operation
        self.state_machine.validate_opening(operation)
        now = self._clock()
        card = req.credit_card
        order = Order(
            id=new_id(),
            order_number=generate_order_number(now),
            customer_id=req.customer_id,
            amount=req.amount,
            currency=req.currency,
            status=OrderStatus.CREATED,
            description=req.description,
            created_at=now,
            updated_at=now,
        )
        transaction = Transaction(
            id=new_id(),
            reference=generate_transaction_reference(now),
            order_id=order.id,
            type=operation,
            amount=req.amount,
            created_at=now,
        )
        method = PaymentMethodReference(
            order_id=order.id,
            last_four=card.last_four,
            expiration_month=card.expiration_month,
            expiration_year=card.expiration_year,
            cardholder_name=card.name_on_card,
            created_at=now,
        )
        async with self._uow_factory() as uow:
            await uow.orders.create(order)
            await uow.payment_methods.create(method)
            await uow.transactions.create(transaction)
        attempt.bind(order, transaction)

        return GatewayRequest(
            operation=operation,
            amount=req.amount,
            currency=order.currency,
            order=self._order_context(order),
            transaction_reference=transaction.reference,
            card=card,
        )

    async def _prepare_followup(self, req: Any, attempt: _Attempt) -> GatewayRequest:
        operation = attempt.operation
        now = self._clock()
        method: Optional[PaymentMethodReference] = None
        async with self._uow_factory() as uow:
            reference = await self._load_transaction(uow, req.transaction_id)
            order = await uow.orders.get_by_id(reference.order_id)
            if order is None:
                raise OrderNotFoundException(reference.order_id)

            amount = getattr(req, "amount", None)
            if amount is None:
                amount = reference.amount
            self.state_machine.validate(operation, order, reference, amount, now)

            if operation == TransactionType.REFUND:
                method = await uow.payment_methods.get_by_order_id(order.id)
                if method is None:
                    raise PaymentConfigurationException(
                        "No stored payment method for this order; refund cannot be submitted",
                        details={"order_id": order.id},
                    )

            transaction = Transaction(
                id=new_id(),
                reference=generate_transaction_reference(now),
                order_id=order.id,
                type=operation,
                amount=amount,
                parent_id=reference.id,
                reason=getattr(req, "reason", None),
                created_at=now,
            )
            await uow.transactions.create(transaction)
        attempt.bind(order, transaction)

        snapshot = None
        if method is not None:
            snapshot = PaymentMethodSnapshot(
                last_four=method.last_four,
                expiration_month=method.expiration_month,
                expiration_year=method.expiration_year,
                cardholder_name=method.cardholder_name,
            )
        return GatewayRequest(
            operation=operation,
            amount=amount,
            currency=order.currency,
            order=self._order_context(order),
            transaction_reference=transaction.reference,
            reference_id=reference.gateway_reference,
            payment_method=snapshot,
        )

    async def _call_gateway(self, req: GatewayRequest) -> tuple[GatewayOutcome, Optional[str], bool]:
        timeout = self.config.gateway_timeout
        started = time.perf_counter()
        logger.info(
            "payment_gateway_call",
            provider=self.gateway.provider,
            operation=req.operation.value,
            transaction_reference=req.transaction_reference,
            order_number=req.order.order_number,
            amount=str(req.amount),
            currency=req.currency,
            card_last4=req.card.last_four if req.card else None,
        )
        try:
            response = await asyncio.wait_for(self.gateway.submit(req), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("payment_gateway_timeout", transaction_reference=req.transaction_reference, timeout=timeout)
            return (
                outcome_for_kind(ErrorKind.TRANSPORT_FAILURE, message=f"Gateway did not respond within {timeout}s"),
                None,
                False,
            )
        except GatewayTransportError as exc:
            logger.warning("payment_gateway_transport_error", transaction_reference=req.transaction_reference, error=exc.message)
            return outcome_for_kind(ErrorKind.TRANSPORT_FAILURE, message=exc.message), None, False
        except GatewayConfigurationError as exc:
            logger.error("payment_gateway_configuration_error", code=exc.code, error=exc.message)
            return (
                outcome_for_kind(ErrorKind.CONFIGURATION_ERROR, response_code=exc.code, message=exc.message),
                None,
                False,
            )
        except Exception as exc:
            logger.exception("payment_gateway_unexpected_error", transaction_reference=req.transaction_reference)
            return outcome_for_kind(ErrorKind.UNKNOWN, message=f"Unexpected gateway failure: {type(exc).__name__}"), None, False

        outcome = map_gateway_response(response.response_code, response.response_message)
        logger.info(
            "payment_gateway_response",
            transaction_reference=req.transaction_reference,
            gateway_reference=response.reference_id,
            response_code=response.response_code,
            error_kind=outcome.kind.value if outcome.kind else None,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return outcome, response.reference_id, response.settlement_status == "settled"

    async def _finalize(
        self,
        attempt: _Attempt,
        outcome: GatewayOutcome,
        gateway_reference: Optional[str],
        settled: bool,
    ) -> PaymentResult:
        """Apply the outcome to the order (conditionally) and finalize the transaction in one unit of work."""
        now = self._clock()
        kind, status, reconcile, message = outcome.kind, outcome.status, outcome.requires_reconciliation, outcome.message
        async with self._uow_factory() as uow:
            order = await uow.orders.get_by_id(attempt.order_id)
            transaction = await uow.transactions.get_by_id(attempt.transaction_id)
            if order is None or transaction is None:
                raise TransactionNotFoundException(attempt.transaction_id or "")

            transition = self.state_machine.apply_outcome(
                attempt.operation, order, status, attempt.amount, ambiguous=reconcile
            )
            if transition.changes(order):
                won = False
                # stale snapshot goes straight to the conflict path
                if order.status == attempt.expected_status and order.version == attempt.expected_version:
                    order.apply(
                        transition.status,
                        authorized_delta=transition.authorized_delta,
                        captured_delta=transition.captured_delta,
                        refunded_delta=transition.refunded_delta,
                        now=now,
                    )
                    won = await uow.orders.compare_and_set(order, attempt.expected_status, attempt.expected_version)
                if not won:
                    logger.warning(
                        "payment_concurrency_conflict",
                        order_id=attempt.order_id,
                        transaction_id=attempt.transaction_id,
                        expected_status=attempt.expected_status.value,
                        gateway_status=status.value,
                    )
                    kind = ErrorKind.CONCURRENCY_CONFLICT
                    status = TransactionStatus.ERROR
                    reconcile = True
                    message = "Order was modified concurrently; transaction flagged for reconciliation"
                    order = await uow.orders.get_by_id(attempt.order_id)

            transaction.finalize(
                status,
                now=now,
                gateway_reference=gateway_reference,
                response_code=outcome.response_code,
                response_message=message,
                error_kind=kind,
                requires_reconciliation=reconcile,
                settled=settled and status == TransactionStatus.SUCCESS,
            )
            await uow.transactions.finalize(transaction)

        logger.info(
            "payment_finalized",
            operation=attempt.operation.value,
            order_id=order.id,
            order_status=order.status.value,
            transaction_id=transaction.id,
            transaction_status=transaction.status.value,
            requires_reconciliation=transaction.requires_reconciliation,
        )
        return self._to_result(order, transaction)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _load_transaction(uow: AbstractUnitOfWork, transaction_id: str) -> Transaction:
        transaction = await uow.transactions.get_by_id(transaction_id)
        if transaction is None:
            transaction = await uow.transactions.get_by_reference(transaction_id)
        if transaction is None:
            raise TransactionNotFoundException(transaction_id)
        return transaction

    @staticmethod
    def _order_context(order: Order) -> OrderContext:
        return OrderContext(
            order_id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            description=order.description,
        )

    @staticmethod
    def _to_result(order: Order, transaction: Transaction) -> PaymentResult:
        success = transaction.succeeded and transaction.error_kind is None
        message = transaction.response_message or ("Transaction approved" if success else "Transaction failed")
        return PaymentResult(
            success=success,
            transaction_id=transaction.id,
            transaction_reference=transaction.reference,
            order_id=order.id,
            order_number=order.order_number,
            order_status=order.status,
            transaction_status=transaction.status,
            amount=transaction.amount,
            currency=order.currency,
            gateway_reference=transaction.gateway_reference,
            message=message,
            error_kind=transaction.error_kind,
            response_code=transaction.response_code,
            requires_reconciliation=transaction.requires_reconciliation,
        )
