"""Shared fixtures for payment tests: in-memory ledger, scripted gateway, clock."""
import asyncio
import copy
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

import pytest

from application.dtos.payments import (
    CreditCard,
    GatewayRequest,
    GatewayResponse,
    GatewayTransactionStatus,
    PaymentRequest,
)
from application.services.payment_service import OrchestratorConfig, PaymentOrchestrator
from domain.common.exceptions import DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    IdempotencyStatus,
    TransactionStatus,
    TransactionType,
)
from domain.payment.repository import (
    IdempotencyRepository,
    OrderRepository,
    PaymentMethodRepository,
    TransactionRepository,
)


APPROVED = "This transaction has been approved."


class Clock:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class InMemoryLedger:
    """Committed state shared by every unit of work; reads hand out copies."""

    def __init__(self):
        self.orders = {}
        self.transactions = {}
        self.payment_methods = {}
        self.idempotency = {}
        self.failing_commits = 0

    def uow_factory(self, *, readonly: bool = False) -> "InMemoryUnitOfWork":
        return InMemoryUnitOfWork(self, readonly=readonly)

    def transactions_for(self, order_id: str):
        rows = [t for t in self.transactions.values() if t.order_id == order_id]
        return sorted(rows, key=lambda t: (t.created_at, t.reference))


class _Repo:
    def __init__(self, uow: "InMemoryUnitOfWork", table: dict):
        self._uow = uow
        self._table = table

    def _put(self, key, value) -> None:
        table = self._table
        missing = object()
        previous = table.get(key, missing)

        def undo():
            if previous is missing:
                table.pop(key, None)
            else:
                table[key] = previous

        self._uow.undo_log.append(undo)
        table[key] = copy.deepcopy(value)

    def _delete(self, key) -> None:
        table = self._table
        previous = table.pop(key)
        self._uow.undo_log.append(lambda: table.__setitem__(key, previous))


class FakeOrderRepository(_Repo, OrderRepository):
    async def create(self, order):
        self._put(order.id, order)
        return order

    async def get_by_id(self, order_id):
        return copy.deepcopy(self._table.get(order_id))

    async def get_by_order_number(self, order_number):
        for order in self._table.values():
            if order.order_number == order_number:
                return copy.deepcopy(order)
        return None

    def _filtered(self, status, customer_id):
        rows = list(self._table.values())
        if status:
            rows = [o for o in rows if o.status == status]
        if customer_id:
            rows = [o for o in rows if o.customer_id == customer_id]
        return rows

    async def list(self, skip=0, limit=100, status=None, customer_id=None):
        rows = sorted(self._filtered(status, customer_id), key=lambda o: o.created_at, reverse=True)
        return [copy.deepcopy(o) for o in rows[skip: skip + limit]]

    async def count(self, status=None, customer_id=None):
        return len(self._filtered(status, customer_id))

    async def compare_and_set(self, order, expected_status, expected_version):
        stored = self._table.get(order.id)
        if stored is None or stored.status != expected_status or stored.version != expected_version:
            return False
        order.version = expected_version + 1
        self._put(order.id, order)
        return True


class FakeTransactionRepository(_Repo, TransactionRepository):
    async def create(self, transaction):
        self._put(transaction.id, transaction)
        return transaction

    async def get_by_id(self, transaction_id):
        return copy.deepcopy(self._table.get(transaction_id))

    async def get_by_reference(self, reference):
        for txn in self._table.values():
            if txn.reference == reference:
                return copy.deepcopy(txn)
        return None

    async def list_by_order(self, order_id):
        rows = [t for t in self._table.values() if t.order_id == order_id]
        return [copy.deepcopy(t) for t in sorted(rows, key=lambda t: (t.created_at, t.reference))]

    async def finalize(self, transaction):
        stored = self._table.get(transaction.id)
        if stored is None or stored.status != TransactionStatus.PENDING:
            raise DomainValidationException(f"Transaction {transaction.reference} is no longer pending")
        self._put(transaction.id, transaction)
        return transaction

    async def list_requiring_reconciliation(self, limit=100, stale_pending_before=None):
        rows = [
            t for t in self._table.values()
            if (t.requires_reconciliation and t.status != TransactionStatus.PENDING)
            or (
                stale_pending_before is not None
                and t.status == TransactionStatus.PENDING
                and t.created_at < stale_pending_before
            )
        ]
        return [copy.deepcopy(t) for t in sorted(rows, key=lambda t: t.created_at)[:limit]]

    async def list_unsettled(self, limit=100):
        rows = [
            t for t in self._table.values()
            if t.status == TransactionStatus.SUCCESS
            and t.type in (TransactionType.PURCHASE, TransactionType.CAPTURE)
            and t.settled_at is None
            and t.gateway_reference
        ]
        return [copy.deepcopy(t) for t in rows[:limit]]

    async def update_reconciliation(self, transaction):
        self._put(transaction.id, transaction)
        return transaction


class FakePaymentMethodRepository(_Repo, PaymentMethodRepository):
    async def create(self, reference):
        if reference.order_id in self._table:
            raise DomainValidationException("payment method already stored for order")
        self._put(reference.order_id, reference)
        return reference

    async def get_by_order_id(self, order_id):
        return copy.deepcopy(self._table.get(order_id))


class FakeIdempotencyRepository(_Repo, IdempotencyRepository):
    async def create_if_absent(self, record):
        if record.key in self._table:
            return False
        self._put(record.key, record)
        return True

    async def get(self, key):
        return copy.deepcopy(self._table.get(key))

    async def complete(self, record):
        self._put(record.key, record)

    async def delete_in_progress(self, key):
        stored = self._table.get(key)
        if stored is None or stored.status != IdempotencyStatus.IN_PROGRESS:
            return False
        self._delete(key)
        return True

    async def delete_expired(self, now, key=None):
        expired = [
            k for k, r in self._table.items()
            if r.status == IdempotencyStatus.COMPLETED and r.expires_at <= now and (key is None or k == key)
        ]
        for k in expired:
            self._delete(k)
        return len(expired)


class InMemoryUnitOfWork(AbstractUnitOfWork):
    """Writes land immediately; rollback replays the undo log in reverse."""

    def __init__(self, ledger: InMemoryLedger, *, readonly: bool = False):
        super().__init__(readonly=readonly)
        self.ledger = ledger
        self.undo_log = []
        self.orders = FakeOrderRepository(self, ledger.orders)
        self.transactions = FakeTransactionRepository(self, ledger.transactions)
        self.payment_methods = FakePaymentMethodRepository(self, ledger.payment_methods)
        self.idempotency = FakeIdempotencyRepository(self, ledger.idempotency)

    async def commit(self) -> None:
        if self.ledger.failing_commits and not self._readonly:
            self.ledger.failing_commits -= 1
            await self.rollback()
            raise RuntimeError("simulated commit failure")
        self.undo_log.clear()
        self._committed = True

    async def rollback(self) -> None:
        while self.undo_log:
            self.undo_log.pop()()
        self._committed = False


def approved(reference_id: str, settled: bool = False) -> GatewayResponse:
    return GatewayResponse(
        reference_id=reference_id,
        response_code="1",
        response_message=APPROVED,
        settlement_status="settled" if settled else None,
    )


class StubGateway:
    """Scripted gateway: queue responses/exceptions, otherwise approve with a fresh id."""

    provider = "stub"

    def __init__(self):
        self.requests: list[GatewayRequest] = []
        self.queries: list[str] = []
        self.script: list = []
        self.statuses: dict[str, GatewayTransactionStatus] = {}
        self.delay: float = 0.0
        self.closed = False
        self.started = asyncio.Event()

    @property
    def calls(self) -> int:
        return len(self.requests)

    def respond(self, *outcomes) -> None:
        self.script.extend(outcomes)

    async def submit(self, req: GatewayRequest) -> GatewayResponse:
        self.requests.append(req)
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                return outcome(req)
            return outcome
        return approved(f"gw_{len(self.requests)}")

    async def query_transaction(self, reference_id: str) -> GatewayTransactionStatus:
        self.queries.append(reference_id)
        status = self.statuses.get(reference_id)
        if isinstance(status, BaseException):
            raise status
        return status or GatewayTransactionStatus(reference_id=reference_id, status="unknown")

    async def aclose(self) -> None:
        self.closed = True


def card(number: str = "4111111111111111", cvv: str = "123") -> CreditCard:
    return CreditCard(
        card_number=number,
        expiration_month=12,
        expiration_year=2030,
        cvv=cvv,
        name_on_card="Jane Doe",
    )


def payment_request(amount: str = "100.50", **overrides) -> PaymentRequest:
    data = dict(customer_id="cust_1", amount=Decimal(amount), currency="USD", credit_card=card())
    data.update(overrides)
    return PaymentRequest(**data)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def config() -> OrchestratorConfig:
    return OrchestratorConfig(
        gateway_timeout=1.0,
        settlement_cutoff=timedelta(hours=24),
        idempotency_retention=timedelta(hours=24),
        idempotency_wait_timeout=1.0,
        idempotency_poll_interval=0.01,
    )


@pytest.fixture
def make_orchestrator(ledger, gateway, config, clock) -> Callable[..., PaymentOrchestrator]:
    def _make(**overrides) -> PaymentOrchestrator:
        return PaymentOrchestrator(
            gateway=overrides.get("gateway", gateway),
            uow_factory=ledger.uow_factory,
            config=overrides.get("config", config),
            clock=clock,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> PaymentOrchestrator:
    return make_orchestrator()


@pytest.fixture
def new_payment():
    return payment_request


@pytest.fixture
def new_card():
    return card


@pytest.fixture
def approve():
    return approved
