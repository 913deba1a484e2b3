import asyncio
from decimal import Decimal

import pytest

from application.dtos.payments import CaptureRequest, GatewayResponse, RefundRequest, VoidRequest
from application.ports.payment_gateway import GatewayConfigurationError, GatewayTransportError
from domain.common.exceptions import (
    IdempotencyKeyReuseException,
    InvalidStateTransitionException,
    NotSettledException,
    TransactionNotFoundException,
)
from domain.payment.entity import (
    ErrorKind,
    OrderStatus,
    TransactionStatus,
    TransactionType,
)


@pytest.mark.asyncio
async def test_purchase_of_100_50_captures_order(orchestrator, gateway, ledger, new_payment):
    result = await orchestrator.purchase(new_payment("100.50", description="Widget"))

    assert result.success
    assert result.order_status == OrderStatus.CAPTURED
    assert result.transaction_status == TransactionStatus.SUCCESS
    assert result.amount == Decimal("100.50")
    assert result.gateway_reference == "gw_1"
    assert result.order_number.startswith("ORD_")
    assert result.transaction_reference.startswith("TXN_")

    order = ledger.orders[result.order_id]
    assert order.captured_amount == Decimal("100.50")
    assert order.authorized_amount == Decimal("100.50")
    assert order.version == 1

    sent = gateway.requests[0]
    assert sent.operation == TransactionType.PURCHASE
    assert sent.card.last_four == "1111"
    assert sent.transaction_reference == result.transaction_reference

    method = ledger.payment_methods[result.order_id]
    assert method.last_four == "1111"
    assert not hasattr(method, "card_number")
    assert "4111111111111111" not in result.model_dump_json()


@pytest.mark.asyncio
async def test_authorize_leaves_order_authorized(orchestrator, new_payment):
    result = await orchestrator.authorize(new_payment("80.00"))
    assert result.success
    assert result.order_status == OrderStatus.AUTHORIZED


@pytest.mark.asyncio
async def test_same_key_replays_without_second_gateway_call(orchestrator, gateway, ledger, new_payment):
    first = await orchestrator.purchase(new_payment(idempotency_key="order-42"))
    second = await orchestrator.purchase(new_payment(idempotency_key="order-42"))

    assert gateway.calls == 1
    assert second == first
    assert len(ledger.orders) == 1


@pytest.mark.asyncio
async def test_derived_key_replays_same_request_id(orchestrator, gateway, new_payment):
    first = await orchestrator.purchase(new_payment(request_id="req-1"))
    second = await orchestrator.purchase(new_payment(request_id="req-1"))
    assert gateway.calls == 1
    assert second.transaction_id == first.transaction_id


@pytest.mark.asyncio
async def test_key_reused_for_different_amount_rejected(orchestrator, gateway, new_payment):
    await orchestrator.purchase(new_payment("10.00", idempotency_key="k"))
    with pytest.raises(IdempotencyKeyReuseException):
        await orchestrator.purchase(new_payment("11.00", idempotency_key="k"))
    assert gateway.calls == 1


@pytest.mark.asyncio
async def test_authorize_then_partial_capture(orchestrator, gateway, ledger, new_payment):
    auth = await orchestrator.authorize(new_payment("100.00"))
    capture = await orchestrator.capture(CaptureRequest(transaction_id=auth.transaction_id, amount=Decimal("60.00")))

    assert capture.success
    assert capture.order_status == OrderStatus.CAPTURED
    order = ledger.orders[auth.order_id]
    assert order.captured_amount == Decimal("60.00")
    assert gateway.requests[1].reference_id == auth.gateway_reference
    assert ledger.transactions[capture.transaction_id].parent_id == auth.transaction_id


@pytest.mark.asyncio
async def test_capture_on_voided_order_never_reaches_gateway(orchestrator, gateway, ledger, new_payment):
    auth = await orchestrator.authorize(new_payment("100.00"))
    void = await orchestrator.void(VoidRequest(transaction_id=auth.transaction_id))
    assert void.order_status == OrderStatus.VOIDED
    calls_before = gateway.calls
    rows_before = len(ledger.transactions)

    with pytest.raises(InvalidStateTransitionException):
        await orchestrator.capture(
            CaptureRequest(transaction_id=auth.transaction_id, amount=Decimal("10.00"), idempotency_key="cap-1")
        )

    assert gateway.calls == calls_before
    assert len(ledger.transactions) == rows_before
    assert "cap-1" not in ledger.idempotency


@pytest.mark.asyncio
async def test_capture_accepts_transaction_reference(orchestrator, new_payment):
    auth = await orchestrator.authorize(new_payment("50.00"))
    capture = await orchestrator.capture(
        CaptureRequest(transaction_id=auth.transaction_reference, amount=Decimal("50.00"))
    )
    assert capture.success


@pytest.mark.asyncio
async def test_unknown_transaction_releases_key(orchestrator, gateway, ledger):
    with pytest.raises(TransactionNotFoundException):
        await orchestrator.capture(CaptureRequest(transaction_id="nope", amount=Decimal("1.00"), idempotency_key="k"))
    assert gateway.calls == 0
    assert ledger.idempotency == {}


@pytest.mark.asyncio
async def test_refund_before_settlement_then_after_cutoff(orchestrator, gateway, ledger, clock, new_payment):
    purchase = await orchestrator.purchase(new_payment("100.50"))

    with pytest.raises(NotSettledException):
        await orchestrator.refund(RefundRequest(transaction_id=purchase.transaction_id, amount=Decimal("20.00")))
    assert gateway.calls == 1

    clock.advance(hours=24)
    refund = await orchestrator.refund(
        RefundRequest(transaction_id=purchase.transaction_id, amount=Decimal("20.00"), reason="damaged")
    )
    assert refund.success
    assert refund.order_status == OrderStatus.PARTIALLY_REFUNDED

    sent = gateway.requests[-1]
    assert sent.card is None
    assert sent.payment_method.last_four == "1111"
    assert sent.reference_id == purchase.gateway_reference
    assert ledger.transactions[refund.transaction_id].reason == "damaged"

    rest = await orchestrator.refund(RefundRequest(transaction_id=purchase.transaction_id, amount=Decimal("80.50")))
    assert rest.order_status == OrderStatus.REFUNDED
    assert ledger.orders[purchase.order_id].refunded_amount == Decimal("100.50")


@pytest.mark.asyncio
async def test_void_unsettled_purchase(orchestrator, new_payment):
    purchase = await orchestrator.purchase(new_payment("30.00"))
    void = await orchestrator.void(VoidRequest(transaction_id=purchase.transaction_id))
    assert void.success
    assert void.order_status == OrderStatus.VOIDED
    assert void.amount == Decimal("30.00")


@pytest.mark.asyncio
async def test_declined_purchase_fails_order(orchestrator, gateway, new_payment):
    gateway.respond(GatewayResponse(response_code="2", response_message="This transaction has been declined."))
    result = await orchestrator.purchase(new_payment())

    assert not result.success
    assert result.error_kind == ErrorKind.DECLINED
    assert result.transaction_status == TransactionStatus.DECLINED
    assert result.order_status == OrderStatus.FAILED
    assert not result.requires_reconciliation
    assert result.message == "This transaction has been declined."


@pytest.mark.asyncio
async def test_held_for_review_left_for_reconciliation(orchestrator, gateway, new_payment):
    gateway.respond(GatewayResponse(reference_id="gw_h", response_code="4", response_message="held"))
    result = await orchestrator.purchase(new_payment())
    assert result.transaction_status == TransactionStatus.HELD
    assert result.requires_reconciliation
    assert result.order_status == OrderStatus.CREATED


@pytest.mark.asyncio
async def test_gateway_timeout_is_ambiguous_and_key_kept(make_orchestrator, config, gateway, ledger, new_payment):
    from dataclasses import replace

    orchestrator = make_orchestrator(config=replace(config, gateway_timeout=0.05))
    gateway.delay = 1.0
    result = await orchestrator.purchase(new_payment(idempotency_key="slow"))

    assert result.error_kind == ErrorKind.TRANSPORT_FAILURE
    assert result.requires_reconciliation
    assert result.order_status == OrderStatus.CREATED
    assert result.gateway_reference is None

    # the key is committed, never released: a retry replays instead of charging again
    gateway.delay = 0
    again = await orchestrator.purchase(new_payment(idempotency_key="slow"))
    assert again == result
    assert gateway.calls == 1


@pytest.mark.asyncio
async def test_transport_error_flags_reconciliation(orchestrator, gateway, new_payment):
    gateway.respond(GatewayTransportError("connection reset", provider="stub"))
    result = await orchestrator.purchase(new_payment())
    assert result.error_kind == ErrorKind.TRANSPORT_FAILURE
    assert result.requires_reconciliation


@pytest.mark.asyncio
async def test_configuration_error_is_not_ambiguous(orchestrator, gateway, new_payment):
    gateway.respond(GatewayConfigurationError("bad credentials", provider="stub", code="E00007"))
    result = await orchestrator.purchase(new_payment())
    assert result.error_kind == ErrorKind.CONFIGURATION_ERROR
    assert not result.requires_reconciliation
    assert result.order_status == OrderStatus.FAILED
    assert result.response_code == "E00007"


@pytest.mark.asyncio
async def test_unexpected_gateway_exception_is_unknown(orchestrator, gateway, new_payment):
    gateway.respond(ValueError("boom"))
    result = await orchestrator.purchase(new_payment())
    assert result.error_kind == ErrorKind.UNKNOWN
    assert result.requires_reconciliation


@pytest.mark.asyncio
async def test_unmapped_response_code_is_unknown(orchestrator, gateway, new_payment):
    gateway.respond(GatewayResponse(reference_id="gw_x", response_code="7", response_message="odd"))
    result = await orchestrator.purchase(new_payment())
    assert result.error_kind == ErrorKind.UNKNOWN
    assert result.message == "odd"
    assert result.gateway_reference == "gw_x"


@pytest.mark.asyncio
async def test_concurrent_captures_one_wins(orchestrator, gateway, ledger, new_payment):
    auth = await orchestrator.authorize(new_payment("100.00"))
    gateway.delay = 0.05

    first, second = await asyncio.gather(
        orchestrator.capture(CaptureRequest(transaction_id=auth.transaction_id, amount=Decimal("60.00"), idempotency_key="a")),
        orchestrator.capture(CaptureRequest(transaction_id=auth.transaction_id, amount=Decimal("60.00"), idempotency_key="b")),
    )

    results = sorted([first, second], key=lambda r: r.success, reverse=True)
    winner, loser = results
    assert winner.success
    assert not loser.success
    assert loser.error_kind == ErrorKind.CONCURRENCY_CONFLICT
    assert loser.requires_reconciliation
    assert loser.order_status == OrderStatus.CAPTURED

    order = ledger.orders[auth.order_id]
    assert order.captured_amount == Decimal("60.00")
    assert gateway.calls == 3


@pytest.mark.asyncio
async def test_cancellation_waits_for_in_flight_gateway_call(orchestrator, gateway, ledger, new_payment):
    gateway.delay = 0.1
    task = asyncio.create_task(orchestrator.purchase(new_payment(idempotency_key="cancel-me")))
    await gateway.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    (txn,) = ledger.transactions.values()
    assert txn.status == TransactionStatus.SUCCESS
    assert ledger.idempotency["cancel-me"].is_completed
    assert ledger.orders[txn.order_id].status == OrderStatus.CAPTURED


@pytest.mark.asyncio
async def test_pending_rows_never_left_behind(orchestrator, gateway, ledger, new_payment):
    gateway.respond(GatewayResponse(response_code="2"), GatewayTransportError("x", provider="stub"))
    await orchestrator.purchase(new_payment("1.00"))
    await orchestrator.purchase(new_payment("2.00"))
    await orchestrator.purchase(new_payment("3.00"))
    assert all(t.status != TransactionStatus.PENDING for t in ledger.transactions.values())


@pytest.mark.asyncio
async def test_aclose_closes_gateway(orchestrator, gateway):
    await orchestrator.aclose()
    assert gateway.closed


@pytest.mark.asyncio
async def test_refund_sequence_to_exhaustion(orchestrator, gateway, ledger, clock, new_payment):
    purchase = await orchestrator.purchase(new_payment("100.50"))
    clock.advance(hours=24, minutes=1)

    first = await orchestrator.refund(RefundRequest(transaction_id=purchase.transaction_id, amount=Decimal("50.25")))
    assert first.order_status == OrderStatus.PARTIALLY_REFUNDED
    assert ledger.orders[purchase.order_id].refundable_amount == Decimal("50.25")

    second = await orchestrator.refund(RefundRequest(transaction_id=purchase.transaction_id, amount=Decimal("50.25")))
    assert second.order_status == OrderStatus.REFUNDED

    calls = gateway.calls
    with pytest.raises(InvalidStateTransitionException):
        await orchestrator.refund(RefundRequest(transaction_id=purchase.transaction_id, amount=Decimal("0.01")))
    assert gateway.calls == calls


@pytest.mark.asyncio
async def test_refund_without_stored_card_is_configuration_error(orchestrator, gateway, ledger, clock, new_payment):
    from domain.common.exceptions import PaymentConfigurationException

    purchase = await orchestrator.purchase(new_payment("10.00"))
    del ledger.payment_methods[purchase.order_id]
    clock.advance(hours=25)

    with pytest.raises(PaymentConfigurationException):
        await orchestrator.refund(
            RefundRequest(transaction_id=purchase.transaction_id, amount=Decimal("1.00"), idempotency_key="r1")
        )
    assert gateway.calls == 1
    assert "r1" not in ledger.idempotency


@pytest.mark.asyncio
async def test_identical_untokened_refunds_both_execute(orchestrator, gateway, ledger, clock, new_payment):
    purchase = await orchestrator.purchase(new_payment("100.50"))
    clock.advance(hours=25)

    request = RefundRequest(transaction_id=purchase.transaction_id, amount=Decimal("50.25"), reason="dup item")
    first = await orchestrator.refund(request)
    second = await orchestrator.refund(request)

    assert first.transaction_id != second.transaction_id
    assert gateway.calls == 3
    order = ledger.orders[purchase.order_id]
    assert order.status == OrderStatus.REFUNDED
    assert order.refundable_amount == Decimal("0")


@pytest.mark.asyncio
async def test_identical_untokened_purchases_open_separate_orders(orchestrator, gateway, ledger, new_payment):
    first = await orchestrator.purchase(new_payment("10.00"))
    second = await orchestrator.purchase(new_payment("10.00"))

    assert first.order_id != second.order_id
    assert len(ledger.orders) == 2
    assert gateway.calls == 2


@pytest.mark.asyncio
async def test_void_records_referenced_amount(orchestrator, ledger, new_payment):
    auth = await orchestrator.authorize(new_payment("42.10"))
    void = await orchestrator.void(VoidRequest(transaction_id=auth.transaction_id))
    assert void.amount == Decimal("42.10")
    assert ledger.transactions[void.transaction_id].amount == Decimal("42.10")


@pytest.mark.asyncio
async def test_failed_finalize_flags_row_and_completes_key(orchestrator, gateway, ledger, new_payment):
    def approve_then_fail_ledger(req):
        ledger.failing_commits = 1
        return GatewayResponse(reference_id="gw_lost", response_code="1", response_message="approved")

    gateway.respond(approve_then_fail_ledger)

    result = await orchestrator.purchase(new_payment("40.00", idempotency_key="p-lost"))

    assert not result.success
    assert result.requires_reconciliation
    assert result.error_kind == ErrorKind.UNKNOWN
    assert result.gateway_reference == "gw_lost"
    assert result.order_status == OrderStatus.CREATED
    txn = ledger.transactions[result.transaction_id]
    assert txn.status == TransactionStatus.ERROR
    assert txn.gateway_reference == "gw_lost"
    assert ledger.idempotency["p-lost"].is_completed

    replay = await orchestrator.purchase(new_payment("40.00", idempotency_key="p-lost"))
    assert replay == result
    assert gateway.calls == 1


@pytest.mark.asyncio
async def test_finalize_and_fallback_both_failing_propagates(orchestrator, gateway, ledger, new_payment):
    def approve_then_fail_ledger(req):
        ledger.failing_commits = 2
        return GatewayResponse(reference_id="gw_lost", response_code="1", response_message="approved")

    gateway.respond(approve_then_fail_ledger)

    with pytest.raises(RuntimeError):
        await orchestrator.purchase(new_payment("40.00", idempotency_key="p-down"))

    (txn,) = ledger.transactions.values()
    assert txn.status == TransactionStatus.PENDING
    # the gateway was contacted, so the claim is never released
    assert not ledger.idempotency["p-down"].is_completed
