import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
from pydantic import SecretStr

from application.dtos.payments import GatewayRequest, OrderContext, PaymentMethodSnapshot
from application.ports.payment_gateway import GatewayConfigurationError, GatewayTransportError
from core.config import GatewaySettings
from domain.payment.entity import TransactionType
from infrastructure.external.payments import get_payment_gateway
from infrastructure.external.payments.authorizenet_client import ENDPOINTS, AuthorizeNetClient


def _settings(**kw):
    data = dict(login_id="login", transaction_key=SecretStr("key"), query_retry_max=2, query_retry_backoff=0.01)
    data.update(kw)
    return GatewaySettings(**data)


class Recorder:
    """MockTransport handler replaying canned bodies and keeping the requests it saw."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome
        # Authorize.Net prefixes its JSON with a byte order mark
        return httpx.Response(200, content=b"\xef\xbb\xbf" + json.dumps(outcome).encode())

    def payload(self, index=-1):
        return json.loads(self.requests[index].content)


def _client(recorder, **kw):
    return AuthorizeNetClient(_settings(**kw), transport=httpx.MockTransport(recorder))


def _order():
    return OrderContext(order_id="o1", order_number="ORD_20250115120000_ABC123", customer_id="cust_1", description="Widget")


def _approved(trans_id="60001"):
    return {
        "transactionResponse": {
            "responseCode": "1",
            "transId": trans_id,
            "messages": [{"code": "1", "description": "This transaction has been approved."}],
        },
        "messages": {"resultCode": "Ok", "message": [{"code": "I00001", "text": "Successful."}]},
    }


@pytest.mark.asyncio
async def test_purchase_payload_in_schema_order(new_card):
    recorder = Recorder(_approved())
    client = _client(recorder)
    req = GatewayRequest(
        operation=TransactionType.PURCHASE,
        amount=Decimal("100.5"),
        currency="USD",
        order=_order(),
        transaction_reference="TXN_20250115120000_" + "a" * 32,
        card=new_card(),
    )

    response = await client.submit(req)

    assert response.reference_id == "60001"
    assert response.response_code == "1"
    assert response.response_message == "This transaction has been approved."

    body = recorder.payload()["createTransactionRequest"]
    assert list(body) == ["merchantAuthentication", "refId", "transactionRequest"]
    assert body["merchantAuthentication"] == {"name": "login", "transactionKey": "key"}
    assert body["refId"] == "a" * 20
    tr = body["transactionRequest"]
    assert list(tr) == ["transactionType", "amount", "currencyCode", "payment", "order", "customer"]
    assert tr["transactionType"] == "authCaptureTransaction"
    assert tr["amount"] == "100.50"
    assert tr["payment"]["creditCard"] == {
        "cardNumber": "4111111111111111",
        "expirationDate": "2030-12",
        "cardCode": "123",
    }
    assert tr["order"]["invoiceNumber"] == "20250115120000_ABC123"[-20:]
    assert tr["customer"] == {"id": "cust_1"}
    assert str(recorder.requests[0].url) == ENDPOINTS["sandbox"]
    await client.aclose()


@pytest.mark.asyncio
async def test_refund_uses_masked_card_and_reference():
    recorder = Recorder(_approved("60002"))
    client = _client(recorder, environment="production")
    req = GatewayRequest(
        operation=TransactionType.REFUND,
        amount=Decimal("20"),
        currency="USD",
        order=_order(),
        transaction_reference="TXN_1",
        reference_id="60001",
        payment_method=PaymentMethodSnapshot(last_four="1111", expiration_month=3, expiration_year=2031),
    )

    await client.submit(req)

    tr = recorder.payload()["createTransactionRequest"]["transactionRequest"]
    assert list(tr) == ["transactionType", "amount", "payment", "refTransId"]
    assert tr["transactionType"] == "refundTransaction"
    assert tr["payment"]["creditCard"] == {"cardNumber": "XXXXXXXXXXXX1111", "expirationDate": "2031-03"}
    assert tr["refTransId"] == "60001"
    assert str(recorder.requests[0].url) == ENDPOINTS["production"]


@pytest.mark.asyncio
async def test_void_omits_amount():
    recorder = Recorder(_approved("60003"))
    client = _client(recorder)
    req = GatewayRequest(
        operation=TransactionType.VOID,
        amount=Decimal("20"),
        currency="USD",
        order=_order(),
        transaction_reference="TXN_1",
        reference_id="60001",
    )
    await client.submit(req)
    tr = recorder.payload()["createTransactionRequest"]["transactionRequest"]
    assert tr == {"transactionType": "voidTransaction", "refTransId": "60001"}


def _capture_request():
    return GatewayRequest(
        operation=TransactionType.CAPTURE,
        amount=Decimal("10"),
        currency="USD",
        order=_order(),
        transaction_reference="TXN_1",
        reference_id="60001",
    )


@pytest.mark.asyncio
async def test_declined_response_carries_error_text():
    recorder = Recorder(
        {
            "transactionResponse": {
                "responseCode": "2",
                "transId": "0",
                "errors": [{"errorCode": "2", "errorText": "This transaction has been declined."}],
            },
            "messages": {"resultCode": "Error", "message": [{"code": "E00027", "text": "The transaction was unsuccessful."}]},
        }
    )
    response = await _client(recorder).submit(_capture_request())
    assert response.response_code == "2"
    assert response.reference_id is None
    assert response.response_message == "This transaction has been declined."


@pytest.mark.asyncio
async def test_missing_transaction_response_reads_as_error():
    recorder = Recorder({"messages": {"resultCode": "Error", "message": [{"code": "E00003", "text": "Invalid XML."}]}})
    response = await _client(recorder).submit(_capture_request())
    assert response.response_code == "3"
    assert response.response_message == "Invalid XML."


@pytest.mark.asyncio
async def test_authentication_failure_is_configuration_error():
    recorder = Recorder(
        {"messages": {"resultCode": "Error", "message": [{"code": "E00007", "text": "User authentication failed."}]}}
    )
    with pytest.raises(GatewayConfigurationError) as exc:
        await _client(recorder).submit(_capture_request())
    assert exc.value.code == "E00007"


@pytest.mark.asyncio
async def test_missing_credentials_never_hit_the_wire():
    recorder = Recorder()
    client = AuthorizeNetClient(GatewaySettings(), transport=httpx.MockTransport(recorder))
    with pytest.raises(GatewayConfigurationError):
        await client.submit(_capture_request())
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_server_error_and_garbage_are_transport_errors():
    recorder = Recorder(httpx.Response(503, content=b"busy"), httpx.Response(200, content=b"<html>"))
    client = _client(recorder)
    with pytest.raises(GatewayTransportError):
        await client.submit(_capture_request())
    with pytest.raises(GatewayTransportError):
        await client.submit(_capture_request())


@pytest.mark.asyncio
async def test_submit_is_not_retried():
    recorder = Recorder(httpx.ConnectError("refused"))
    with pytest.raises(GatewayTransportError):
        await _client(recorder).submit(_capture_request())
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_query_retries_then_maps_settlement():
    details = {
        "transaction": {
            "transId": "60001",
            "transactionStatus": "settledSuccessfully",
            "batch": {"batchId": "1", "settlementTimeUTC": "2025-01-16T02:10:00Z"},
        },
        "messages": {"resultCode": "Ok", "message": [{"code": "I00001", "text": "Successful."}]},
    }
    recorder = Recorder(httpx.ReadTimeout("slow"), details)

    status = await _client(recorder).query_transaction("60001")

    assert len(recorder.requests) == 2
    assert status.status == "settled"
    assert status.raw_status == "settledSuccessfully"
    assert status.settled_at == datetime(2025, 1, 16, 2, 10, tzinfo=timezone.utc)
    assert recorder.payload()["getTransactionDetailsRequest"]["transId"] == "60001"


@pytest.mark.asyncio
async def test_query_gives_up_after_retry_budget():
    recorder = Recorder(*(httpx.ConnectError("refused") for _ in range(3)))
    with pytest.raises(GatewayTransportError):
        await _client(recorder).query_transaction("60001")
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_unknown_raw_status_maps_to_unknown():
    recorder = Recorder({"transaction": {"transactionStatus": "somethingNew"}, "messages": {"resultCode": "Ok"}})
    status = await _client(recorder).query_transaction("60001")
    assert status.status == "unknown"


def test_factory_selects_authorizenet():
    assert isinstance(get_payment_gateway(_settings(provider="authorize.net")), AuthorizeNetClient)
    with pytest.raises(ValueError):
        get_payment_gateway(_settings(provider="stripe"))


def test_endpoint_override():
    client = AuthorizeNetClient(_settings(endpoint="http://localhost:9999/api"))
    assert client.endpoint == "http://localhost:9999/api"
