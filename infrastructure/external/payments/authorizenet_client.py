"""
Authorize.Net adapter over the JSON API (``/xml/v1/request.api``).

The JSON API mirrors the XML schema, so element order inside
``transactionRequest`` matters; payloads are built in schema order. Responses
carry a UTF-8 BOM, hence ``utf-8-sig`` decoding.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx

from application.dtos.payments import GatewayRequest, GatewayResponse, GatewayTransactionStatus
from application.ports.payment_gateway import GatewayConfigurationError, GatewayTransportError
from core.config import GatewaySettings
from domain.payment.entity import TransactionType
from infrastructure.external.payments.base import BasePaymentClient
from shared.codes.payment_codes import GATEWAY_CONFIGURATION_CODES


ENDPOINTS = {
    "sandbox": "https://apitest.authorize.net/xml/v1/request.api",
    "production": "https://api.authorize.net/xml/v1/request.api",
}

TRANSACTION_TYPES = {
    TransactionType.PURCHASE: "authCaptureTransaction",
    TransactionType.AUTHORIZE: "authOnlyTransaction",
    TransactionType.CAPTURE: "priorAuthCaptureTransaction",
    TransactionType.VOID: "voidTransaction",
    TransactionType.REFUND: "refundTransaction",
}

# Authorize.Net caps these fields at 20 characters
_MAX_REF = 20


def _money(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01")))


def _parse_utc(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class AuthorizeNetClient(BasePaymentClient):
    provider = "authorizenet"

    def __init__(self, config: GatewaySettings, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(
            timeouts={
                "connect": config.connect_timeout_seconds,
                "read": config.timeout_seconds,
                "write": config.timeout_seconds,
                "total": config.timeout_seconds,
            },
            retry={"max": config.query_retry_max, "base": config.query_retry_backoff},
            transport=transport,
        )
        self._login_id = config.login_id
        self._transaction_key = config.transaction_key.get_secret_value() if config.transaction_key else None
        environment = (config.environment or "sandbox").lower()
        self.endpoint = config.endpoint or ENDPOINTS.get(environment, ENDPOINTS["sandbox"])

    def _merchant_authentication(self) -> dict:
        if not self._login_id or not self._transaction_key:
            raise GatewayConfigurationError(
                "Gateway credentials are not configured (GATEWAY__LOGIN_ID / GATEWAY__TRANSACTION_KEY)",
                provider=self.provider,
            )
        return {"name": self._login_id, "transactionKey": self._transaction_key}

    def _transaction_request(self, req: GatewayRequest) -> dict:
        body: dict[str, Any] = {"transactionType": TRANSACTION_TYPES[req.operation]}
        if req.operation != TransactionType.VOID:
            body["amount"] = _money(req.amount)
        if req.operation in (TransactionType.PURCHASE, TransactionType.AUTHORIZE):
            body["currencyCode"] = req.currency

        if req.card is not None:
            body["payment"] = {
                "creditCard": {
                    "cardNumber": req.card.card_number.get_secret_value(),
                    "expirationDate": f"{req.card.expiration_year:04d}-{req.card.expiration_month:02d}",
                    "cardCode": req.card.cvv.get_secret_value(),
                }
            }
        elif req.payment_method is not None:
            # Refunds identify the card by its last four digits only
            method = req.payment_method
            body["payment"] = {
                "creditCard": {
                    "cardNumber": method.last_four.rjust(16, "X"),
                    "expirationDate": f"{method.expiration_year:04d}-{method.expiration_month:02d}",
                }
            }

        if req.reference_id:
            body["refTransId"] = req.reference_id

        if req.operation in (TransactionType.PURCHASE, TransactionType.AUTHORIZE):
            order: dict[str, Any] = {"invoiceNumber": req.order.order_number[-_MAX_REF:]}
            if req.order.description:
                order["description"] = req.order.description[:255]
            body["order"] = order
            body["customer"] = {"id": req.order.customer_id[:_MAX_REF]}
        return body

    def _decode(self, resp: httpx.Response) -> dict:
        if resp.status_code >= 500:
            raise GatewayTransportError(
                f"Gateway returned HTTP {resp.status_code}", provider=self.provider, cause=str(resp.status_code)
            )
        try:
            return json.loads(resp.content.decode("utf-8-sig"))
        except (UnicodeDecodeError, ValueError):
            raise GatewayTransportError("Gateway returned an unreadable response", provider=self.provider)

    def _raise_for_configuration(self, data: dict) -> None:
        messages = data.get("messages") or {}
        if messages.get("resultCode") != "Error":
            return
        for message in messages.get("message") or []:
            if message.get("code") in GATEWAY_CONFIGURATION_CODES:
                raise GatewayConfigurationError(
                    message.get("text") or "Gateway rejected the merchant credentials",
                    provider=self.provider,
                    code=message.get("code"),
                )

    async def submit(self, req: GatewayRequest) -> GatewayResponse:  # type: ignore[override]
        payload = {
            "createTransactionRequest": {
                "merchantAuthentication": self._merchant_authentication(),
                "refId": req.transaction_reference[-_MAX_REF:],
                "transactionRequest": self._transaction_request(req),
            }
        }
        self._log(
            "authorizenet_submit",
            operation=req.operation.value,
            transaction_reference=req.transaction_reference,
            ref_trans_id=req.reference_id,
        )
        data = self._decode(await self._post_json(self.endpoint, payload))
        self._raise_for_configuration(data)

        tr = data.get("transactionResponse")
        if not tr:
            # API-level error without a transaction outcome
            messages = (data.get("messages") or {}).get("message") or [{}]
            return GatewayResponse(
                response_code="3",
                response_message=messages[0].get("text") or "Gateway returned no transaction response",
            )

        trans_id = tr.get("transId")
        message = None
        if tr.get("messages"):
            message = tr["messages"][0].get("description")
        elif tr.get("errors"):
            message = tr["errors"][0].get("errorText")
        response = GatewayResponse(
            reference_id=trans_id if trans_id and trans_id != "0" else None,
            response_code=str(tr.get("responseCode")) if tr.get("responseCode") is not None else None,
            response_message=message,
        )
        self._log(
            "authorizenet_response",
            transaction_reference=req.transaction_reference,
            response_code=response.response_code,
            gateway_reference=response.reference_id,
        )
        return response

    async def query_transaction(self, reference_id: str) -> GatewayTransactionStatus:  # type: ignore[override]
        payload = {
            "getTransactionDetailsRequest": {
                "merchantAuthentication": self._merchant_authentication(),
                "transId": reference_id,
            }
        }

        async def _call() -> dict:
            return self._decode(await self._post_json(self.endpoint, payload))

        data = await self._retry(_call)
        self._raise_for_configuration(data)

        txn = data.get("transaction") or {}
        raw_status = txn.get("transactionStatus")
        settled_at = None
        batch = txn.get("batch") or {}
        if batch.get("settlementTimeUTC"):
            settled_at = _parse_utc(batch["settlementTimeUTC"])
        return GatewayTransactionStatus(
            reference_id=reference_id,
            status=self._map_status(raw_status) if raw_status else "unknown",
            raw_status=raw_status,
            settled_at=settled_at,
        )
