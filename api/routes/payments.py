"""
Payments API routes.

Thin adapter over PaymentOrchestrator: request headers are folded into the
command DTOs, results are wrapped in the unified envelope. A failed payment
is still a ledger fact, so its result travels in ``data`` next to the error.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette import status as http_status

from api.dependencies import get_orchestrator
from application.dtos.payments import (
    Amount,
    CaptureRequest,
    PaymentRequest,
    PaymentResult,
    RefundRequest,
    VoidRequest,
)
from application.services.payment_service import PaymentOrchestrator
from core.response import Response as ApiResponse, error_response, success_response
from domain.payment.entity import ErrorKind
from shared.codes.payment_codes import PaymentCode


router = APIRouter(prefix="/payments", tags=["Payments"])


class CaptureBody(BaseModel):
    amount: Amount  # type: ignore[valid-type]
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class VoidBody(BaseModel):
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class RefundBody(BaseModel):
    amount: Amount  # type: ignore[valid-type]
    reason: Optional[str] = Field(default=None, max_length=500)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


# 失败结果 -> (HTTP状态码, 业务码)
FAILURE_STATUS: dict[Optional[ErrorKind], tuple[int, int]] = {
    ErrorKind.DECLINED: (http_status.HTTP_402_PAYMENT_REQUIRED, PaymentCode.PAYMENT_DECLINED),
    ErrorKind.HELD_FOR_REVIEW: (http_status.HTTP_202_ACCEPTED, PaymentCode.HELD_FOR_REVIEW),
    ErrorKind.CONCURRENCY_CONFLICT: (http_status.HTTP_409_CONFLICT, PaymentCode.CONCURRENCY_CONFLICT),
    ErrorKind.CONFIGURATION_ERROR: (http_status.HTTP_500_INTERNAL_SERVER_ERROR, PaymentCode.CONFIGURATION_ERROR),
    ErrorKind.GATEWAY_ERROR: (http_status.HTTP_502_BAD_GATEWAY, PaymentCode.GATEWAY_ERROR),
    ErrorKind.TRANSPORT_FAILURE: (http_status.HTTP_502_BAD_GATEWAY, PaymentCode.TRANSPORT_FAILURE),
    ErrorKind.UNKNOWN: (http_status.HTTP_502_BAD_GATEWAY, PaymentCode.GATEWAY_UNKNOWN),
}


def _idempotency_key(header_value: Optional[str], body_value: Optional[str]) -> Optional[str]:
    return header_value or body_value


def _client_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "client_request_id", None) or request.headers.get("X-Request-ID")


def _with_request_headers(request: Request, body: PaymentRequest, header_key: Optional[str]) -> PaymentRequest:
    return body.model_copy(update={
        "idempotency_key": _idempotency_key(header_key, body.idempotency_key),
        "request_id": _client_request_id(request) or body.request_id,
    })


def _result_response(request: Request, result: PaymentResult, created: bool = False):
    if result.success:
        status_code = http_status.HTTP_201_CREATED if created else http_status.HTTP_200_OK
        body = success_response(data=result.model_dump(mode="json"), message=result.message)
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    status_code, code = FAILURE_STATUS.get(
        result.error_kind, (http_status.HTTP_502_BAD_GATEWAY, PaymentCode.GATEWAY_UNKNOWN)
    )
    body = error_response(
        code=code,
        message=result.message,
        error_type="PaymentFailed",
        details={
            "error_kind": result.error_kind.value if result.error_kind else None,
            "response_code": result.response_code,
            "requires_reconciliation": result.requires_reconciliation,
            # configuration failures never moved money
            "retryable": result.error_kind == ErrorKind.CONFIGURATION_ERROR,
        },
        request_id=getattr(request.state, "request_id", None),
        data=result.model_dump(mode="json"),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.post("/purchase", summary="授权并捕获", response_model=ApiResponse[PaymentResult])
async def purchase(
    request: Request,
    body: PaymentRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    req = _with_request_headers(request, body, idempotency_key)
    result = await orchestrator.purchase(req)
    return _result_response(request, result, created=True)


@router.post("/authorize", summary="仅授权", response_model=ApiResponse[PaymentResult])
async def authorize(
    request: Request,
    body: PaymentRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    req = _with_request_headers(request, body, idempotency_key)
    result = await orchestrator.authorize(req)
    return _result_response(request, result, created=True)


@router.post("/{transaction_id}/capture", summary="捕获已授权金额", response_model=ApiResponse[PaymentResult])
async def capture(
    transaction_id: str,
    request: Request,
    body: CaptureBody,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    req = CaptureRequest(
        transaction_id=transaction_id,
        amount=body.amount,
        idempotency_key=_idempotency_key(idempotency_key, body.idempotency_key),
        request_id=_client_request_id(request),
    )
    return _result_response(request, await orchestrator.capture(req))


@router.post("/{transaction_id}/void", summary="撤销未结算交易", response_model=ApiResponse[PaymentResult])
async def void(
    transaction_id: str,
    request: Request,
    body: Optional[VoidBody] = Body(None),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    req = VoidRequest(
        transaction_id=transaction_id,
        idempotency_key=_idempotency_key(idempotency_key, body.idempotency_key if body else None),
        request_id=_client_request_id(request),
    )
    return _result_response(request, await orchestrator.void(req))


@router.post("/{transaction_id}/refund", summary="退款已结算交易", response_model=ApiResponse[PaymentResult])
async def refund(
    transaction_id: str,
    request: Request,
    body: RefundBody,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    req = RefundRequest(
        transaction_id=transaction_id,
        amount=body.amount,
        reason=body.reason,
        idempotency_key=_idempotency_key(idempotency_key, body.idempotency_key),
        request_id=_client_request_id(request),
    )
    return _result_response(request, await orchestrator.refund(req))
