"""
Payment specific codes and gateway response mapping tables.

The tables are plain data so new gateway codes can be added without touching
the orchestrator or the mapper function.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # State machine / ledger (6xxxx)
    INVALID_STATE_TRANSITION = 60000
    NOT_SETTLED = 60001
    CONCURRENCY_CONFLICT = 60002
    ORDER_NOT_FOUND = 60003
    TRANSACTION_NOT_FOUND = 60004

    # Idempotency (61xxx)
    IDEMPOTENCY_KEY_REUSE = 61000
    IDEMPOTENCY_IN_PROGRESS = 61001
    IDEMPOTENCY_RELEASED = 61002

    # Gateway / configuration (62xxx)
    CONFIGURATION_ERROR = 62000
    GATEWAY_ERROR = 62001
    TRANSPORT_FAILURE = 62002
    PAYMENT_DECLINED = 62003
    HELD_FOR_REVIEW = 62004
    GATEWAY_UNKNOWN = 62005


# Gateway responseCode -> domain error kind. None means approved.
# Authorize.Net: 1 approved, 2 declined, 3 error, 4 held for review.
GATEWAY_RESPONSE_CODES: dict[str, str | None] = {
    "1": None,
    "2": "declined",
    "3": "gateway_error",
    "4": "held_for_review",
}


# Gateway transactionStatus (getTransactionDetails) -> reconciliation verdict.
GATEWAY_TRANSACTION_STATUS: dict[str, str] = {
    "authorizedPendingCapture": "approved",
    "capturedPendingSettlement": "approved",
    "settledSuccessfully": "settled",
    "refundPendingSettlement": "approved",
    "refundSettledSuccessfully": "settled",
    "voided": "voided",
    "declined": "declined",
    "expired": "declined",
    "failedReview": "declined",
    "generalError": "error",
    "communicationError": "error",
    "settlementError": "error",
    "FDSPendingReview": "held",
    "FDSAuthorizedPendingReview": "held",
    "underReview": "held",
    "approvedReview": "approved",
}


# API-level message codes meaning the merchant credentials/setup are wrong;
# nothing was processed, so these are not ambiguous.
GATEWAY_CONFIGURATION_CODES = frozenset({
    "E00007",  # invalid authentication values
    "E00008",  # account or API user inactive
    "E00011",  # access denied for this API
})
