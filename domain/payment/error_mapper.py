"""
Gateway response code -> domain outcome mapping.

Pure function over the data table in shared.codes.payment_codes; extend the
table (or pass a custom one) rather than adding branches here.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from domain.payment.entity import ErrorKind, TransactionStatus
from shared.codes.payment_codes import GATEWAY_RESPONSE_CODES


# Terminal transaction status per error kind, and whether the outcome is
# ambiguous (the gateway may have moved money) and needs reconciliation.
KIND_TO_STATUS: dict[ErrorKind, tuple[TransactionStatus, bool]] = {
    ErrorKind.DECLINED: (TransactionStatus.DECLINED, False),
    ErrorKind.HELD_FOR_REVIEW: (TransactionStatus.HELD, True),
    ErrorKind.GATEWAY_ERROR: (TransactionStatus.ERROR, True),
    ErrorKind.TRANSPORT_FAILURE: (TransactionStatus.ERROR, True),
    ErrorKind.UNKNOWN: (TransactionStatus.ERROR, True),
    ErrorKind.CONFIGURATION_ERROR: (TransactionStatus.ERROR, False),
    ErrorKind.CANCELLED: (TransactionStatus.ERROR, False),
    ErrorKind.CONCURRENCY_CONFLICT: (TransactionStatus.ERROR, True),
}


@dataclass(frozen=True)
class GatewayOutcome:
    kind: Optional[ErrorKind]
    status: TransactionStatus
    requires_reconciliation: bool
    response_code: Optional[str]
    message: str

    @property
    def approved(self) -> bool:
        return self.kind is None


def outcome_for_kind(kind: ErrorKind, *, response_code: Optional[str] = None, message: str = "") -> GatewayOutcome:
    status, ambiguous = KIND_TO_STATUS[kind]
    return GatewayOutcome(
        kind=kind,
        status=status,
        requires_reconciliation=ambiguous,
        response_code=response_code,
        message=message,
    )


def map_gateway_response(
    code: Optional[str],
    message: Optional[str],
    table: Mapping[str, Optional[str]] = GATEWAY_RESPONSE_CODES,
) -> GatewayOutcome:
    """Translate a gateway response code into a domain outcome.

    Unmapped codes become ErrorKind.UNKNOWN with the raw message preserved.
    """
    raw_message = message or ""
    key = (code or "").strip()
    if key in table:
        kind_value = table[key]
        if kind_value is None:
            return GatewayOutcome(
                kind=None,
                status=TransactionStatus.SUCCESS,
                requires_reconciliation=False,
                response_code=key,
                message=raw_message,
            )
        return outcome_for_kind(ErrorKind(kind_value), response_code=key, message=raw_message)
    return outcome_for_kind(
        ErrorKind.UNKNOWN,
        response_code=code,
        message=raw_message or f"Unmapped gateway response code: {code}",
    )
