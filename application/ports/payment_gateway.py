"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
Adapters report transport and credential problems through the two exception
types below; every other outcome comes back as a GatewayResponse and is
classified by domain.payment.error_mapper.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import GatewayRequest, GatewayResponse, GatewayTransactionStatus


class GatewayTransportError(Exception):
    """The request may or may not have reached the gateway (network error, 5xx, bad payload)."""

    def __init__(self, message: str, *, provider: str, cause: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.cause = cause


class GatewayConfigurationError(Exception):
    """Credentials or merchant setup rejected; nothing was processed."""

    def __init__(self, message: str, *, provider: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.code = code


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the card processor.

    Implementations should be async and side-effect free beyond IO.
    ``submit`` must not retry on its own: a repeated money-moving request is
    the orchestrator's decision, never the adapter's.
    """

    provider: str

    async def submit(self, req: GatewayRequest) -> GatewayResponse: ...

    async def query_transaction(self, reference_id: str) -> GatewayTransactionStatus: ...
