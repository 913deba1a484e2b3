"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete gateways subclass and implement the wire format. Retry is only
offered for read-only calls; money-moving submissions go out exactly once.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.payments import GatewayRequest, GatewayResponse, GatewayTransactionStatus
from application.ports.payment_gateway import GatewayTransportError, PaymentGateway
from core.logging_config import get_logger
from shared.codes.payment_codes import GATEWAY_TRANSACTION_STATUS


logger = get_logger(__name__)


class BasePaymentClient(PaymentGateway):
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 5.0, "read": 30.0, "write": 30.0, "total": 30.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.5}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            self._timeouts_cfg["total"],
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        # Keep open for reuse; explicit aclose() will close.
        yield self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Awaitable[Any]]):
        """Retry transient transport failures; only for idempotent reads."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(GatewayTransportError),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _post_json(self, url: str, payload: dict) -> httpx.Response:
        async with self.client() as http:
            try:
                return await http.post(url, json=payload, headers={"Content-Type": "application/json"})
            except httpx.TimeoutException as exc:
                raise GatewayTransportError("Gateway request timed out", provider=self.provider, cause=type(exc).__name__)
            except httpx.TransportError as exc:
                raise GatewayTransportError("Gateway unreachable", provider=self.provider, cause=type(exc).__name__)

    # Default implementations raise to force override where needed
    async def submit(self, req: GatewayRequest) -> GatewayResponse:  # type: ignore[override]
        raise NotImplementedError

    async def query_transaction(self, reference_id: str) -> GatewayTransactionStatus:  # type: ignore[override]
        raise NotImplementedError

    # Helpers
    def _map_status(self, gateway_status: str) -> str:
        return GATEWAY_TRANSACTION_STATUS.get(gateway_status, "unknown")

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
