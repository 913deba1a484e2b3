"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from application.ports.payment_gateway import PaymentGateway
from core.config import GatewaySettings, settings


def get_payment_gateway(config: Optional[GatewaySettings] = None) -> PaymentGateway:
    config = config or settings.gateway
    name = (config.provider or "authorizenet").lower()
    if name in {"authorizenet", "authorize.net", "anet"}:
        from .authorizenet_client import AuthorizeNetClient
        return AuthorizeNetClient(config)
    raise ValueError(f"Unsupported payment provider: {name}")
