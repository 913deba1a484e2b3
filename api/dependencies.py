"""
API依赖项 - 支付编排与查询服务

网关客户端与编排器在应用生命周期内单例化（见 main.lifespan），
路由通过这些依赖获取，测试可用 app.dependency_overrides 替换。
"""
from fastapi import Request

from application.ports.payment_gateway import PaymentGateway
from application.services.order_service import OrderQueryService
from application.services.payment_service import OrchestratorConfig, PaymentOrchestrator
from domain.payment.state_machine import SettlementPolicy
from core.config import Settings, settings
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import sqlalchemy_uow_factory


def build_orchestrator(gateway: PaymentGateway, config: Settings = settings) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        gateway=gateway,
        uow_factory=sqlalchemy_uow_factory(),
        config=OrchestratorConfig.from_settings(config),
    )


def build_payment_components(config: Settings = settings) -> PaymentOrchestrator:
    """Create the gateway client and the orchestrator that owns it."""
    return build_orchestrator(get_payment_gateway(config.gateway), config)


async def get_orchestrator(request: Request) -> PaymentOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = build_payment_components()
        request.app.state.orchestrator = orchestrator
    return orchestrator


async def get_order_service() -> OrderQueryService:
    return OrderQueryService(
        uow_factory=sqlalchemy_uow_factory(),
        settlement=SettlementPolicy(cutoff=OrchestratorConfig.from_settings(settings).settlement_cutoff),
    )
