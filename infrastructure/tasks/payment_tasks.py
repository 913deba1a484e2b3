"""
Celery tasks for payment maintenance: reconciliation, settlement refresh, key purge.

Each task builds its own gateway/unit-of-work wiring and runs the async
service with ``asyncio.run`` so workers never share an event loop.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

from celery import shared_task

from application.services.idempotency import IdempotencyKeyManager
from application.services.reconciliation_service import ReconciliationService
from core.config import settings
from core.logging_config import get_logger
from infrastructure.external.payments import get_payment_gateway
from infrastructure.tasks.utils.base_task import BaseTask
from infrastructure.unit_of_work import sqlalchemy_uow_factory


logger = get_logger(__name__)


async def _with_reconciliation(action: str, limit: int):
    gateway = get_payment_gateway(settings.gateway)
    service = ReconciliationService(
        gateway,
        sqlalchemy_uow_factory(),
        pending_grace=timedelta(seconds=settings.reconciliation.pending_grace_seconds),
    )
    try:
        return await getattr(service, action)(limit=limit)
    finally:
        await gateway.aclose()


@shared_task(name="payments.reconcile", bind=True, base=BaseTask, max_retries=3, default_retry_delay=30)
def task_reconcile(self, limit: int | None = None):
    limit = limit or settings.reconciliation.batch_size
    try:
        report = asyncio.run(_with_reconciliation("reconcile", limit))
    except Exception as exc:  # pragma: no cover
        logger.error("payment_reconcile_failed", error=str(exc))
        raise self.retry(exc=exc)
    return {"checked": report.checked, "resolved": report.resolved, "unresolved": report.unresolved}


@shared_task(name="payments.refresh_settlement", bind=True, base=BaseTask, max_retries=3, default_retry_delay=60)
def task_refresh_settlement(self, limit: int | None = None):
    limit = limit or settings.reconciliation.batch_size
    try:
        report = asyncio.run(_with_reconciliation("refresh_settlement", limit))
    except Exception as exc:  # pragma: no cover
        logger.error("payment_settlement_refresh_failed", error=str(exc))
        raise self.retry(exc=exc)
    logger.info("payment_settlement_refreshed", checked=report.checked, settled=report.settled)
    return {"checked": report.checked, "settled": report.settled}


@shared_task(name="payments.purge_idempotency", base=BaseTask)
def task_purge_idempotency():
    manager = IdempotencyKeyManager(
        sqlalchemy_uow_factory(),
        retention=timedelta(hours=settings.idempotency.retention_hours),
    )
    purged = asyncio.run(manager.purge_expired())
    return {"purged": purged}
