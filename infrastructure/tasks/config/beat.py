"""Celery beat schedule for periodic payment maintenance.

Intervals come from ``settings.reconciliation`` so operators can tune them
through ``RECONCILIATION__*`` environment variables.
"""
from __future__ import annotations

from core.config import settings

CELERY_BEAT_SCHEDULE = {
    "payments-reconcile": {
        "task": "payments.reconcile",
        "schedule": settings.reconciliation.interval_seconds,
    },
    "payments-refresh-settlement": {
        "task": "payments.refresh_settlement",
        "schedule": settings.reconciliation.settlement_refresh_interval_seconds,
    },
    "payments-purge-idempotency": {
        "task": "payments.purge_idempotency",
        "schedule": settings.reconciliation.idempotency_purge_interval_seconds,
    },
}
