"""
Idempotency key manager.

Deduplicates money-moving requests: the first caller for a key claims it and
proceeds, concurrent callers wait for that claim to be committed (and replay
its result) or released (and may retry). Claims are a conditional insert on
the idempotency table, so exactly one caller wins even across processes.
"""
from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Union

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_exponential

from application.dtos.payments import PaymentRequest, PaymentResult
from core.logging_config import get_logger
from domain.common.exceptions import (
    IdempotencyKeyReleasedException,
    IdempotencyKeyReuseException,
    IdempotencyRequestInProgressException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import IdempotencyRecord, IdempotencyStatus


logger = get_logger(__name__)

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Proceed:
    """This caller owns the key and must eventually commit or release it."""

    key: str


@dataclass(frozen=True)
class Replay:
    key: str
    result: PaymentResult


BeginOutcome = Union[Proceed, Replay]


class _StillInProgress(Exception):
    pass


def _amount_text(amount: Optional[Decimal]) -> str:
    if amount is None:
        return ""
    return str(Decimal(amount).quantize(CENT))


def derive_key(operation: str, request: Any) -> str:
    """Caller token when supplied, else a stable hash keyed on the client's request id.

    No wall-clock input: the same logical request always derives the same key.
    Without a token or request id there is nothing identifying a retry, so a
    fresh key is minted and the request is not deduplicated.
    """
    token = getattr(request, "idempotency_key", None)
    if token:
        return token
    request_id = getattr(request, "request_id", None)
    if not request_id:
        return f"{operation}:{uuid.uuid4().hex}"
    if isinstance(request, PaymentRequest):
        identifier = f"{request.customer_id}|{request.currency}"
    else:
        identifier = request.transaction_id
    base = "|".join([operation, identifier, _amount_text(getattr(request, "amount", None)), request_id])
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def request_fingerprint(operation: str, request: Any) -> str:
    """Hash of the full non-sensitive payload; detects a key reused for a different request."""
    payload = request.model_dump(mode="json", exclude={"idempotency_key", "request_id", "credit_card"})
    if "amount" in payload:
        payload["amount"] = _amount_text(request.amount)
    card = getattr(request, "credit_card", None)
    if card is not None:
        payload["card"] = {
            "last_four": card.last_four,
            "expiration_month": card.expiration_month,
            "expiration_year": card.expiration_year,
            "name_on_card": card.name_on_card,
        }
    payload["operation"] = operation
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class IdempotencyKeyManager:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        retention: timedelta = timedelta(hours=24),
        wait_timeout: float = 10.0,
        poll_interval: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self.retention = retention
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self._clock = clock

    async def begin(self, key: str, operation: str, request_hash: str) -> BeginOutcome:
        now = self._clock()
        record = IdempotencyRecord(
            key=key,
            operation=operation,
            request_hash=request_hash,
            status=IdempotencyStatus.IN_PROGRESS,
            created_at=now,
            expires_at=now + self.retention,
        )
        async with self._uow_factory() as uow:
            # Expired completed records are treated as absent
            await uow.idempotency.delete_expired(now, key=key)
            claimed = await uow.idempotency.create_if_absent(record)
        if claimed:
            logger.debug("idempotency_claimed", idempotency_key=key, operation=operation)
            return Proceed(key)
        return await self._await_existing(key, request_hash)

    async def _await_existing(self, key: str, request_hash: str) -> BeginOutcome:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(self.wait_timeout),
                wait=wait_exponential(multiplier=self.poll_interval, min=self.poll_interval, max=1.0),
                retry=retry_if_exception_type(_StillInProgress),
                reraise=True,
            ):
                with attempt:
                    return await self._inspect(key, request_hash)
        except _StillInProgress:
            logger.info("idempotency_wait_timeout", idempotency_key=key, wait_timeout=self.wait_timeout)
            raise IdempotencyRequestInProgressException(key)
        raise IdempotencyRequestInProgressException(key)  # pragma: no cover

    async def _inspect(self, key: str, request_hash: str) -> BeginOutcome:
        async with self._uow_factory(readonly=True) as uow:
            record = await uow.idempotency.get(key)
        if record is None or record.is_expired(self._clock()):
            raise IdempotencyKeyReleasedException(key)
        if record.request_hash != request_hash:
            raise IdempotencyKeyReuseException(key)
        if not record.is_completed:
            raise _StillInProgress(key)
        result = PaymentResult.model_validate_json(record.response_body or "{}")
        logger.info("idempotency_replay", idempotency_key=key, transaction_id=result.transaction_id)
        return Replay(key, result)

    async def commit(self, key: str, result: PaymentResult, transaction_id: Optional[str] = None) -> None:
        now = self._clock()
        async with self._uow_factory() as uow:
            record = await uow.idempotency.get(key)
            if record is None:
                logger.warning("idempotency_record_missing", idempotency_key=key, transaction_id=transaction_id)
                return
            record.status = IdempotencyStatus.COMPLETED
            record.transaction_id = transaction_id
            record.response_body = result.model_dump_json()
            record.completed_at = now
            record.expires_at = now + self.retention
            await uow.idempotency.complete(record)

    async def release(self, key: str) -> None:
        async with self._uow_factory() as uow:
            released = await uow.idempotency.delete_in_progress(key)
        logger.info("idempotency_released", idempotency_key=key, released=released)

    async def purge_expired(self) -> int:
        async with self._uow_factory() as uow:
            purged = await uow.idempotency.delete_expired(self._clock())
        if purged:
            logger.info("idempotency_purged", count=purged)
        return purged
