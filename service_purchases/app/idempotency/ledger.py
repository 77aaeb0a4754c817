"""
Durable idempotency ledger.

Each logical operation gets a deterministic key. The first attempt inserts a
``processing`` record; later attempts with the same key either replay the
stored result, are rejected while the first attempt is still running, or
take over a failed/expired record.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..errors import IdempotencyInProgressError
from ..models import (
    IdempotencyRecord, IdempotencyStatus, OperationKind, decode_result, utcnow
)
from ..persistence.base import DuplicateRecordError, IdempotencyStore


@dataclass
class LedgerEntry:
    """Outcome of :meth:`IdempotencyLedger.begin`."""
    key: str
    is_new: bool
    existing_result: Optional[BaseModel] = None


def canonical_payload(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


class IdempotencyLedger:
    """Tracks operation attempts in an :class:`IdempotencyStore`."""

    def __init__(
        self,
        store: IdempotencyStore,
        retention_days: int = 7,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.retention = timedelta(days=retention_days)
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("purchases.idempotency.ledger")

    @staticmethod
    def generate_key(actor_id: str, transaction_id: str, payload: Any) -> str:
        """sha256 of actor, external transaction id and canonical payload."""
        material = f"{actor_id}:{transaction_id}:{canonical_payload(payload)}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    async def begin(
        self,
        key: str,
        actor_id: str,
        operation: OperationKind,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Claim ``key`` for a new attempt or return the prior result.

        Raises :class:`IdempotencyInProgressError` if another attempt owns it.
        """
        now = self.clock()
        record = IdempotencyRecord(
            key=key,
            actor_id=actor_id,
            operation=operation,
            status=IdempotencyStatus.PROCESSING,
            created_at=now,
            expires_at=now + self.retention,
            metadata=metadata or {},
        )
        try:
            await self.store.insert_idempotency_record(record)
            return LedgerEntry(key=key, is_new=True)
        except DuplicateRecordError:
            pass

        existing = await self.store.get_idempotency_record(key)
        if existing is None:
            # Purged between the insert and the read; the caller may retry
            raise IdempotencyInProgressError(details={"key": key, "retry_after": 1})

        expired = existing.expires_at <= now
        if existing.status == IdempotencyStatus.COMPLETED and not expired:
            self.logger.info("Idempotent replay", key=key, operation=operation.value)
            if self.metrics:
                self.metrics.increment_counter("idempotency_replays_total", operation=operation.value)
            return LedgerEntry(
                key=key,
                is_new=False,
                existing_result=decode_result(existing.operation, existing.result or {}),
            )

        if existing.status == IdempotencyStatus.PROCESSING and not expired:
            raise IdempotencyInProgressError(details={"key": key, "retry_after": 1})

        if await self.store.reopen_idempotency_record(key, now, now + self.retention):
            self.logger.info(
                "Reopened idempotency record",
                key=key,
                previous_status=existing.status.value,
                expired=expired
            )
            return LedgerEntry(key=key, is_new=True)

        # Another attempt reopened it first
        raise IdempotencyInProgressError(details={"key": key, "retry_after": 1})

    async def finish(
        self,
        key: str,
        status: IdempotencyStatus,
        result: Optional[BaseModel] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Move a processing record to ``completed`` or ``failed``."""
        if status == IdempotencyStatus.PROCESSING:
            raise ValueError("finish requires a terminal status")

        now = self.clock()
        payload = result.model_dump(mode="json") if result is not None else None
        finished = await self.store.finish_idempotency_record(
            key, status, payload, error, now, now + self.retention
        )
        if not finished:
            self.logger.warning("Idempotency record was not processing", key=key, status=status.value)
        return finished

    async def complete(self, key: str, result: BaseModel) -> bool:
        return await self.finish(key, IdempotencyStatus.COMPLETED, result=result)

    async def fail(self, key: str, error: str) -> bool:
        return await self.finish(key, IdempotencyStatus.FAILED, error=error)

    async def purge_expired(self) -> int:
        """Delete finished records past their retention."""
        purged = await self.store.purge_expired_idempotency_records(self.clock())
        if purged:
            self.logger.info("Purged expired idempotency records", count=purged)
        return purged

    async def fail_stale(self, max_age_seconds: int) -> int:
        """Fail processing records older than ``max_age_seconds`` so they can be retried."""
        now = self.clock()
        failed = await self.store.fail_stale_idempotency_records(
            now - timedelta(seconds=max_age_seconds), now
        )
        if failed:
            self.logger.warning("Failed stale idempotency records", count=failed)
        return failed
