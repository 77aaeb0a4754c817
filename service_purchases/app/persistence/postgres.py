"""
PostgreSQL persistence layer for the Purchases service.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import asyncpg

from shared.logging import get_logger
from shared.errors import ServiceError
from ..models import (
    Asset, ChangedBy, Entitlement, EntitlementStatus, IdempotencyRecord, IdempotencyStatus,
    OperationKind, PurchaseStats, StatusChange
)
from .base import (
    ACTIVE_ENTITLEMENT_CONSTRAINT, IDEMPOTENCY_KEY_CONSTRAINT, TRANSACTION_ID_CONSTRAINT,
    AssetCatalog, DuplicateRecordError, EntitlementStore, IdempotencyStore, StoreTransaction
)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS assets (
        asset_id VARCHAR(255) PRIMARY KEY,
        title TEXT NOT NULL DEFAULT '',
        price NUMERIC(12, 2) NOT NULL CHECK (price >= 0),
        currency VARCHAR(3) NOT NULL DEFAULT 'THB',
        active BOOLEAN NOT NULL DEFAULT TRUE,
        ready BOOLEAN NOT NULL DEFAULT TRUE,
        access_duration_seconds INTEGER,
        duration_seconds INTEGER,
        purchase_count INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS actors (
        actor_id VARCHAR(255) PRIMARY KEY,
        total_spent NUMERIC(14, 2) NOT NULL DEFAULT 0,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS actor_assets (
        actor_id VARCHAR(255) NOT NULL,
        asset_id VARCHAR(255) NOT NULL,
        added_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        PRIMARY KEY (actor_id, asset_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entitlements (
        entitlement_id VARCHAR(64) PRIMARY KEY,
        actor_id VARCHAR(255) NOT NULL,
        asset_id VARCHAR(255) NOT NULL,
        amount NUMERIC(12, 2) NOT NULL CHECK (amount >= 0),
        currency VARCHAR(3) NOT NULL,
        payment_method VARCHAR(32) NOT NULL,
        transaction_id VARCHAR(255),
        payment_reference VARCHAR(255),
        bulk_id VARCHAR(128),
        status VARCHAR(16) NOT NULL CHECK (status IN
            ('pending', 'processing', 'completed', 'failed', 'refunded', 'cancelled')),
        purchase_date TIMESTAMP WITH TIME ZONE NOT NULL,
        expires_at TIMESTAMP WITH TIME ZONE,
        access_count INTEGER NOT NULL DEFAULT 0 CHECK (access_count >= 0),
        last_accessed_at TIMESTAMP WITH TIME ZONE,
        last_playback_position DOUBLE PRECISION NOT NULL DEFAULT 0,
        watch_duration DOUBLE PRECISION NOT NULL DEFAULT 0,
        completion_rate INTEGER NOT NULL DEFAULT 0 CHECK (completion_rate BETWEEN 0 AND 100),
        refunded_at TIMESTAMP WITH TIME ZONE,
        refund_reason TEXT,
        cancelled_at TIMESTAMP WITH TIME ZONE,
        status_history JSONB NOT NULL DEFAULT '[]',
        metadata JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        CONSTRAINT entitlements_expiry_after_purchase
            CHECK (expires_at IS NULL OR expires_at > purchase_date)
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {ACTIVE_ENTITLEMENT_CONSTRAINT}
        ON entitlements (actor_id, asset_id)
        WHERE status IN ('completed', 'processing')
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {TRANSACTION_ID_CONSTRAINT}
        ON entitlements (transaction_id)
        WHERE transaction_id IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_entitlements_actor ON entitlements (actor_id, status, purchase_date DESC)",
    "CREATE INDEX IF NOT EXISTS idx_entitlements_asset ON entitlements (asset_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_entitlements_bulk ON entitlements (bulk_id, status)",
    f"""
    CREATE TABLE IF NOT EXISTS idempotency_records (
        key VARCHAR(64) NOT NULL,
        actor_id VARCHAR(255) NOT NULL,
        operation VARCHAR(32) NOT NULL,
        status VARCHAR(16) NOT NULL CHECK (status IN ('processing', 'completed', 'failed')),
        result JSONB,
        error TEXT,
        metadata JSONB NOT NULL DEFAULT '{{}}',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL,
        completed_at TIMESTAMP WITH TIME ZONE,
        failed_at TIMESTAMP WITH TIME ZONE,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        expires_at TIMESTAMP WITH TIME ZONE NOT NULL,
        CONSTRAINT {IDEMPOTENCY_KEY_CONSTRAINT} PRIMARY KEY (key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_idempotency_expires ON idempotency_records (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS payment_compensations (
        compensation_id BIGSERIAL PRIMARY KEY,
        capture_key VARCHAR(512) NOT NULL,
        external_id VARCHAR(255) NOT NULL,
        amount NUMERIC(14, 2) NOT NULL,
        reason TEXT NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_compensations_capture_key ON payment_compensations (capture_key)",
]


def _duplicate_from(error: asyncpg.exceptions.UniqueViolationError) -> DuplicateRecordError:
    return DuplicateRecordError(error.constraint_name or "unknown", str(error))


def _row_to_entitlement(row) -> Entitlement:
    """Convert database row to Entitlement object."""
    return Entitlement(
        entitlement_id=row["entitlement_id"],
        actor_id=row["actor_id"],
        asset_id=row["asset_id"],
        amount=row["amount"],
        currency=row["currency"],
        payment_method=row["payment_method"],
        status=EntitlementStatus(row["status"]),
        purchase_date=row["purchase_date"],
        expires_at=row["expires_at"],
        transaction_id=row["transaction_id"],
        payment_reference=row["payment_reference"],
        bulk_id=row["bulk_id"],
        access_count=row["access_count"],
        last_accessed_at=row["last_accessed_at"],
        last_playback_position=row["last_playback_position"],
        watch_duration=row["watch_duration"],
        completion_rate=row["completion_rate"],
        refunded_at=row["refunded_at"],
        refund_reason=row["refund_reason"],
        cancelled_at=row["cancelled_at"],
        status_history=[StatusChange.from_dict(item) for item in row["status_history"]],
        metadata=dict(row["metadata"]),
    )


def _row_to_asset(row) -> Asset:
    return Asset(
        asset_id=row["asset_id"],
        title=row["title"],
        price=row["price"],
        currency=row["currency"],
        active=row["active"],
        ready=row["ready"],
        access_duration_seconds=row["access_duration_seconds"],
        duration_seconds=row["duration_seconds"],
        purchase_count=row["purchase_count"],
    )


def _row_to_idempotency(row) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=row["key"],
        actor_id=row["actor_id"],
        operation=OperationKind(row["operation"]),
        status=IdempotencyStatus(row["status"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        result=row["result"],
        error=row["error"],
        metadata=dict(row["metadata"]),
        completed_at=row["completed_at"],
        failed_at=row["failed_at"],
    )


class PostgreSQLTransaction(StoreTransaction):
    """Writes bound to one connection inside an open transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def retire_expired(self, actor_id: str, asset_ids: Sequence[str], now: datetime) -> int:
        history = [StatusChange(EntitlementStatus.CANCELLED, now, "access expired").to_dict()]
        result = await self.conn.execute("""
            UPDATE entitlements
            SET status = 'cancelled',
                cancelled_at = $3,
                updated_at = $3,
                status_history = status_history || $4::jsonb
            WHERE actor_id = $1
              AND asset_id = ANY($2::varchar[])
              AND status = 'completed'
              AND expires_at IS NOT NULL
              AND expires_at <= $3
        """, actor_id, list(asset_ids), now, history)
        return int(result.split()[-1])

    async def insert_entitlements(self, entitlements: Sequence[Entitlement]) -> None:
        records = [
            (
                e.entitlement_id, e.actor_id, e.asset_id, e.amount, e.currency, e.payment_method,
                e.transaction_id, e.payment_reference, e.bulk_id, e.status.value, e.purchase_date,
                e.expires_at, [change.to_dict() for change in e.status_history], e.metadata,
            )
            for e in entitlements
        ]
        try:
            await self.conn.executemany("""
                INSERT INTO entitlements (
                    entitlement_id, actor_id, asset_id, amount, currency, payment_method,
                    transaction_id, payment_reference, bulk_id, status, purchase_date,
                    expires_at, status_history, metadata
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            """, records)
        except asyncpg.exceptions.UniqueViolationError as e:
            raise _duplicate_from(e) from e

    async def add_owned_assets(self, actor_id: str, asset_ids: Sequence[str], amount: Decimal, now: datetime) -> None:
        await self.conn.execute("""
            INSERT INTO actors (actor_id, total_spent, created_at, updated_at)
            VALUES ($1, $2, $3, $3)
            ON CONFLICT (actor_id) DO UPDATE SET
                total_spent = actors.total_spent + EXCLUDED.total_spent,
                updated_at = EXCLUDED.updated_at
        """, actor_id, amount, now)
        await self.conn.execute("""
            INSERT INTO actor_assets (actor_id, asset_id, added_at)
            SELECT $1, unnest($2::varchar[]), $3
            ON CONFLICT (actor_id, asset_id) DO NOTHING
        """, actor_id, list(asset_ids), now)

    async def remove_owned_asset(self, actor_id: str, asset_id: str, amount: Decimal, now: datetime) -> None:
        await self.conn.execute("""
            UPDATE actors
            SET total_spent = GREATEST(total_spent - $2, 0), updated_at = $3
            WHERE actor_id = $1
        """, actor_id, amount, now)
        await self.conn.execute(
            "DELETE FROM actor_assets WHERE actor_id = $1 AND asset_id = $2",
            actor_id, asset_id
        )

    async def increment_purchase_counts(self, asset_ids: Sequence[str]) -> None:
        await self.conn.execute("""
            UPDATE assets SET purchase_count = purchase_count + 1, updated_at = NOW()
            WHERE asset_id = ANY($1::varchar[])
        """, list(asset_ids))

    async def mark_refunded(
        self,
        entitlement_id: str,
        reason: str,
        refund_id: Optional[str],
        now: datetime,
    ) -> Optional[Entitlement]:
        history = [StatusChange(EntitlementStatus.REFUNDED, now, reason, ChangedBy.USER).to_dict()]
        row = await self.conn.fetchrow("""
            UPDATE entitlements
            SET status = 'refunded',
                refunded_at = $3,
                refund_reason = $2,
                updated_at = $3,
                status_history = status_history || $4::jsonb,
                metadata = metadata || $5::jsonb
            WHERE entitlement_id = $1 AND status = 'completed'
            RETURNING *
        """, entitlement_id, reason, now, history, {"refund_id": refund_id})
        return _row_to_entitlement(row) if row else None


class PostgreSQLStore(EntitlementStore, IdempotencyStore, AssetCatalog):
    """PostgreSQL-backed entitlement, idempotency and catalog store."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("purchases.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the connection pool and ensure the schema exists."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
                init=self._init_connection
            )
            await self._create_tables()
            self.logger.info("PostgreSQL persistence started")

        except (OSError, asyncpg.PostgresError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise ServiceError("Failed to start PostgreSQL persistence", {"error": str(e)}) from e

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    @staticmethod
    async def _init_connection(conn: asyncpg.Connection):
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgreSQLTransaction]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield PostgreSQLTransaction(conn)

    # -- catalog ---------------------------------------------------------

    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM assets WHERE asset_id = $1", asset_id)
        return _row_to_asset(row) if row else None

    async def get_assets(self, asset_ids: Sequence[str]) -> Dict[str, Asset]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM assets WHERE asset_id = ANY($1::varchar[])", list(asset_ids)
            )
        return {row["asset_id"]: _row_to_asset(row) for row in rows}

    # -- entitlements ----------------------------------------------------

    async def get_entitlement(self, entitlement_id: str) -> Optional[Entitlement]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM entitlements WHERE entitlement_id = $1", entitlement_id
            )
        return _row_to_entitlement(row) if row else None

    async def find_active_entitlement(self, actor_id: str, asset_id: str, now: datetime) -> Optional[Entitlement]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM entitlements
                WHERE actor_id = $1 AND asset_id = $2 AND status = 'completed'
                  AND (expires_at IS NULL OR expires_at > $3)
            """, actor_id, asset_id, now)
        return _row_to_entitlement(row) if row else None

    async def find_active_entitlements(
        self, actor_id: str, asset_ids: Sequence[str], now: datetime
    ) -> List[Entitlement]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM entitlements
                WHERE actor_id = $1 AND asset_id = ANY($2::varchar[]) AND status = 'completed'
                  AND (expires_at IS NULL OR expires_at > $3)
            """, actor_id, list(asset_ids), now)
        return [_row_to_entitlement(row) for row in rows]

    async def find_by_transaction(self, transaction_id: str) -> Optional[Entitlement]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM entitlements WHERE transaction_id = $1", transaction_id
            )
        return _row_to_entitlement(row) if row else None

    async def record_usage(
        self, entitlement_id: str, position: float, watched_delta: float, now: datetime
    ) -> Optional[Entitlement]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                UPDATE entitlements e
                SET access_count = e.access_count + 1,
                    watch_duration = e.watch_duration + $3,
                    last_playback_position = GREATEST(e.last_playback_position, $2),
                    last_accessed_at = $4,
                    updated_at = $4,
                    completion_rate = GREATEST(e.completion_rate, COALESCE((
                        SELECT LEAST(100, ROUND((e.watch_duration + $3) * 100.0 / a.duration_seconds))::int
                        FROM assets a
                        WHERE a.asset_id = e.asset_id AND a.duration_seconds > 0
                    ), e.completion_rate))
                WHERE e.entitlement_id = $1
                  AND e.status = 'completed'
                  AND (e.expires_at IS NULL OR e.expires_at > $4)
                RETURNING e.*
            """, entitlement_id, float(position), float(watched_delta), now)
        return _row_to_entitlement(row) if row else None

    async def list_entitlements(
        self,
        actor_id: str,
        status: Optional[EntitlementStatus] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Entitlement], int]:
        conditions = ["actor_id = $1"]
        params: List[Any] = [actor_id]
        if status is not None:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")
        if from_date is not None:
            params.append(from_date)
            conditions.append(f"purchase_date >= ${len(params)}")
        if to_date is not None:
            params.append(to_date)
            conditions.append(f"purchase_date <= ${len(params)}")
        where = " AND ".join(conditions)

        async with self.pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM entitlements WHERE {where}", *params)
            rows = await conn.fetch(
                f"""
                SELECT * FROM entitlements WHERE {where}
                ORDER BY purchase_date DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params, limit, offset
            )
        return [_row_to_entitlement(row) for row in rows], total or 0

    async def get_purchase_stats(self, actor_id: str) -> PurchaseStats:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT
                    COALESCE(SUM(amount) FILTER (WHERE status = 'completed'), 0) AS total_spent,
                    COUNT(*) AS total_purchases,
                    COUNT(*) FILTER (WHERE status = 'completed') AS completed_purchases,
                    COUNT(*) FILTER (WHERE status = 'refunded') AS refunded_purchases,
                    COALESCE(AVG(amount), 0) AS average_purchase
                FROM entitlements
                WHERE actor_id = $1
            """, actor_id)
        return PurchaseStats(
            total_spent=Decimal(row["total_spent"]),
            total_purchases=row["total_purchases"],
            completed_purchases=row["completed_purchases"],
            refunded_purchases=row["refunded_purchases"],
            average_purchase=Decimal(row["average_purchase"]).quantize(Decimal("0.01")),
        )

    async def record_compensation(
        self, capture_key: str, external_id: str, amount: Decimal, reason: str, now: datetime
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO payment_compensations (capture_key, external_id, amount, reason, created_at)
                VALUES ($1, $2, $3, $4, $5)
            """, capture_key, external_id, amount, reason, now)

    async def count_compensations(self, capture_key: str) -> int:
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM payment_compensations WHERE capture_key = $1", capture_key
            )
        return count or 0

    # -- idempotency -----------------------------------------------------

    async def insert_idempotency_record(self, record: IdempotencyRecord) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO idempotency_records (
                        key, actor_id, operation, status, metadata, created_at, updated_at, expires_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $6, $7)
                """, record.key, record.actor_id, record.operation.value, record.status.value,
                    record.metadata, record.created_at, record.expires_at)
        except asyncpg.exceptions.UniqueViolationError as e:
            raise _duplicate_from(e) from e

    async def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM idempotency_records WHERE key = $1", key)
        return _row_to_idempotency(row) if row else None

    async def reopen_idempotency_record(self, key: str, now: datetime, expires_at: datetime) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE idempotency_records
                SET status = 'processing', result = NULL, error = NULL,
                    completed_at = NULL, failed_at = NULL,
                    created_at = $2, updated_at = $2, expires_at = $3
                WHERE key = $1 AND (status = 'failed' OR expires_at <= $2)
            """, key, now, expires_at)
        return result == "UPDATE 1"

    async def finish_idempotency_record(
        self,
        key: str,
        status: IdempotencyStatus,
        result: Optional[Dict[str, Any]],
        error: Optional[str],
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        async with self.pool.acquire() as conn:
            outcome = await conn.execute("""
                UPDATE idempotency_records
                SET status = $2,
                    result = $3,
                    error = $4,
                    completed_at = CASE WHEN $2 = 'completed' THEN $5 ELSE NULL END,
                    failed_at = CASE WHEN $2 = 'failed' THEN $5 ELSE NULL END,
                    updated_at = $5,
                    expires_at = $6
                WHERE key = $1 AND status = 'processing'
            """, key, status.value, result, error, now, expires_at)
        return outcome == "UPDATE 1"

    async def purge_expired_idempotency_records(self, now: datetime) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM idempotency_records WHERE expires_at <= $1 AND status <> 'processing'", now
            )
        return int(result.split()[-1])

    async def fail_stale_idempotency_records(self, cutoff: datetime, now: datetime) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE idempotency_records
                SET status = 'failed', error = 'stale processing record', failed_at = $2, updated_at = $2
                WHERE status = 'processing' AND created_at < $1
            """, cutoff, now)
        return int(result.split()[-1])

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (OSError, asyncpg.PostgresError):
            return False
