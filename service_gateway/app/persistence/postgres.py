"""
PostgreSQL persistence layer for the gateway.

The ledger serializes ingestions per (module, section) with a transaction-scoped
advisory lock, and a partial unique index guarantees at most one active row per
pair. Quota counters are updated under ``SELECT ... FOR UPDATE``.
"""

import json
from datetime import datetime
from typing import List, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import AccessLayerException, ServiceError
from ..ratelimit.fixed_window import QuotaDecision, Tier
from .base import ApiKeyStore, LedgerStore, evaluate_quota
from .models import ApiKeyRecord, ApiUsageEntry, ContentItem, RefreshLogEntry, RefreshStatus


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgreSQLPersistence:
    """Connection pool and schema management shared by the stores."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("gateway.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None
        self._users = 0

    async def start(self):
        """Start the persistence layer."""
        self._users += 1
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30,
                init=_init_connection
            )

            # Create tables if they don't exist
            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise AccessLayerException("POSTGRES_START_FAILED", str(e), status_code=500)

    async def stop(self):
        """Stop the persistence layer once every store has released it."""
        self._users = max(0, self._users - 1)
        if self.pool and self._users == 0:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS content_items (
                    id VARCHAR(64) PRIMARY KEY,
                    module VARCHAR(100) NOT NULL,
                    section VARCHAR(100) NOT NULL DEFAULT '',
                    data JSONB NOT NULL,
                    source_tag VARCHAR(100) NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    fetched_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    expires_at TIMESTAMP WITH TIME ZONE
                );
            """)
            await conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_content_items_active
                ON content_items(module, section) WHERE is_active;
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_content_items_expiry
                ON content_items(expires_at) WHERE is_active;
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS refresh_logs (
                    id VARCHAR(64) PRIMARY KEY,
                    module VARCHAR(100) NOT NULL,
                    section VARCHAR(100) NOT NULL DEFAULT '',
                    status VARCHAR(20) NOT NULL,
                    timestamped_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    details JSONB NOT NULL DEFAULT '{}'
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_refresh_logs_time ON refresh_logs(timestamped_at DESC);
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    key_id VARCHAR(64) PRIMARY KEY,
                    key_hash CHAR(64) NOT NULL UNIQUE,
                    key_prefix VARCHAR(32) NOT NULL DEFAULT '',
                    name VARCHAR(255) NOT NULL DEFAULT '',
                    tier VARCHAR(20) NOT NULL,
                    monthly_limit INTEGER,
                    per_minute_limit INTEGER,
                    requests_this_minute INTEGER NOT NULL DEFAULT 0,
                    minute_window_started_at DOUBLE PRECISION,
                    requests_this_month INTEGER NOT NULL DEFAULT 0,
                    month_window_started_at DOUBLE PRECISION,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    expires_at TIMESTAMP WITH TIME ZONE,
                    revoked_at TIMESTAMP WITH TIME ZONE,
                    last_used_at TIMESTAMP WITH TIME ZONE
                );
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS api_usage_logs (
                    id VARCHAR(64) PRIMARY KEY,
                    key_id VARCHAR(64) NOT NULL REFERENCES api_keys(key_id) ON DELETE CASCADE,
                    endpoint VARCHAR(255) NOT NULL,
                    method VARCHAR(10) NOT NULL,
                    status_code INTEGER NOT NULL,
                    response_time_ms INTEGER NOT NULL,
                    ip_address VARCHAR(64),
                    user_agent TEXT,
                    requested_at TIMESTAMP WITH TIME ZONE NOT NULL
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_api_usage_logs_key_time
                ON api_usage_logs(key_id, requested_at DESC);
            """)

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False


def _row_to_item(row) -> ContentItem:
    return ContentItem(
        id=row["id"],
        module=row["module"],
        section=row["section"],
        data=row["data"],
        source_tag=row["source_tag"],
        is_active=row["is_active"],
        fetched_at=row["fetched_at"],
        expires_at=row["expires_at"],
    )


def _row_to_log(row) -> RefreshLogEntry:
    return RefreshLogEntry(
        id=row["id"],
        module=row["module"],
        section=row["section"],
        status=RefreshStatus(row["status"]),
        timestamped_at=row["timestamped_at"],
        details=row["details"] or {},
    )


def _row_to_key(row) -> ApiKeyRecord:
    return ApiKeyRecord(
        key_id=row["key_id"],
        key_hash=row["key_hash"],
        key_prefix=row["key_prefix"],
        name=row["name"],
        tier=Tier(row["tier"]),
        monthly_limit=row["monthly_limit"],
        per_minute_limit=row["per_minute_limit"],
        requests_this_minute=row["requests_this_minute"],
        minute_window_started_at=row["minute_window_started_at"],
        requests_this_month=row["requests_this_month"],
        month_window_started_at=row["month_window_started_at"],
        is_active=row["is_active"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        revoked_at=row["revoked_at"],
        last_used_at=row["last_used_at"],
    )


def _row_to_usage(row) -> ApiUsageEntry:
    return ApiUsageEntry(
        id=row["id"],
        key_id=row["key_id"],
        endpoint=row["endpoint"],
        method=row["method"],
        status_code=row["status_code"],
        response_time_ms=row["response_time_ms"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        requested_at=row["requested_at"],
    )


_INSERT_LOG = """
    INSERT INTO refresh_logs (id, module, section, status, timestamped_at, details)
    VALUES ($1, $2, $3, $4, $5, $6)
"""


class PostgreSQLLedgerStore(LedgerStore):
    """Ledger rows in PostgreSQL."""

    def __init__(self, persistence: PostgreSQLPersistence):
        self.persistence = persistence
        self.logger = get_logger("gateway.persistence.ledger")

    async def start(self) -> None:
        await self.persistence.start()

    async def stop(self) -> None:
        await self.persistence.stop()

    async def replace_active(self, item: ContentItem, entry: RefreshLogEntry) -> ContentItem:
        try:
            async with self.persistence.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))",
                        f"{item.module}\x1f{item.section}"
                    )
                    await conn.execute("""
                        UPDATE content_items SET is_active = FALSE
                        WHERE module = $1 AND section = $2 AND is_active
                    """, item.module, item.section)
                    await conn.execute("""
                        INSERT INTO content_items (
                            id, module, section, data, source_tag, is_active, fetched_at, expires_at
                        ) VALUES ($1, $2, $3, $4, $5, TRUE, $6, $7)
                    """, item.id, item.module, item.section, item.data, item.source_tag,
                        item.fetched_at, item.expires_at)
                    await conn.execute(_INSERT_LOG, entry.id, entry.module, entry.section,
                                       entry.status.value, entry.timestamped_at, entry.details)
            return item
        except Exception as e:
            self.logger.error("Error recording ingestion", module=item.module,
                              section=item.section, error=str(e))
            raise ServiceError("Failed to record ingestion", {"module": item.module}) from e

    async def append_log(self, entry: RefreshLogEntry) -> None:
        try:
            async with self.persistence.pool.acquire() as conn:
                await conn.execute(_INSERT_LOG, entry.id, entry.module, entry.section,
                                   entry.status.value, entry.timestamped_at, entry.details)
        except Exception as e:
            self.logger.error("Error appending refresh log", module=entry.module, error=str(e))
            raise ServiceError("Failed to append refresh log", {"module": entry.module}) from e

    async def list_items(self, module: str, section: Optional[str] = None,
                         active_only: bool = True) -> List[ContentItem]:
        async with self.persistence.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM content_items
                WHERE module = $1
                  AND ($2::text IS NULL OR section = $2)
                  AND (NOT $3 OR is_active)
                ORDER BY fetched_at DESC
            """, module, section, active_only)
        return [_row_to_item(row) for row in rows]

    async def list_modules(self) -> List[str]:
        async with self.persistence.pool.acquire() as conn:
            rows = await conn.fetch("SELECT DISTINCT module FROM content_items ORDER BY module")
        return [row["module"] for row in rows]

    async def deactivate_expired(self, now: datetime, module: Optional[str] = None) -> int:
        async with self.persistence.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE content_items SET is_active = FALSE
                WHERE is_active AND expires_at IS NOT NULL AND expires_at <= $1
                  AND ($2::text IS NULL OR module = $2)
            """, now, module)
        return _affected(result)

    async def delete_logs_before(self, cutoff: datetime) -> int:
        async with self.persistence.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM refresh_logs WHERE timestamped_at < $1", cutoff)
        return _affected(result)

    async def recent_logs(self, limit: int = 50, module: Optional[str] = None) -> List[RefreshLogEntry]:
        async with self.persistence.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM refresh_logs
                WHERE ($2::text IS NULL OR module = $2)
                ORDER BY timestamped_at DESC
                LIMIT $1
            """, limit, module)
        return [_row_to_log(row) for row in rows]


class PostgreSQLApiKeyStore(ApiKeyStore):
    """API keys in PostgreSQL."""

    def __init__(self, persistence: PostgreSQLPersistence):
        self.persistence = persistence
        self.logger = get_logger("gateway.persistence.api_keys")

    async def start(self) -> None:
        await self.persistence.start()

    async def stop(self) -> None:
        await self.persistence.stop()

    async def create(self, record: ApiKeyRecord) -> ApiKeyRecord:
        async with self.persistence.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO api_keys (
                    key_id, key_hash, key_prefix, name, tier, monthly_limit, per_minute_limit,
                    is_active, created_at, expires_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, COALESCE($9, NOW()), $10)
                RETURNING *
            """, record.key_id, record.key_hash, record.key_prefix, record.name, record.tier.value,
                record.monthly_limit, record.per_minute_limit, record.is_active,
                record.created_at, record.expires_at)
        self.logger.info("API key created", key_id=record.key_id, tier=record.tier.value)
        return _row_to_key(row)

    async def get_by_hash(self, key_hash: str) -> Optional[ApiKeyRecord]:
        async with self.persistence.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM api_keys WHERE key_hash = $1", key_hash)
        return _row_to_key(row) if row else None

    async def consume(self, key_id: str, now: float) -> QuotaDecision:
        async with self.persistence.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM api_keys WHERE key_id = $1 FOR UPDATE", key_id
                )
                if row is None:
                    raise KeyError(key_id)
                decision, updated = evaluate_quota(_row_to_key(row), now)
                await conn.execute("""
                    UPDATE api_keys SET
                        requests_this_minute = $2,
                        minute_window_started_at = $3,
                        requests_this_month = $4,
                        month_window_started_at = $5
                    WHERE key_id = $1
                """, key_id, updated.requests_this_minute, updated.minute_window_started_at,
                    updated.requests_this_month, updated.month_window_started_at)
        return decision

    async def touch(self, key_id: str, used_at: datetime) -> None:
        async with self.persistence.pool.acquire() as conn:
            await conn.execute("UPDATE api_keys SET last_used_at = $2 WHERE key_id = $1", key_id, used_at)

    async def revoke(self, key_id: str, revoked_at: datetime) -> bool:
        async with self.persistence.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE api_keys SET is_active = FALSE, revoked_at = $2
                WHERE key_id = $1
            """, key_id, revoked_at)
        return _affected(result) > 0

    async def record_usage(self, entry: ApiUsageEntry) -> None:
        async with self.persistence.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO api_usage_logs (
                    id, key_id, endpoint, method, status_code, response_time_ms,
                    ip_address, user_agent, requested_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """, entry.id, entry.key_id, entry.endpoint, entry.method, entry.status_code,
                entry.response_time_ms, entry.ip_address, entry.user_agent, entry.requested_at)

    async def list_usage(self, key_id: str, limit: int = 50) -> List[ApiUsageEntry]:
        async with self.persistence.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM api_usage_logs
                WHERE key_id = $1
                ORDER BY requested_at DESC
                LIMIT $2
            """, key_id, limit)
        return [_row_to_usage(row) for row in rows]


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as 'UPDATE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0
