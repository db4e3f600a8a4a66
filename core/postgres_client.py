"""
PostgreSQL Client Wrapper

Centralized asyncpg pool wrapper used by every repository in the engine.
Provides a consistent query API (query / query_row / execute) plus explicit
transactions for per-key single-writer updates.

Usage:
    from core.postgres_client import PostgresClientWrapper

    db = PostgresClientWrapper("campaign_engine")
    await db.connect()

    rows = await db.query("SELECT * FROM segments WHERE segment_id = $1", [segment_id])

    async with db.transaction() as conn:
        await conn.execute("UPDATE ...", ...)
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class ExtendedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def json_dumps(obj) -> str:
    """JSON dumps with Decimal and datetime support"""
    return json.dumps(obj, cls=ExtendedJSONEncoder)


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json_dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


class PostgresClientWrapper:
    """
    PostgreSQL client wrapper over an asyncpg pool.

    Wraps asyncpg and provides:
    - Configuration from InfraConfig / environment
    - Lazy pool creation
    - JSON/JSONB codecs
    - Dict rows
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
        dsn: Optional[str] = None,
    ):
        """
        Initialize PostgreSQL client wrapper.

        Args:
            service_name: Name of the service using this client
            config: Infrastructure config (defaults to environment)
            dsn: Explicit DSN overriding host/port/credentials
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.dsn = dsn or (
            f"postgresql://{self.config.postgres_user}:{self.config.postgres_password}"
            f"@{self.config.postgres_host}:{self.config.postgres_port}/{self.config.postgres_db}"
        )
        self.schema = self.config.postgres_schema
        self._pool: Optional[asyncpg.Pool] = None

        logger.info(
            f"PostgreSQL client initialized for {service_name}: "
            f"{self.config.postgres_host}:{self.config.postgres_port}/{self.config.postgres_db}"
        )

    async def connect(self) -> None:
        """Create the connection pool"""
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            dsn=self.dsn,
            min_size=self.config.postgres_min_pool,
            max_size=self.config.postgres_max_pool,
            init=_init_connection,
            server_settings={"application_name": self.service_name},
        )
        logger.info(f"PostgreSQL pool ready for {self.service_name}")

    async def close(self) -> None:
        """Close the connection pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgreSQL pool not initialized. Call connect() first.")
        return self._pool

    async def health_check(self) -> bool:
        """Check database health"""
        try:
            row = await self.query_row("SELECT 1 AS healthy")
            return row is not None
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        rows = await self.pool.fetch(sql, *(params or []))
        return [dict(row) for row in rows]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        row = await self.pool.fetchrow(sql, *(params or []))
        return dict(row) if row is not None else None

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> str:
        """Execute INSERT/UPDATE/DELETE statement, returning the status tag"""
        return await self.pool.execute(sql, *(params or []))

    async def execute_many(self, sql: str, rows: List[List[Any]]) -> None:
        """Execute a statement for each parameter row"""
        await self.pool.executemany(sql, rows)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection and run the block in one transaction"""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn


def rows_affected(status: str) -> int:
    """Parse the row count from an asyncpg status tag (e.g. 'INSERT 0 1')"""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


__all__ = ["PostgresClientWrapper", "json_dumps", "rows_affected"]
