"""
PostgreSQL durable sink.

The target table is owned by the schema migrations of the API service and
is assumed to exist (snake_case columns, one per IMUDataRecord field):

  CREATE TABLE imu_data (
    id UUID PRIMARY KEY,
    session_id TEXT,
    user_id TEXT,
    timestamp BIGINT NOT NULL,
    timestamp_nanos BIGINT,
    accel_x REAL, ...,
    latitude DOUBLE PRECISION, longitude DOUBLE PRECISION, altitude DOUBLE PRECISION,
    is_synced BOOLEAN NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
  );
"""

import asyncio
import logging
from typing import Optional, Sequence

import asyncpg

from ..domain.dto import RECORD_COLUMNS, IMUDataRecord
from ..domain.ports import DurableSink, PersistenceError


logger = logging.getLogger(__name__)

TABLE_DEFAULT = "imu_data"


class PostgresDurableSink(DurableSink):
    """
    Bulk writer backed by an asyncpg pool.

    Each batch is written with a single COPY inside a transaction, so a
    failed write leaves no partial rows behind.
    """

    def __init__(
        self,
        dsn: str,
        table: str = TABLE_DEFAULT,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
        command_timeout: float = 60.0,
        pool: Optional[asyncpg.Pool] = None
    ):
        """
        Initialize durable sink.

        Args:
            dsn: PostgreSQL connection string
            table: Target table name
            min_pool_size: Minimum pooled connections
            max_pool_size: Maximum pooled connections
            command_timeout: Timeout for a single bulk write in seconds
            pool: Pre-built pool (tests, shared pools)
        """
        self.dsn = dsn
        self.table = table
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self._pool = pool

    async def connect(self) -> None:
        """
        Create the connection pool.

        Raises:
            PersistenceError: If the database is unreachable
        """
        if self._pool is not None:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout
            )
            logger.info(
                "Connected to PostgreSQL",
                extra={
                    "component": "durable_sink",
                    "table": self.table,
                    "max_pool_size": self.max_pool_size
                }
            )
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise PersistenceError(f"PostgreSQL connection failed: {e}") from e

    async def bulk_insert(self, records: Sequence[IMUDataRecord]) -> int:
        if not records:
            return 0

        if self._pool is None:
            raise PersistenceError("Durable sink not connected")

        rows = [
            tuple(getattr(record, column) for column in RECORD_COLUMNS)
            for record in records
        ]

        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.copy_records_to_table(
                        self.table,
                        records=rows,
                        columns=list(RECORD_COLUMNS),
                        timeout=self.command_timeout
                    )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            logger.error(
                f"Bulk insert failed: {e}",
                extra={
                    "component": "durable_sink",
                    "table": self.table,
                    "records": len(rows),
                    "error_type": type(e).__name__
                }
            )
            raise PersistenceError(f"Bulk insert of {len(rows)} records failed: {e}") from e

        return len(rows)

    async def health_check(self) -> bool:
        if self._pool is None:
            return False
        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return False

    async def close(self) -> None:
        try:
            if self._pool is not None:
                await self._pool.close()
                self._pool = None
                logger.info("PostgreSQL pool closed")
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Error closing PostgreSQL pool: {e}")


def create_durable_sink(
    dsn: str,
    table: str = TABLE_DEFAULT,
    min_pool_size: int = 1,
    max_pool_size: int = 10,
    command_timeout: float = 60.0
) -> PostgresDurableSink:
    return PostgresDurableSink(
        dsn=dsn,
        table=table,
        min_pool_size=min_pool_size,
        max_pool_size=max_pool_size,
        command_timeout=command_timeout
    )
