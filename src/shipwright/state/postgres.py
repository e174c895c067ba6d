"""PostgreSQL task store.

Implements the TaskStore protocol with asyncpg for deployments that keep
state in an existing Postgres server. Upserts are single
INSERT ... ON CONFLICT DO UPDATE statements, so they are atomic without
an explicit transaction; the schema is created on connect.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional

import asyncpg

from src.shipwright.state.models import TaskPhase, TaskRecord, utcnow
from src.shipwright.state.store import StoreError, validate_fields


logger = logging.getLogger(__name__)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS shipwright_tasks (
    issue_key TEXT PRIMARY KEY,
    phase TEXT NOT NULL DEFAULT 'new',
    summary TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    plan TEXT,
    branch_name TEXT,
    workspace_path TEXT,
    pr_number INTEGER,
    pr_url TEXT,
    reviewer_notes TEXT,
    conversation_token TEXT,
    accrued_cost DOUBLE PRECISION NOT NULL DEFAULT 0,
    plan_posted_at TIMESTAMPTZ,
    last_feedback_check_at TIMESTAMPTZ,
    creator_account_id TEXT,
    last_error TEXT,
    ci_fix_attempts INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_shipwright_tasks_phase ON shipwright_tasks(phase);
"""


class PostgresTaskStore:
    """PostgreSQL implementation of the TaskStore protocol.

    Attributes:
        connection_string: PostgreSQL connection URL.
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresTaskStore("postgresql://...") as store:
        ...     record = await store.get("PROJ-1")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StoreError("Database pool not initialized. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool and apply the schema.

        Raises:
            StoreError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            async with self._pool.acquire() as conn:
                await conn.execute(_SCHEMA)
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", extra={"error": str(e)})
            raise StoreError(
                f"Failed to connect to PostgreSQL: {e}", original_error=e
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresTaskStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _connection(self, description: str) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection, wrapping driver errors in StoreError."""
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except StoreError:
            raise
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(
                f"Task store {description} failed", extra={"error": str(e)}
            )
            raise StoreError(
                f"Task store {description} failed: {e}", original_error=e
            ) from e

    async def get(self, issue_key: str) -> Optional[TaskRecord]:
        async with self._connection("get") as conn:
            row = await conn.fetchrow(
                "SELECT * FROM shipwright_tasks WHERE issue_key = $1", issue_key
            )
        return _from_row(row) if row is not None else None

    async def upsert(self, issue_key: str, **fields: Any) -> TaskRecord:
        validate_fields(fields)
        now = utcnow()
        columns = list(fields)
        values = [
            fields[name].value if isinstance(fields[name], TaskPhase) else fields[name]
            for name in columns
        ]
        insert_columns = ["issue_key", *columns, "created_at", "updated_at"]
        placeholders = ", ".join(f"${i}" for i in range(1, len(insert_columns) + 1))
        updates = ", ".join(
            [f"{name} = EXCLUDED.{name}" for name in columns]
            + ["updated_at = EXCLUDED.updated_at"]
        )
        sql = (
            f"INSERT INTO shipwright_tasks ({', '.join(insert_columns)}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT (issue_key) DO UPDATE SET {updates} "
            f"RETURNING *"
        )
        async with self._connection("upsert") as conn:
            row = await conn.fetchrow(sql, issue_key, *values, now, now)
        return _from_row(row)

    async def list_by_phase(self, phase: TaskPhase) -> List[TaskRecord]:
        async with self._connection("list_by_phase") as conn:
            rows = await conn.fetch(
                "SELECT * FROM shipwright_tasks WHERE phase = $1 ORDER BY created_at",
                TaskPhase(phase).value,
            )
        return [_from_row(row) for row in rows]

    async def list_all(self) -> List[TaskRecord]:
        async with self._connection("list_all") as conn:
            rows = await conn.fetch("SELECT * FROM shipwright_tasks ORDER BY created_at")
        return [_from_row(row) for row in rows]

    async def delete(self, issue_key: str) -> bool:
        async with self._connection("delete") as conn:
            result = await conn.execute(
                "DELETE FROM shipwright_tasks WHERE issue_key = $1", issue_key
            )
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return result.split()[-1] != "0"

    async def health_check(self) -> bool:
        try:
            async with self._connection("health_check") as conn:
                return await conn.fetchval("SELECT 1") == 1
        except StoreError:
            return False


def _from_row(row: asyncpg.Record) -> TaskRecord:
    return TaskRecord.model_validate(dict(row))
