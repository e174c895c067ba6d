"""Durable task store.

This module defines the TaskStore protocol the state machine depends on
and its default SQLite implementation. Each tracked issue is one row in the
tasks table, keyed by issue key.

- upsert() inserts or merges: only supplied fields change, updated_at is
  always refreshed
- every operation runs under one asyncio lock on one aiosqlite
  connection, so a concurrent get() never observes a partially written
  upsert()
- I/O failures are wrapped in StoreError and propagate to the caller

The SQLite file is opened in WAL mode and survives process restarts; no
database server is needed. PostgresTaskStore (state/postgres.py) offers the
same protocol for deployments that already run Postgres.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

import aiosqlite

from src.shipwright.state.models import MUTABLE_FIELDS, TaskPhase, TaskRecord, utcnow


logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreError(Exception):
    """Raised when a store operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


@runtime_checkable
class TaskStore(Protocol):
    """Protocol for task persistence."""

    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def get(self, issue_key: str) -> Optional[TaskRecord]:
        """Return the record for an issue, or None if it is not tracked."""
        ...

    async def upsert(self, issue_key: str, **fields: Any) -> TaskRecord:
        """Insert or merge the supplied fields and return the stored record."""
        ...

    async def list_by_phase(self, phase: TaskPhase) -> List[TaskRecord]:
        ...

    async def list_all(self) -> List[TaskRecord]:
        ...

    async def delete(self, issue_key: str) -> bool:
        """Delete a record. Returns True if a row was removed."""
        ...

    async def health_check(self) -> bool:
        ...


def validate_fields(fields: Dict[str, Any]) -> None:
    """Reject fields that are not writable TaskRecord columns."""
    unknown = sorted(set(fields) - set(MUTABLE_FIELDS))
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(unknown)}")


# Columns added after the first release are listed here so existing
# databases pick them up on connect.
_COLUMN_DEFINITIONS = {
    "phase": "TEXT NOT NULL DEFAULT 'new'",
    "summary": "TEXT NOT NULL DEFAULT ''",
    "description": "TEXT NOT NULL DEFAULT ''",
    "plan": "TEXT",
    "branch_name": "TEXT",
    "workspace_path": "TEXT",
    "pr_number": "INTEGER",
    "pr_url": "TEXT",
    "reviewer_notes": "TEXT",
    "conversation_token": "TEXT",
    "accrued_cost": "REAL NOT NULL DEFAULT 0",
    "plan_posted_at": "TEXT",
    "last_feedback_check_at": "TEXT",
    "creator_account_id": "TEXT",
    "last_error": "TEXT",
    "ci_fix_attempts": "INTEGER NOT NULL DEFAULT 0",
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    issue_key TEXT PRIMARY KEY,
    {columns},
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_phase ON tasks(phase);
""".format(
    columns=",\n    ".join(
        f"{name} {definition}" for name, definition in _COLUMN_DEFINITIONS.items()
    )
)


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class SQLiteTaskStore:
    """SQLite implementation of the TaskStore protocol, on aiosqlite.

    One connection is opened per store and every operation holds an
    asyncio lock for its whole transaction.

    Example:
        >>> store = SQLiteTaskStore("/var/lib/shipwright/state.db")
        >>> await store.connect()
        >>> try:
        ...     record = await store.get("PROJ-1")
        ... finally:
        ...     await store.disconnect()

    Or using the async context manager:
        >>> async with SQLiteTaskStore("state.db") as store:
        ...     await store.upsert("PROJ-1", phase=TaskPhase.PLAN_POSTED)
    """

    def __init__(self, path: str, busy_timeout_ms: int = 10000):
        self.path = path
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_url(cls, url: str) -> "SQLiteTaskStore":
        """Build a store from a sqlite:///path URL."""
        return cls(url[len("sqlite:///"):])

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Task store not connected. Call connect() first.")
        return self._conn

    async def connect(self) -> None:
        """Open the database and apply the schema.

        Raises:
            StoreError: If the database cannot be opened.
        """
        if self._conn is not None:
            logger.warning("Task store already connected")
            return
        conn: Optional[aiosqlite.Connection] = None
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self.path)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            await conn.executescript(_SCHEMA)
            cursor = await conn.execute("PRAGMA table_info(tasks)")
            existing = {row[1] for row in await cursor.fetchall()}
            for column, definition in _COLUMN_DEFINITIONS.items():
                if column not in existing:
                    await conn.execute(f"ALTER TABLE tasks ADD COLUMN {column} {definition}")
            await conn.commit()
        except (aiosqlite.Error, OSError) as e:
            if conn is not None:
                await conn.close()
            logger.error(
                "Failed to open task store",
                extra={"path": self.path, "error": str(e)},
            )
            raise StoreError(f"Failed to open task store: {e}", original_error=e) from e
        self._conn = conn
        logger.info("Task store opened", extra={"path": self.path})

    async def disconnect(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            async with self._lock:
                await self._conn.close()
                self._conn = None
            logger.info("Task store closed", extra={"path": self.path})

    async def __aenter__(self) -> "SQLiteTaskStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    async def _run(
        self,
        description: str,
        op: Callable[[aiosqlite.Connection], Awaitable[T]],
        write: bool = False,
    ) -> T:
        """Run op under the lock; writes commit on success and roll back on error."""
        async with self._lock:
            conn = self.conn
            try:
                result = await op(conn)
                if write:
                    await conn.commit()
                return result
            except aiosqlite.Error as e:
                if write:
                    await conn.rollback()
                logger.error(
                    f"Task store {description} failed",
                    extra={"path": self.path, "error": str(e)},
                )
                raise StoreError(
                    f"Task store {description} failed: {e}", original_error=e
                ) from e
            except StoreError:
                if write:
                    await conn.rollback()
                raise

    async def get(self, issue_key: str) -> Optional[TaskRecord]:
        return await self._run("get", lambda conn: _fetch(conn, issue_key))

    async def upsert(self, issue_key: str, **fields: Any) -> TaskRecord:
        validate_fields(fields)
        now = utcnow().isoformat()
        columns = list(fields)
        values = [_to_db(fields[name]) for name in columns]
        placeholders = ", ".join("?" for _ in range(len(columns) + 3))
        updates = ", ".join(
            [f"{name} = excluded.{name}" for name in columns]
            + ["updated_at = excluded.updated_at"]
        )
        sql = (
            f"INSERT INTO tasks (issue_key, {''.join(c + ', ' for c in columns)}"
            f"created_at, updated_at) VALUES ({placeholders}) "
            f"ON CONFLICT(issue_key) DO UPDATE SET {updates}"
        )

        async def op(conn: aiosqlite.Connection) -> TaskRecord:
            await conn.execute(sql, [issue_key, *values, now, now])
            record = await _fetch(conn, issue_key)
            if record is None:
                raise StoreError(f"Upserted task {issue_key} could not be read back")
            return record

        return await self._run("upsert", op, write=True)

    async def list_by_phase(self, phase: TaskPhase) -> List[TaskRecord]:
        async def op(conn: aiosqlite.Connection) -> List[TaskRecord]:
            cursor = await conn.execute(
                "SELECT * FROM tasks WHERE phase = ? ORDER BY created_at",
                (TaskPhase(phase).value,),
            )
            return [_from_row(row) for row in await cursor.fetchall()]

        return await self._run("list_by_phase", op)

    async def list_all(self) -> List[TaskRecord]:
        async def op(conn: aiosqlite.Connection) -> List[TaskRecord]:
            cursor = await conn.execute("SELECT * FROM tasks ORDER BY created_at")
            return [_from_row(row) for row in await cursor.fetchall()]

        return await self._run("list_all", op)

    async def delete(self, issue_key: str) -> bool:
        async def op(conn: aiosqlite.Connection) -> bool:
            cursor = await conn.execute("DELETE FROM tasks WHERE issue_key = ?", (issue_key,))
            return cursor.rowcount > 0

        return await self._run("delete", op, write=True)

    async def health_check(self) -> bool:
        async def op(conn: aiosqlite.Connection) -> bool:
            cursor = await conn.execute("SELECT 1")
            row = await cursor.fetchone()
            return row is not None and row[0] == 1

        try:
            return await self._run("health_check", op)
        except StoreError:
            return False


async def _fetch(conn: aiosqlite.Connection, issue_key: str) -> Optional[TaskRecord]:
    cursor = await conn.execute("SELECT * FROM tasks WHERE issue_key = ?", (issue_key,))
    row = await cursor.fetchone()
    return _from_row(row) if row is not None else None


def _from_row(row: aiosqlite.Row) -> TaskRecord:
    return TaskRecord.model_validate(dict(row))


def create_task_store(database_url: str) -> TaskStore:
    """Create the store matching a database URL.

    Args:
        database_url: sqlite:///path or postgresql://... connection URL.

    Returns:
        An unconnected TaskStore.
    """
    if database_url.startswith("sqlite:///"):
        return SQLiteTaskStore.from_url(database_url)
    if database_url.startswith(("postgresql://", "postgres://")):
        from src.shipwright.state.postgres import PostgresTaskStore

        return PostgresTaskStore(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
