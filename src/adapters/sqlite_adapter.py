"""SQLite persistence adapter — implements PersistencePort.

Uses the sqlite3 module (sync) wrapped with asyncio.to_thread for async
compatibility. Each call opens its own connection, so ":memory:" paths do
not keep data between calls; use a file path.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from src.core.errors import PersistenceError
from src.ports.persistence_port import Row, Statement

logger = logging.getLogger(__name__)


class SQLiteAdapter:
    """SQLite implementation of PersistencePort backing the tasks schema."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        """Create the task tables if they don't exist, and migrate schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id          TEXT PRIMARY KEY,
                    title       TEXT    NOT NULL,
                    description TEXT,
                    due_date    TEXT,
                    priority    TEXT    NOT NULL DEFAULT 'medium',
                    completed   INTEGER NOT NULL DEFAULT 0,
                    category_id TEXT,
                    created_at  TEXT    NOT NULL,
                    updated_at  TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS subtasks (
                    id         TEXT    PRIMARY KEY,
                    task_id    TEXT    NOT NULL,
                    title      TEXT    NOT NULL,
                    completed  INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT    NOT NULL,
                    position   INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_tags (
                    task_id TEXT NOT NULL,
                    tag     TEXT NOT NULL,
                    PRIMARY KEY (task_id, tag),
                    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
                )
            """)
            # Migrate existing DBs: add new columns if missing
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(tasks)").fetchall()
            }
            if "reminder" not in existing_cols:
                conn.execute("ALTER TABLE tasks ADD COLUMN reminder INTEGER")
            if "recurrence" not in existing_cols:
                conn.execute("ALTER TABLE tasks ADD COLUMN recurrence TEXT")

            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_due_date ON tasks(due_date)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_priority ON tasks(priority)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_completed ON tasks(completed)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_subtasks_task_id ON subtasks(task_id)")
        logger.debug("Task tables initialized at %s", self._db_path)

    # -- sync workers (run in a thread) --

    def _execute_sync(self, statements: Sequence[Statement]) -> int:
        conn = self._connect()
        try:
            affected = 0
            with conn:
                for sql, params in statements:
                    cursor = conn.execute(sql, tuple(params))
                    affected += max(cursor.rowcount, 0)
            return affected
        finally:
            conn.close()

    def _query_sync(self, sql: str, params: Sequence[Any]) -> list[Row]:
        conn = self._connect()
        try:
            rows = conn.execute(sql, tuple(params)).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    # -- PersistencePort --

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        return await self.execute_many([(sql, params)])

    async def execute_many(self, statements: Sequence[Statement]) -> int:
        """Run all statements in one transaction; return total rows affected."""
        try:
            return await asyncio.to_thread(self._execute_sync, statements)
        except sqlite3.Error as exc:
            logger.error("SQLite write failed: %s", exc)
            raise PersistenceError(f"Write failed: {exc}") from exc

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        try:
            return await asyncio.to_thread(self._query_sync, sql, params)
        except sqlite3.Error as exc:
            logger.error("SQLite query failed: %s", exc)
            raise PersistenceError(f"Query failed: {exc}") from exc
