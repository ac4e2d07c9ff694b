"""
Task Engine — Task Repository.

Faithful mapper between Task objects and rows in the tasks / subtasks /
task_tags tables. Talks to storage only through PersistencePort. No
business validation happens here; that is the TaskStore's job.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from src.core.errors import PersistenceError, ValidationError
from src.core.ids import generate_id
from src.core.task_filter import ORDER_BY_SQL, RepositoryFilter
from src.data.models import (
    Priority,
    RecurrencePattern,
    SubTask,
    Task,
    TaskDraft,
    compute_progress,
)

if TYPE_CHECKING:
    from src.ports.persistence_port import PersistencePort, Row, Statement

logger = logging.getLogger(__name__)

# Columns of the tasks table that update() writes directly.
_COLUMN_FIELDS = (
    "title", "description", "due_date", "priority",
    "completed", "category_id", "reminder", "recurrence",
)
_UPDATABLE_FIELDS = frozenset(_COLUMN_FIELDS) | {"subtasks", "tags"}


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _parse_ts(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        logger.warning("Unparseable timestamp in row: %r", raw)
        return None


def _encode_recurrence(pattern: RecurrencePattern | None) -> str | None:
    if pattern is None:
        return None
    return json.dumps(pattern.to_dict())


def _decode_recurrence(raw: str | None) -> RecurrencePattern | None:
    if not raw:
        return None
    try:
        return RecurrencePattern.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError) as exc:
        logger.warning("Ignoring malformed recurrence %r: %s", raw, exc)
        return None


def _column_value(name: str, value: Any) -> Any:
    """Convert a domain value into its column representation."""
    if name == "due_date":
        return _ts(value)
    if name == "priority":
        return Priority(value).value if value else Priority.MEDIUM.value
    if name == "completed":
        return 1 if value else 0
    if name == "recurrence":
        return _encode_recurrence(value)
    return value


class TaskRepository:
    """Async CRUD over the task tables."""

    def __init__(
        self,
        db: PersistencePort,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._db = db
        self._clock = clock

    # ---- statement builders ----

    @staticmethod
    def _subtask_statements(task_id: str, subtasks: Sequence[SubTask]) -> list[Statement]:
        statements: list[Statement] = [("DELETE FROM subtasks WHERE task_id = ?", (task_id,))]
        for position, sub in enumerate(subtasks):
            statements.append((
                """
                INSERT INTO subtasks (id, task_id, title, completed, created_at, position)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (sub.id, task_id, sub.title, int(sub.completed), _ts(sub.created_at), position),
            ))
        return statements

    @staticmethod
    def _tag_statements(task_id: str, tags: Sequence[str]) -> list[Statement]:
        statements: list[Statement] = [("DELETE FROM task_tags WHERE task_id = ?", (task_id,))]
        for tag in dict.fromkeys(tags):
            statements.append((
                "INSERT INTO task_tags (task_id, tag) VALUES (?, ?)",
                (task_id, tag),
            ))
        return statements

    # ---- row mapping ----

    @staticmethod
    def _row_to_subtask(row: Row) -> SubTask:
        return SubTask(
            id=row["id"],
            title=row["title"],
            completed=bool(row["completed"]),
            created_at=_parse_ts(row["created_at"]) or datetime.min,
        )

    @staticmethod
    def _row_to_task(row: Row, subtasks: list[SubTask], tags: list[str]) -> Task:
        created_at = _parse_ts(row["created_at"]) or datetime.min
        updated_at = _parse_ts(row["updated_at"]) or created_at
        return Task(
            id=row["id"] or "",
            title=row["title"],
            description=row["description"],
            due_date=_parse_ts(row["due_date"]),
            priority=Priority.from_db(row["priority"]),
            completed=bool(row["completed"]),
            category_id=row["category_id"],
            created_at=created_at,
            updated_at=max(updated_at, created_at),
            subtasks=subtasks,
            progress=compute_progress(subtasks),
            recurrence=_decode_recurrence(row.get("recurrence")),
            reminder=row.get("reminder"),
            tags=tags,
        )

    async def _load_children(
        self, task_ids: list[str],
    ) -> tuple[dict[str, list[SubTask]], dict[str, list[str]]]:
        subtasks: dict[str, list[SubTask]] = {tid: [] for tid in task_ids}
        tags: dict[str, list[str]] = {tid: [] for tid in task_ids}
        if not task_ids:
            return subtasks, tags

        placeholders = ", ".join("?" for _ in task_ids)
        sub_rows = await self._db.query(
            f"SELECT * FROM subtasks WHERE task_id IN ({placeholders}) "
            "ORDER BY task_id, position",
            task_ids,
        )
        for row in sub_rows:
            subtasks[row["task_id"]].append(self._row_to_subtask(row))

        tag_rows = await self._db.query(
            f"SELECT task_id, tag FROM task_tags WHERE task_id IN ({placeholders}) "
            "ORDER BY task_id, tag",
            task_ids,
        )
        for row in tag_rows:
            tags[row["task_id"]].append(row["tag"])
        return subtasks, tags

    async def _hydrate(self, rows: list[Row]) -> list[Task]:
        ids = [r["id"] for r in rows if r["id"]]
        subtasks, tags = await self._load_children(ids)
        return [
            self._row_to_task(r, subtasks.get(r["id"], []), tags.get(r["id"], []))
            for r in rows
        ]

    # ---- public API ----

    async def create(self, draft: TaskDraft) -> str:
        """Insert a new task with its subtasks and tags. Returns the new id."""
        task_id = generate_id("task")
        now = _ts(self._clock())

        statements: list[Statement] = [(
            """
            INSERT INTO tasks
                (id, title, description, due_date, priority, completed,
                 category_id, reminder, recurrence, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task_id,
                draft.title,
                draft.description,
                _ts(draft.due_date),
                _column_value("priority", draft.priority),
                1 if draft.completed else 0,
                draft.category_id,
                draft.reminder,
                _encode_recurrence(draft.recurrence),
                now,
                now,
            ),
        )]
        if draft.subtasks:
            statements += self._subtask_statements(task_id, draft.subtasks)
        if draft.tags:
            statements += self._tag_statements(task_id, draft.tags)

        affected = await self._db.execute_many(statements)
        if affected < 1:
            raise PersistenceError(f"Insert of task {draft.title!r} affected no rows")
        logger.info("Task created: %s '%s'", task_id, draft.title)
        return task_id

    async def get_by_id(self, task_id: str) -> Task | None:
        rows = await self._db.query("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if not rows:
            return None
        return (await self._hydrate(rows))[0]

    async def list(self, task_filter: RepositoryFilter | None = None) -> list[Task]:
        """Return tasks matching the filter, in contract order."""
        task_filter = task_filter or RepositoryFilter()
        conditions: list[str] = []
        params: list[Any] = []
        if task_filter.completed is not None:
            conditions.append("completed = ?")
            params.append(1 if task_filter.completed else 0)
        if task_filter.priority is not None:
            conditions.append("priority = ?")
            params.append(task_filter.priority.value)
        if task_filter.category_id is not None:
            conditions.append("category_id = ?")
            params.append(task_filter.category_id)

        query = "SELECT * FROM tasks"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " " + ORDER_BY_SQL

        logger.debug("Listing tasks: %s %s", query, params)
        rows = await self._db.query(query, params)
        return await self._hydrate(rows)

    async def update(self, task_id: str, changes: dict[str, Any]) -> bool:
        """Write only the supplied fields and refresh updated_at.

        Returns False if no task has this id.
        """
        if "progress" in changes:
            raise ValidationError("progress is derived from subtasks and cannot be set")
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown task fields: {sorted(unknown)}")

        exists = await self._db.query("SELECT 1 FROM tasks WHERE id = ?", (task_id,))
        if not exists:
            return False

        assignments: list[str] = []
        params: list[Any] = []
        for name in _COLUMN_FIELDS:
            if name in changes:
                assignments.append(f"{name} = ?")
                params.append(_column_value(name, changes[name]))
        # Never move updated_at backwards, even if the clock does.
        assignments.append("updated_at = MAX(updated_at, ?)")
        params.append(_ts(self._clock()))
        params.append(task_id)

        statements: list[Statement] = [
            (f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", params),
        ]
        if "subtasks" in changes:
            statements += self._subtask_statements(task_id, changes["subtasks"] or [])
        if "tags" in changes:
            statements += self._tag_statements(task_id, changes["tags"] or [])

        affected = await self._db.execute_many(statements)
        logger.debug("Task %s updated fields=%s", task_id, sorted(changes))
        return affected > 0

    async def delete(self, task_id: str) -> bool:
        """Delete a task together with its subtasks and tag links."""
        exists = await self._db.query("SELECT 1 FROM tasks WHERE id = ?", (task_id,))
        if not exists:
            return False
        affected = await self._db.execute_many([
            ("DELETE FROM subtasks WHERE task_id = ?", (task_id,)),
            ("DELETE FROM task_tags WHERE task_id = ?", (task_id,)),
            ("DELETE FROM tasks WHERE id = ?", (task_id,)),
        ])
        deleted = affected > 0
        if deleted:
            logger.info("Task deleted: %s", task_id)
        return deleted
