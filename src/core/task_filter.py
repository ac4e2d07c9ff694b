"""Task filtering and ordering — pure business logic.

One ordering contract is shared by the repository's SQL and the store's
cache-local views, so a freshly fetched list and a locally filtered list
come out in the same order:

    due date ascending (no due date last),
    then priority descending (high -> low),
    then creation time descending.

No I/O: this module only transforms data.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum

from src.data.models import Priority, Task

ORDER_BY_SQL = (
    "ORDER BY due_date IS NULL, due_date ASC, "
    "CASE priority WHEN 'high' THEN 2 WHEN 'low' THEN 0 ELSE 1 END DESC, "
    "created_at DESC"
)


class StatusFilter(Enum):
    ALL = "all"
    PENDING = "pending"
    COMPLETED = "completed"


class DueFilter(Enum):
    ALL = "all"
    TODAY = "today"
    WEEK = "week"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class RepositoryFilter:
    """Filter pushed down to the row store. None means "don't filter"."""

    completed: bool | None = None
    priority: Priority | None = None
    category_id: str | None = None


@dataclass(frozen=True)
class TaskFilter:
    """Filter used by presentation layers. Due-date filtering is cache-local."""

    status: StatusFilter = StatusFilter.ALL
    priority: Priority | None = None
    category_id: str | None = None
    due: DueFilter = DueFilter.ALL

    def to_repository_filter(self) -> RepositoryFilter:
        completed = None
        if self.status is StatusFilter.COMPLETED:
            completed = True
        elif self.status is StatusFilter.PENDING:
            completed = False
        return RepositoryFilter(
            completed=completed,
            priority=self.priority,
            category_id=self.category_id,
        )


def task_sort_key(task: Task) -> tuple:
    """Primary sort key: due date (none last), then priority. Ties keep input order."""
    due = task.due_date
    return (due is None, due or datetime.min, -task.priority.rank)


def sort_tasks(tasks: list[Task]) -> list[Task]:
    """Sort in contract order.

    Two stable passes: newest first, then the primary key. created_at is
    compared as a datetime, so placeholder values such as datetime.min sort
    without error.
    """
    newest_first = sorted(tasks, key=lambda t: t.created_at, reverse=True)
    return sorted(newest_first, key=task_sort_key)


def _matches_due(task: Task, due: DueFilter, now: datetime) -> bool:
    if due is DueFilter.ALL:
        return True
    if task.due_date is None:
        return False

    today: date = now.date()
    due_day = task.due_date.date()
    if due is DueFilter.TODAY:
        return due_day == today
    if due is DueFilter.WEEK:
        return today <= due_day < today + timedelta(days=7)
    # OVERDUE: past due and still open
    return task.due_date < now and not task.completed


def matches(task: Task, task_filter: TaskFilter, now: datetime | None = None) -> bool:
    """Check whether a task passes every criterion of the filter."""
    if task_filter.status is StatusFilter.COMPLETED and not task.completed:
        return False
    if task_filter.status is StatusFilter.PENDING and task.completed:
        return False
    if task_filter.priority is not None and task.priority is not task_filter.priority:
        return False
    if task_filter.category_id is not None and task.category_id != task_filter.category_id:
        return False
    return _matches_due(task, task_filter.due, now or datetime.now())


def filter_tasks(
    tasks: list[Task],
    task_filter: TaskFilter | None = None,
    now: datetime | None = None,
) -> list[Task]:
    """Return the matching tasks in contract order."""
    if task_filter is None:
        return sort_tasks(tasks)
    now = now or datetime.now()
    return sort_tasks([t for t in tasks if matches(t, task_filter, now)])
