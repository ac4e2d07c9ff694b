"""
Task Engine — Recurrence Engine.

Computes the next occurrence of a repeating task and turns templates into
task drafts. Month and year arithmetic is calendar-aware: the day of month
is clamped to the length of the target month, so Jan 31 + 1 month is the
last day of February.

No I/O and no state: this module only transforms data.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, timedelta
from typing import TypeVar

from src.core.ids import generate_id
from src.data.models import (
    Priority,
    RecurrencePattern,
    RecurrenceType,
    SubTask,
    TaskDraft,
    TaskTemplate,
)

logger = logging.getLogger(__name__)

_DEFAULT_DUE_OFFSET_DAYS = 1

D = TypeVar("D", date, datetime)


def _add_months(base: D, months: int) -> D:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = base.month - 1 + months
    year = base.year + month_index // 12
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


def _end_of_day(d: date) -> datetime:
    return datetime.combine(d, datetime.max.time())


def _past_end(candidate: date | datetime, end_date: date) -> bool:
    if isinstance(candidate, datetime):
        end = _end_of_day(end_date)
        if candidate.tzinfo is not None:
            end = end.replace(tzinfo=candidate.tzinfo)
        return candidate > end
    return candidate > end_date


def next_occurrence(base: D, pattern: RecurrencePattern) -> D | None:
    """Return the occurrence that follows ``base``, or None if the recurrence ended.

    Args:
        base: Date (or datetime; the time of day is preserved) of the current
              occurrence.
        pattern: Recurrence rule. For weekly patterns ``days_of_week`` is not
                 consulted: the next occurrence is simply ``interval`` weeks on.

    Returns:
        The next occurrence, or None when it would fall after
        ``pattern.end_date``.
    """
    interval = pattern.interval
    if pattern.type is RecurrenceType.DAILY:
        candidate = base + timedelta(days=interval)
    elif pattern.type is RecurrenceType.WEEKLY:
        candidate = base + timedelta(weeks=interval)
    elif pattern.type is RecurrenceType.MONTHLY:
        candidate = _add_months(base, interval)
    else:
        candidate = _add_months(base, 12 * interval)

    if pattern.end_date is not None and _past_end(candidate, pattern.end_date):
        logger.debug(
            "Recurrence ended: %s is after end date %s", candidate, pattern.end_date,
        )
        return None
    return candidate


def occurrences(base: D, pattern: RecurrencePattern, limit: int) -> list[D]:
    """Return up to ``limit`` successive occurrences after ``base``."""
    result: list[D] = []
    current = base
    while len(result) < limit:
        nxt = next_occurrence(current, pattern)
        if nxt is None:
            break
        result.append(nxt)
        current = nxt
    return result


def template_to_task(template: TaskTemplate, now: datetime | None = None) -> TaskDraft:
    """Build a task draft from a template.

    Due date is ``now`` plus the template's day offset (tomorrow when the
    template has none). Subtasks get fresh ids on every call.
    """
    now = now or datetime.now()
    offset = template.due_offset_days
    if offset is None:
        offset = _DEFAULT_DUE_OFFSET_DAYS

    subtasks = [
        SubTask(id=generate_id("sub"), title=title, completed=False, created_at=now)
        for title in template.subtask_titles
    ]
    return TaskDraft(
        title=template.title,
        description=template.description or "",
        due_date=now + timedelta(days=offset),
        priority=template.priority or Priority.MEDIUM,
        completed=False,
        category_id=template.category_id,
        subtasks=subtasks,
        recurrence=template.recurrence,
        reminder=template.reminder,
    )
