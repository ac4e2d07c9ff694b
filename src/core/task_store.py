"""
Task Engine — Task Store.

The orchestrating state container: holds the authoritative in-memory cache
of tasks and templates, validates caller input, delegates persistence to
the TaskRepository, derives progress and owns the Pomodoro engine.

Consistency rules:
- add / update / delete touch the cache only after the repository confirms.
- toggle_completion flips the cache first through a PendingMutation and
  rolls the flip back if the repository does not confirm.
- Mutations of one task id are serialized with a per-id asyncio.Lock, and
  a rollback is refused if anything wrote the cache entry after the
  proposal, so a stale rollback can never clobber a newer confirmed write.
- fetch() runs only while no mutation is in flight and blocks new ones
  until the reloaded cache is in place.

Create one TaskStore per application (or per test); nothing here is a
module-level singleton.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

from src.core.errors import PersistenceError, ValidationError
from src.core.ids import generate_id
from src.core.pomodoro import PomodoroEngine, PomodoroSettings, TransitionResult
from src.core.recurrence import next_occurrence, template_to_task
from src.core.task_filter import TaskFilter, filter_tasks, sort_tasks
from src.data.models import (
    Priority,
    PomodoroSession,
    SubTask,
    Task,
    TaskDraft,
    TaskTemplate,
    compute_progress,
)

if TYPE_CHECKING:
    from src.data.task_repository import TaskRepository
    from src.ports.reminder_port import ReminderPort

logger = logging.getLogger(__name__)


_DEFAULT_TEMPLATES = (
    {
        "name": "Daily Standup",
        "title": "Daily Team Meeting",
        "description": "Template for daily team standup meetings",
        "priority": Priority.MEDIUM,
        "subtask_titles": [
            "Review yesterday's progress",
            "Discuss blockers",
            "Plan today's work",
        ],
    },
    {
        "name": "Bug Fix Process",
        "title": "Fix Software Bug",
        "description": "Standard process for addressing software bugs",
        "priority": Priority.HIGH,
        "subtask_titles": [
            "Reproduce the issue",
            "Check logs and identify cause",
            "Implement fix",
            "Write tests",
            "Create PR",
        ],
    },
    {
        "name": "Weekly Report",
        "title": "Prepare Weekly Report",
        "description": "Template for preparing weekly status reports",
        "priority": Priority.MEDIUM,
        "subtask_titles": [
            "Gather metrics and data",
            "Create summary",
            "Add visualizations",
            "Review with team",
        ],
    },
)

_WELCOME_TASKS = (
    TaskDraft(
        title="Welcome to Task Manager!",
        description="This is your first task. Try completing it!",
        priority=Priority.MEDIUM,
    ),
    TaskDraft(
        title="Create a new task",
        description="Add a task of your own to get started",
        priority=Priority.LOW,
    ),
)

_TEMPLATE_FIELDS = frozenset(
    f.name for f in dataclasses.fields(TaskTemplate)
) - {"id", "created_at"}


def reminder_time(task: Task) -> datetime | None:
    """When the reminder for a task should fire, or None if it has none."""
    if task.due_date is None or task.reminder is None:
        return None
    return task.due_date - timedelta(minutes=task.reminder)


def _persisted_fields(task: Task) -> dict[str, Any]:
    """The fields the repository writes on update. progress is never sent."""
    return {
        "title": task.title,
        "description": task.description,
        "due_date": task.due_date,
        "priority": task.priority,
        "completed": task.completed,
        "category_id": task.category_id,
        "reminder": task.reminder,
        "recurrence": task.recurrence,
        "subtasks": task.subtasks,
        "tags": task.tags,
    }


def _normalize_tags(tags: list[str]) -> list[str]:
    """Tags as the repository returns them: unique and sorted."""
    return sorted(set(tags))


def _validate_title(title: str | None, what: str = "Task") -> str:
    if title is None or not title.strip():
        raise ValidationError(f"{what} title is required")
    return title.strip()


def _validate_template_name(name: str | None) -> str:
    if name is None or not name.strip():
        raise ValidationError("Template name is required")
    return name.strip()


def _validate_reminder(reminder: int | None) -> None:
    if reminder is not None and reminder < 0:
        raise ValidationError(f"Reminder offset must be >= 0 minutes, got {reminder}")


class PendingMutation:
    """An optimistic change to one cached task: propose, then commit or roll back.

    The proposal records the cache version it wrote. rollback() restores the
    previous value only while that version is still current; if a newer
    write replaced the entry meanwhile, the rollback is refused.
    """

    def __init__(self, store: TaskStore, task_id: str, change: Callable[[Task], Task]) -> None:
        self._store = store
        self.task_id = task_id
        self.previous = store._tasks[task_id]
        self.proposed = change(self.previous)
        self._version: int | None = None
        self.status = "new"

    def propose(self) -> Task:
        if self.status != "new":
            raise RuntimeError(f"Mutation already {self.status}")
        self._version = self._store._put(self.proposed)
        self.status = "proposed"
        return self.proposed

    def commit(self) -> Task:
        if self.status != "proposed":
            raise RuntimeError(f"Cannot commit a mutation that is {self.status}")
        self.status = "committed"
        current = self._store._tasks.get(self.task_id, self.proposed)
        if self._store._versions.get(self.task_id) == self._version:
            current = self._store._touch(self.task_id)
        return current

    def rollback(self) -> bool:
        """Restore the previous value. Returns False if a newer write won."""
        if self.status != "proposed":
            raise RuntimeError(f"Cannot roll back a mutation that is {self.status}")
        self.status = "rolled_back"
        if self._store._versions.get(self.task_id) != self._version:
            logger.warning(
                "Skipping stale rollback for task %s: entry changed since proposal",
                self.task_id,
            )
            return False
        self._store._put(self.previous)
        logger.info("Rolled back optimistic change to task %s", self.task_id)
        return True


class TaskStore:
    """Injectable task/template cache with persistence and a focus timer."""

    def __init__(
        self,
        repository: TaskRepository,
        pomodoro_settings: PomodoroSettings | None = None,
        reminders: ReminderPort | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._repo = repository
        self._reminders = reminders
        self._clock = clock
        self._tasks: dict[str, Task] = {}
        self._versions: dict[str, int] = {}
        self._version_seq = 0
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock_users: defaultdict[str, int] = defaultdict(int)
        # fetch waits for in-flight mutations; mutations wait for a running fetch.
        self._gate = asyncio.Condition()
        self._in_flight = 0
        self._fetching = False
        self._templates: dict[str, TaskTemplate] = {}
        self._initialized = False
        self.pomodoro = PomodoroEngine(
            settings=pomodoro_settings,
            clock=clock,
            on_session=self._attach_session,
        )

    # ---- cache primitives ----

    def _put(self, task: Task) -> int:
        """Write a cache entry and return its new version."""
        self._version_seq += 1
        self._tasks[task.id] = task
        self._versions[task.id] = self._version_seq
        return self._version_seq

    def _drop(self, task_id: str) -> None:
        self._version_seq += 1
        self._tasks.pop(task_id, None)
        self._versions[task_id] = self._version_seq

    def _touch(self, task_id: str) -> Task:
        """Refresh updated_at on a cached entry after a confirmed write."""
        task = self._tasks[task_id]
        touched = dataclasses.replace(task, updated_at=max(task.updated_at, self._clock()))
        self._put(touched)
        return touched

    @asynccontextmanager
    async def _mutating(self, task_id: str | None = None) -> AsyncIterator[None]:
        """Hold the id lock for one mutation and keep fetch() out meanwhile.

        A mutation of a new task (add) passes no id and takes no id lock.
        """
        async with self._gate:
            await self._gate.wait_for(lambda: not self._fetching)
            self._in_flight += 1
        try:
            if task_id is None:
                yield
            else:
                self._lock_users[task_id] += 1
                try:
                    async with self._locks[task_id]:
                        yield
                finally:
                    self._lock_users[task_id] -= 1
                    if not self._lock_users[task_id] and task_id not in self._tasks:
                        # Unknown or deleted id: don't keep its lock around.
                        self._locks.pop(task_id, None)
                        del self._lock_users[task_id]
        finally:
            async with self._gate:
                self._in_flight -= 1
                self._gate.notify_all()

    def _attach_session(self, session: PomodoroSession) -> None:
        task = self._tasks.get(session.task_id)
        if task is not None:
            # In place: sessions are in-memory only and must not bump versions.
            task.pomodoro_sessions.append(session)

    # ---- read access ----

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    @property
    def templates(self) -> list[TaskTemplate]:
        return list(self._templates.values())

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def sorted_tasks(self) -> list[Task]:
        return sort_tasks(self.tasks)

    def filter_tasks(self, task_filter: TaskFilter | None = None) -> list[Task]:
        """Cache-local filter in the same order the repository lists tasks."""
        return filter_tasks(self.tasks, task_filter, now=self._clock())

    def categories(self) -> list[str]:
        return sorted({t.category_id for t in self._tasks.values() if t.category_id})

    # ---- reminders ----

    async def _sync_reminder(self, task: Task) -> None:
        if self._reminders is None:
            return
        fire_at = reminder_time(task)
        try:
            if fire_at is None or task.completed or fire_at < self._clock():
                await self._reminders.cancel(task.id)
            else:
                await self._reminders.schedule(task.id, fire_at, task.title)
        except Exception as exc:
            logger.error("Failed to sync reminder for task %s: %s", task.id, exc)

    async def _cancel_reminder(self, task_id: str) -> None:
        if self._reminders is None:
            return
        try:
            await self._reminders.cancel(task_id)
        except Exception as exc:
            logger.error("Failed to cancel reminder for task %s: %s", task_id, exc)

    # ---- task actions ----

    async def fetch(self, task_filter: TaskFilter | None = None) -> list[Task]:
        """Reload from the repository, replacing the cache wholesale.

        Rows without an id, or repeating an id already seen, get a synthetic
        "fixed-..." id so the cache stays addressable.

        Waits for in-flight mutations to confirm, and holds new ones back
        until the cache is replaced, so a confirmed write is never
        overwritten by an older snapshot.
        """
        async with self._gate:
            await self._gate.wait_for(lambda: not self._fetching and self._in_flight == 0)
            self._fetching = True
        try:
            return await self._reload(task_filter)
        finally:
            async with self._gate:
                self._fetching = False
                self._gate.notify_all()

    async def _reload(self, task_filter: TaskFilter | None) -> list[Task]:
        repo_filter = task_filter.to_repository_filter() if task_filter else None
        loaded = await self._repo.list(repo_filter)

        fresh: list[Task] = []
        seen: set[str] = set()
        for task in loaded:
            if not task.id or task.id in seen:
                new_id = generate_id("fixed")
                logger.warning(
                    "Repairing task '%s' with missing/duplicate id %r -> %s",
                    task.title, task.id, new_id,
                )
                task = dataclasses.replace(task, id=new_id)
            seen.add(task.id)
            task.pomodoro_sessions = [
                s for s in self.pomodoro.sessions if s.task_id == task.id
            ]
            fresh.append(task)

        for task_id in list(self._tasks):
            self._drop(task_id)
        for task in fresh:
            self._put(task)
        logger.info("Fetched %d tasks", len(fresh))
        return self.tasks

    async def add(self, draft: TaskDraft) -> Task:
        """Validate, persist, then append to the cache."""
        title = _validate_title(draft.title)
        _validate_reminder(draft.reminder)
        draft = dataclasses.replace(
            draft,
            title=title,
            priority=draft.priority or Priority.MEDIUM,
            completed=bool(draft.completed),
        )

        async with self._mutating():
            task_id = await self._repo.create(draft)
            now = self._clock()
            task = Task(
                id=task_id,
                title=draft.title,
                description=draft.description,
                due_date=draft.due_date,
                priority=draft.priority,
                completed=draft.completed,
                category_id=draft.category_id,
                created_at=now,
                updated_at=now,
                subtasks=[dataclasses.replace(s) for s in draft.subtasks],
                progress=compute_progress(draft.subtasks),
                recurrence=draft.recurrence,
                reminder=draft.reminder,
                tags=_normalize_tags(draft.tags),
            )
            self._put(task)
        await self._sync_reminder(task)
        return task

    async def _persist_update(self, task: Task) -> Task | None:
        """Write a full task through the repository. Caller holds the id lock."""
        confirmed = await self._repo.update(task.id, _persisted_fields(task))
        if not confirmed:
            logger.warning("Update ignored: task %s not found", task.id)
            return None

        current = self._tasks.get(task.id)
        previous_updated = current.updated_at if current else task.updated_at
        stored = dataclasses.replace(
            task,
            created_at=current.created_at if current else task.created_at,
            updated_at=max(previous_updated, task.updated_at, self._clock()),
            subtasks=[dataclasses.replace(s) for s in task.subtasks],
            progress=compute_progress(task.subtasks),
            tags=_normalize_tags(task.tags),
            pomodoro_sessions=current.pomodoro_sessions if current else task.pomodoro_sessions,
        )
        self._put(stored)
        await self._sync_reminder(stored)
        return stored

    async def update(self, task: Task) -> Task | None:
        """Persist a full task. Returns the cached result, or None if the id is unknown."""
        _validate_title(task.title)
        _validate_reminder(task.reminder)
        async with self._mutating(task.id):
            return await self._persist_update(task)

    async def delete(self, task_id: str) -> bool:
        async with self._mutating(task_id):
            deleted = await self._repo.delete(task_id)
            if deleted:
                self._drop(task_id)
                await self._cancel_reminder(task_id)
            return deleted

    async def toggle_completion(self, task_id: str) -> bool:
        """Flip completed optimistically; roll back unless persistence confirms."""
        async with self._mutating(task_id):
            if task_id not in self._tasks:
                return False
            mutation = PendingMutation(
                self, task_id, lambda t: dataclasses.replace(t, completed=not t.completed),
            )
            proposed = mutation.propose()
            try:
                confirmed = await self._repo.update(task_id, {"completed": proposed.completed})
            except PersistenceError:
                mutation.rollback()
                raise
            if not confirmed:
                mutation.rollback()
                return False
            task = mutation.commit()
            await self._sync_reminder(task)
            return True

    async def _set_completed(self, task_id: str, completed: bool) -> bool:
        async with self._mutating(task_id):
            task = self._tasks.get(task_id)
            if task is None:
                return False
            result = await self._persist_update(dataclasses.replace(task, completed=completed))
            return result is not None

    async def mark_completed(self, task_id: str) -> bool:
        return await self._set_completed(task_id, True)

    async def mark_in_progress(self, task_id: str) -> bool:
        return await self._set_completed(task_id, False)

    # ---- subtasks (read-modify-write through update) ----

    async def _modify_subtasks(
        self, task_id: str, change: Callable[[list[SubTask]], list[SubTask] | None],
    ) -> Task | None:
        async with self._mutating(task_id):
            task = self._tasks.get(task_id)
            if task is None:
                return None
            subtasks = change([dataclasses.replace(s) for s in task.subtasks])
            if subtasks is None:
                return None
            modified = dataclasses.replace(
                task, subtasks=subtasks, progress=compute_progress(subtasks),
            )
            return await self._persist_update(modified)

    async def add_subtask(self, task_id: str, title: str) -> Task | None:
        clean = _validate_title(title, "Subtask")

        def change(subtasks: list[SubTask]) -> list[SubTask]:
            return [*subtasks, SubTask(id=generate_id("sub"), title=clean, created_at=self._clock())]

        return await self._modify_subtasks(task_id, change)

    async def toggle_subtask(self, task_id: str, subtask_id: str) -> Task | None:
        def change(subtasks: list[SubTask]) -> list[SubTask] | None:
            if not any(s.id == subtask_id for s in subtasks):
                return None
            for s in subtasks:
                if s.id == subtask_id:
                    s.completed = not s.completed
            return subtasks

        return await self._modify_subtasks(task_id, change)

    async def delete_subtask(self, task_id: str, subtask_id: str) -> Task | None:
        def change(subtasks: list[SubTask]) -> list[SubTask] | None:
            remaining = [s for s in subtasks if s.id != subtask_id]
            return remaining if len(remaining) != len(subtasks) else None

        return await self._modify_subtasks(task_id, change)

    # ---- recurrence ----

    async def schedule_next_occurrence(self, task_id: str) -> Task | None:
        """Create the next instance of a recurring task.

        Returns None when the task is unknown, not recurring, or its
        recurrence has ended.
        """
        task = self._tasks.get(task_id)
        if task is None or task.recurrence is None:
            return None

        base = task.due_date or self._clock()
        due = next_occurrence(base, task.recurrence)
        if due is None:
            logger.info("Recurrence of task %s has ended", task_id)
            return None

        now = self._clock()
        draft = TaskDraft(
            title=task.title,
            description=task.description,
            due_date=due,
            priority=task.priority,
            completed=False,
            category_id=task.category_id,
            subtasks=[
                SubTask(id=generate_id("sub"), title=s.title, completed=False, created_at=now)
                for s in task.subtasks
            ],
            recurrence=task.recurrence,
            reminder=task.reminder,
            tags=list(task.tags),
        )
        return await self.add(draft)

    # ---- templates (in memory) ----

    async def fetch_templates(self) -> list[TaskTemplate]:
        """Seed the built-in templates if none are loaded yet."""
        if not self._templates:
            for i, fields in enumerate(_DEFAULT_TEMPLATES):
                template = TaskTemplate(
                    id=str(i + 1),
                    created_at=self._clock() - timedelta(days=i),
                    **{**fields, "subtask_titles": list(fields["subtask_titles"])},
                )
                self._templates[template.id] = template
        return self.templates

    async def add_template(self, name: str, title: str, **fields: Any) -> TaskTemplate:
        clean_name = _validate_template_name(name)
        clean_title = _validate_title(title, "Template")
        unknown = set(fields) - (_TEMPLATE_FIELDS - {"name", "title"})
        if unknown:
            raise ValidationError(f"Unknown template fields: {sorted(unknown)}")
        template = TaskTemplate(
            id=generate_id("tpl"),
            name=clean_name,
            title=clean_title,
            created_at=self._clock(),
            **fields,
        )
        self._templates[template.id] = template
        logger.info("Template added: %s '%s'", template.id, template.name)
        return template

    async def update_template(self, template_id: str, **changes: Any) -> TaskTemplate | None:
        template = self._templates.get(template_id)
        if template is None:
            return None
        unknown = set(changes) - _TEMPLATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown template fields: {sorted(unknown)}")
        if "name" in changes:
            changes["name"] = _validate_template_name(changes["name"])
        if "title" in changes:
            changes["title"] = _validate_title(changes["title"], "Template")
        updated = dataclasses.replace(template, **changes)
        self._templates[template_id] = updated
        return updated

    async def delete_template(self, template_id: str) -> bool:
        return self._templates.pop(template_id, None) is not None

    async def create_task_from_template(self, template: TaskTemplate) -> Task:
        draft = template_to_task(template, now=self._clock())
        return await self.add(draft)

    # ---- lifecycle ----

    async def initialize(self, seed_defaults: bool = True) -> None:
        """Load tasks and templates once; seed welcome tasks into an empty store."""
        if self._initialized:
            return
        await self.fetch()
        await self.fetch_templates()
        if seed_defaults and not self._tasks:
            for draft in _WELCOME_TASKS:
                await self.add(dataclasses.replace(draft))
        self._initialized = True
        logger.info(
            "TaskStore ready: %d tasks, %d templates", len(self._tasks), len(self._templates),
        )

    # ---- focus timer ----

    def start_pomodoro(self, task_id: str) -> TransitionResult:
        """Start a focus session on a cached task."""
        if task_id not in self._tasks:
            raise ValidationError(f"Unknown task {task_id!r}")
        return self.pomodoro.start(task_id)
