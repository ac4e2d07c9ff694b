"""Tests for src.data.task_repository — row mapping and CRUD over SQLite."""

from datetime import date, datetime, timedelta

import pytest

from src.core.errors import PersistenceError, ValidationError
from src.core.task_filter import RepositoryFilter, sort_tasks
from src.data.models import (
    Priority,
    RecurrencePattern,
    RecurrenceType,
    SubTask,
    TaskDraft,
)


def _draft(title="Write report", **kwargs) -> TaskDraft:
    kwargs.setdefault("priority", Priority.MEDIUM)
    return TaskDraft(title=title, **kwargs)


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_create_returns_task_id(self, repository):
        task_id = await repository.create(_draft())
        assert task_id.startswith("task-")

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, repository):
        ids = {await repository.create(_draft(f"T{i}")) for i in range(5)}
        assert len(ids) == 5

    @pytest.mark.asyncio
    async def test_get_by_id_roundtrip(self, repository, clock):
        due = datetime(2024, 2, 1, 10, 30)
        task_id = await repository.create(_draft(
            description="Quarterly numbers",
            due_date=due,
            priority=Priority.HIGH,
            category_id="work",
            reminder=15,
            tags=["finance", "q1"],
        ))
        task = await repository.get_by_id(task_id)
        assert task is not None
        assert task.title == "Write report"
        assert task.description == "Quarterly numbers"
        assert task.due_date == due
        assert task.priority is Priority.HIGH
        assert task.completed is False
        assert task.category_id == "work"
        assert task.reminder == 15
        assert task.tags == ["finance", "q1"]
        assert task.created_at == clock.now
        assert task.created_at == task.updated_at

    @pytest.mark.asyncio
    async def test_get_by_id_not_found(self, repository):
        assert await repository.get_by_id("task-missing") is None

    @pytest.mark.asyncio
    async def test_missing_priority_stored_as_medium(self, repository):
        task_id = await repository.create(TaskDraft(title="No priority"))
        assert (await repository.get_by_id(task_id)).priority is Priority.MEDIUM

    @pytest.mark.asyncio
    async def test_subtasks_persist_and_derive_progress(self, repository, clock):
        subtasks = [
            SubTask(id="s1", title="Draft", completed=True, created_at=clock.now),
            SubTask(id="s2", title="Review", completed=False, created_at=clock.now),
            SubTask(id="s3", title="Send", completed=False, created_at=clock.now),
        ]
        task_id = await repository.create(_draft(subtasks=subtasks))
        task = await repository.get_by_id(task_id)
        assert [s.id for s in task.subtasks] == ["s1", "s2", "s3"]
        assert task.subtasks[0].completed is True
        assert task.progress == 33

    @pytest.mark.asyncio
    async def test_recurrence_persists(self, repository):
        pattern = RecurrencePattern(
            type=RecurrenceType.MONTHLY, interval=2, end_date=date(2024, 12, 31),
        )
        task_id = await repository.create(_draft(recurrence=pattern))
        assert (await repository.get_by_id(task_id)).recurrence == pattern

    @pytest.mark.asyncio
    async def test_write_failure_raises_persistence_error(self, repository):
        from unittest.mock import AsyncMock

        repository._db.execute_many = AsyncMock(side_effect=PersistenceError("disk full"))
        with pytest.raises(PersistenceError):
            await repository.create(_draft())


class TestList:
    @pytest.mark.asyncio
    async def test_ordering_contract(self, repository, clock):
        base = datetime(2024, 2, 1, 9, 0)
        await repository.create(_draft("undated-high", priority=Priority.HIGH))
        clock.advance(minutes=1)
        await repository.create(_draft("late", due_date=base + timedelta(days=3)))
        clock.advance(minutes=1)
        await repository.create(_draft("soon-low", due_date=base, priority=Priority.LOW))
        clock.advance(minutes=1)
        await repository.create(_draft("soon-high", due_date=base, priority=Priority.HIGH))
        clock.advance(minutes=1)
        await repository.create(_draft("undated-high-newer", priority=Priority.HIGH))

        titles = [t.title for t in await repository.list()]
        assert titles == [
            "soon-high", "soon-low", "late", "undated-high-newer", "undated-high",
        ]

    @pytest.mark.asyncio
    async def test_unknown_priority_ranks_as_medium(self, repository, adapter, clock):
        await repository.create(_draft("low", priority=Priority.LOW))
        clock.advance(minutes=1)
        await repository.create(_draft("high", priority=Priority.HIGH))
        stamp = (clock.now - timedelta(minutes=5)).isoformat(timespec="microseconds")
        await adapter.execute(
            "INSERT INTO tasks (id, title, priority, completed, created_at, updated_at) "
            "VALUES (?, ?, 'urgent', 0, ?, ?)",
            ("task-odd", "odd", stamp, stamp),
        )

        tasks = await repository.list()
        assert [t.title for t in tasks] == ["high", "odd", "low"]
        assert tasks[1].priority is Priority.MEDIUM
        assert [t.id for t in sort_tasks(tasks)] == [t.id for t in tasks]

    @pytest.mark.asyncio
    async def test_filter_completed(self, repository):
        await repository.create(_draft("open"))
        await repository.create(_draft("done", completed=True))
        done = await repository.list(RepositoryFilter(completed=True))
        assert [t.title for t in done] == ["done"]

    @pytest.mark.asyncio
    async def test_filter_priority_and_category(self, repository):
        await repository.create(_draft("a", priority=Priority.HIGH, category_id="work"))
        await repository.create(_draft("b", priority=Priority.LOW, category_id="work"))
        await repository.create(_draft("c", priority=Priority.HIGH, category_id="home"))
        result = await repository.list(
            RepositoryFilter(priority=Priority.HIGH, category_id="work"),
        )
        assert [t.title for t in result] == ["a"]

    @pytest.mark.asyncio
    async def test_empty(self, repository):
        assert await repository.list() == []


class TestUpdate:
    @pytest.mark.asyncio
    async def test_only_supplied_fields_change(self, repository, clock):
        task_id = await repository.create(_draft(description="keep me", category_id="work"))
        clock.advance(minutes=5)
        assert await repository.update(task_id, {"title": "Renamed"}) is True

        task = await repository.get_by_id(task_id)
        assert task.title == "Renamed"
        assert task.description == "keep me"
        assert task.category_id == "work"

    @pytest.mark.asyncio
    async def test_timestamps(self, repository, clock):
        task_id = await repository.create(_draft())
        created = (await repository.get_by_id(task_id)).created_at

        clock.advance(minutes=5)
        await repository.update(task_id, {"completed": True})
        first = await repository.get_by_id(task_id)
        clock.advance(minutes=5)
        await repository.update(task_id, {"completed": False})
        second = await repository.get_by_id(task_id)

        assert first.created_at == created == second.created_at
        assert created < first.updated_at < second.updated_at

    @pytest.mark.asyncio
    async def test_updated_at_never_moves_backwards(self, repository, clock):
        task_id = await repository.create(_draft())
        clock.advance(hours=1)
        await repository.update(task_id, {"title": "Later"})
        stamped = (await repository.get_by_id(task_id)).updated_at

        clock.advance(hours=-2)
        await repository.update(task_id, {"title": "Clock went back"})
        assert (await repository.get_by_id(task_id)).updated_at == stamped

    @pytest.mark.asyncio
    async def test_unknown_id_returns_false(self, repository):
        assert await repository.update("task-missing", {"title": "X"}) is False

    @pytest.mark.asyncio
    async def test_progress_is_not_settable(self, repository):
        task_id = await repository.create(_draft())
        with pytest.raises(ValidationError):
            await repository.update(task_id, {"progress": 50})

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, repository):
        task_id = await repository.create(_draft())
        with pytest.raises(ValidationError):
            await repository.update(task_id, {"owner": "me"})

    @pytest.mark.asyncio
    async def test_replaces_subtasks_and_tags(self, repository, clock):
        task_id = await repository.create(_draft(
            subtasks=[SubTask(id="s1", title="Old", created_at=clock.now)],
            tags=["old"],
        ))
        await repository.update(task_id, {
            "subtasks": [SubTask(id="s2", title="New", completed=True, created_at=clock.now)],
            "tags": ["new"],
        })
        task = await repository.get_by_id(task_id)
        assert [s.id for s in task.subtasks] == ["s2"]
        assert task.progress == 100
        assert task.tags == ["new"]

    @pytest.mark.asyncio
    async def test_clearing_due_date(self, repository):
        task_id = await repository.create(_draft(due_date=datetime(2024, 2, 1)))
        await repository.update(task_id, {"due_date": None})
        assert (await repository.get_by_id(task_id)).due_date is None


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_existing(self, repository, adapter, clock):
        task_id = await repository.create(_draft(
            subtasks=[SubTask(id="s1", title="Step", created_at=clock.now)],
            tags=["x"],
        ))
        assert await repository.delete(task_id) is True
        assert await repository.get_by_id(task_id) is None
        assert await adapter.query("SELECT * FROM subtasks") == []
        assert await adapter.query("SELECT * FROM task_tags") == []

    @pytest.mark.asyncio
    async def test_delete_unknown_returns_false(self, repository):
        assert await repository.delete("task-missing") is False
