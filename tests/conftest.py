"""Shared test fixtures and configuration.

Points DATABASE_PATH at a throwaway location before any src imports and
provides a temp SQLite adapter, repository and store wired to a fake clock.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("DATABASE_PATH", os.path.join("data", "test_tasks.db"))
os.environ.setdefault("SEED_DEFAULT_TASKS", "false")

import pytest

from fakes import FakeClock, FakeReminders


@pytest.fixture
def clock():
    """A clock frozen at 2024-01-15 09:00 that tests advance explicitly."""
    return FakeClock()


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_tasks.db")


@pytest.fixture
def adapter(tmp_db_path):
    """Return a SQLiteAdapter backed by a temp file."""
    from src.adapters.sqlite_adapter import SQLiteAdapter
    return SQLiteAdapter(db_path=tmp_db_path)


@pytest.fixture
def repository(adapter, clock):
    """Return a TaskRepository over the temp adapter."""
    from src.data.task_repository import TaskRepository
    return TaskRepository(adapter, clock=clock)


@pytest.fixture
def reminders():
    return FakeReminders()


@pytest.fixture
def store(repository, clock, reminders):
    """Return an isolated TaskStore with auto-started breaks for timer tests."""
    from src.core.pomodoro import PomodoroSettings
    from src.core.task_store import TaskStore
    return TaskStore(
        repository,
        pomodoro_settings=PomodoroSettings(auto_start_breaks=True),
        reminders=reminders,
        clock=clock,
    )
