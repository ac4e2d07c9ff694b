"""
Task Engine — Entry Point.

`python main.py` opens the local task database, loads the store and logs
a summary of what is due. Presentation layers build on build_store().
"""

import asyncio
import logging

from src.config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from src.adapters.sqlite_adapter import SQLiteAdapter
from src.core.pomodoro import PomodoroSettings
from src.core.task_filter import StatusFilter, TaskFilter
from src.core.task_store import TaskStore
from src.data.task_repository import TaskRepository

logger = logging.getLogger("main")


def build_store() -> TaskStore:
    """Wire the SQLite adapter, repository and store from settings."""
    repository = TaskRepository(SQLiteAdapter(settings.DATABASE_PATH))
    pomodoro_settings = PomodoroSettings.build(
        work_duration=settings.POMODORO_WORK_MINUTES,
        short_break_duration=settings.POMODORO_SHORT_BREAK_MINUTES,
        long_break_duration=settings.POMODORO_LONG_BREAK_MINUTES,
        sessions_until_long_break=settings.POMODORO_SESSIONS_UNTIL_LONG_BREAK,
        auto_start_breaks=settings.POMODORO_AUTO_START_BREAKS,
        auto_start_next_session=settings.POMODORO_AUTO_START_NEXT_SESSION,
    )
    return TaskStore(repository, pomodoro_settings=pomodoro_settings)


async def _run() -> None:
    store = build_store()
    await store.initialize(seed_defaults=settings.SEED_DEFAULT_TASKS)
    pending = store.filter_tasks(TaskFilter(status=StatusFilter.PENDING))
    logger.info("%d open tasks in %s", len(pending), settings.DATABASE_PATH)
    for task in pending:
        due = task.due_date.strftime("%Y-%m-%d %H:%M") if task.due_date else "no due date"
        logger.info("  [%s] %s (%s)", task.priority.value, task.title, due)


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
