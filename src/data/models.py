"""
Task Engine — Data Models.

Domain objects owned by the TaskStore cache. Tasks and their subtasks
persist in the local row store; Pomodoro sessions and the timer state
live in memory only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from src.core.errors import ValidationError


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Sort rank: high sorts before medium before low."""
        return _PRIORITY_RANK[self]

    @classmethod
    def from_db(cls, raw: str | None) -> Priority:
        if not raw:
            return cls.MEDIUM
        try:
            return cls(raw)
        except ValueError:
            return cls.MEDIUM


_PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2}


class RecurrenceType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PomodoroPhase(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    SHORT_BREAK = "shortBreak"
    LONG_BREAK = "longBreak"
    PAUSED = "paused"

    @property
    def is_running(self) -> bool:
        """True for phases that count down."""
        return self in (
            PomodoroPhase.WORKING,
            PomodoroPhase.SHORT_BREAK,
            PomodoroPhase.LONG_BREAK,
        )

    @property
    def is_break(self) -> bool:
        return self in (PomodoroPhase.SHORT_BREAK, PomodoroPhase.LONG_BREAK)


@dataclass(frozen=True)
class RecurrencePattern:
    """How a task repeats.

    ``days_of_week`` (0 = Sunday .. 6 = Saturday) is only meaningful for
    weekly patterns and is kept for multi-occurrence expansion; the single
    next-occurrence computation does not use it.
    """

    type: RecurrenceType
    interval: int = 1
    end_date: date | None = None
    days_of_week: frozenset[int] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.type, RecurrenceType):
            try:
                object.__setattr__(self, "type", RecurrenceType(self.type))
            except ValueError as exc:
                raise ValidationError(f"Unknown recurrence type: {self.type!r}") from exc
        if not isinstance(self.interval, int) or self.interval < 1:
            raise ValidationError(
                f"Recurrence interval must be a positive integer, got {self.interval!r}"
            )
        if self.days_of_week is not None:
            days = frozenset(self.days_of_week)
            if any(d < 0 or d > 6 for d in days):
                raise ValidationError(f"Weekday indices must be 0-6, got {sorted(days)}")
            object.__setattr__(self, "days_of_week", days)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "interval": self.interval,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "days_of_week": sorted(self.days_of_week) if self.days_of_week else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RecurrencePattern:
        end_date = data.get("end_date")
        days = data.get("days_of_week")
        return cls(
            type=RecurrenceType(data["type"]),
            interval=int(data.get("interval", 1)),
            end_date=date.fromisoformat(end_date) if end_date else None,
            days_of_week=frozenset(days) if days else None,
        )


@dataclass
class SubTask:
    """A checklist item owned by a Task."""

    id: str
    title: str
    completed: bool = False
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class PomodoroSession:
    """One focus interval, recorded by the Pomodoro engine."""

    id: str
    task_id: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int          # planned work duration
    completed: bool
    interrupted: bool = False
    notes: str = ""                # stop reason for interrupted sessions


@dataclass
class Task:
    """A to-do item tracked by the TaskStore."""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    due_date: datetime | None = None
    priority: Priority = Priority.MEDIUM
    completed: bool = False
    category_id: str | None = None
    subtasks: list[SubTask] = field(default_factory=list)
    progress: int | None = None                 # derived from subtasks
    recurrence: RecurrencePattern | None = None
    reminder: int | None = None                 # minutes before due_date
    tags: list[str] = field(default_factory=list)
    pomodoro_sessions: list[PomodoroSession] = field(default_factory=list)

    @property
    def completed_pomodoros(self) -> int:
        return sum(1 for s in self.pomodoro_sessions if s.completed)

    @property
    def total_pomodoro_minutes(self) -> int:
        """Minutes spent in sessions, interrupted ones counted by wall time."""
        total = 0.0
        for s in self.pomodoro_sessions:
            if s.completed:
                total += s.duration_minutes
            else:
                total += (s.end_time - s.start_time).total_seconds() / 60
        return int(total)


@dataclass
class TaskDraft:
    """Task fields supplied by a caller before an id and timestamps exist."""

    title: str
    description: str | None = None
    due_date: datetime | None = None
    priority: Priority | None = None
    completed: bool = False
    category_id: str | None = None
    subtasks: list[SubTask] = field(default_factory=list)
    recurrence: RecurrencePattern | None = None
    reminder: int | None = None
    tags: list[str] = field(default_factory=list)


@dataclass
class TaskTemplate:
    """A reusable blueprint for generating new Tasks."""

    id: str
    name: str                             # display name, e.g. "Daily Standup"
    title: str
    description: str | None = None
    priority: Priority | None = None
    category_id: str | None = None
    due_offset_days: int | None = None    # None -> due tomorrow
    subtask_titles: list[str] = field(default_factory=list)
    reminder: int | None = None
    recurrence: RecurrencePattern | None = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class PomodoroState:
    """Live focus-timer state. Never persisted."""

    phase: PomodoroPhase = PomodoroPhase.IDLE
    remaining_seconds: int = 0
    task_id: str | None = None
    completed_since_long_break: int = 0
    paused_phase: PomodoroPhase | None = None    # phase to resume into
    pending_break: PomodoroPhase | None = None   # earned break not auto-started
    session_started_at: datetime | None = None


def compute_progress(subtasks: list[SubTask]) -> int | None:
    """Percentage of completed subtasks, rounded half up. None without subtasks."""
    if not subtasks:
        return None
    done = sum(1 for s in subtasks if s.completed)
    return (200 * done + len(subtasks)) // (2 * len(subtasks))
