"""Reminder port — abstract interface for scheduling task reminders.

The TaskStore only expresses the intent ("remind at fire_at"); delivery
belongs to whatever implements this protocol.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol


class ReminderPort(Protocol):
    """Abstract reminder scheduler used by the TaskStore."""

    async def schedule(self, task_id: str, fire_at: datetime, title: str) -> None: ...

    async def cancel(self, task_id: str) -> None: ...
