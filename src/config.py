"""
Task Engine — Centralized configuration.

Loads all settings from .env and validates them.
Core classes take explicit arguments; only the bootstrap in main.py and
the adapter defaults read from here.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # SQLite
    DATABASE_PATH: str = "data/tasks.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Focus timer defaults (minutes)
    POMODORO_WORK_MINUTES: int = 25
    POMODORO_SHORT_BREAK_MINUTES: int = 5
    POMODORO_LONG_BREAK_MINUTES: int = 15
    POMODORO_SESSIONS_UNTIL_LONG_BREAK: int = 4
    POMODORO_AUTO_START_BREAKS: bool = False
    POMODORO_AUTO_START_NEXT_SESSION: bool = False

    # Seed welcome tasks into an empty database
    SEED_DEFAULT_TASKS: bool = True

    @field_validator(
        "POMODORO_AUTO_START_BREAKS",
        "POMODORO_AUTO_START_NEXT_SESSION",
        "SEED_DEFAULT_TASKS",
        mode="before",
    )
    @classmethod
    def parse_bool(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in _TRUE_VALUES

    @field_validator(
        "POMODORO_WORK_MINUTES",
        "POMODORO_SHORT_BREAK_MINUTES",
        "POMODORO_LONG_BREAK_MINUTES",
        "POMODORO_SESSIONS_UNTIL_LONG_BREAK",
    )
    @classmethod
    def positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def upper_level(cls, v: str) -> str:
        return str(v).strip().upper() or "INFO"


def _load_settings() -> Settings:
    """Load settings from environment, exiting on invalid values."""
    try:
        return Settings(
            DATABASE_PATH=os.getenv("DATABASE_PATH", "data/tasks.db"),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            POMODORO_WORK_MINUTES=os.getenv("POMODORO_WORK_MINUTES", "25"),
            POMODORO_SHORT_BREAK_MINUTES=os.getenv("POMODORO_SHORT_BREAK_MINUTES", "5"),
            POMODORO_LONG_BREAK_MINUTES=os.getenv("POMODORO_LONG_BREAK_MINUTES", "15"),
            POMODORO_SESSIONS_UNTIL_LONG_BREAK=os.getenv(
                "POMODORO_SESSIONS_UNTIL_LONG_BREAK", "4"
            ),
            POMODORO_AUTO_START_BREAKS=os.getenv("POMODORO_AUTO_START_BREAKS", "false"),
            POMODORO_AUTO_START_NEXT_SESSION=os.getenv(
                "POMODORO_AUTO_START_NEXT_SESSION", "false"
            ),
            SEED_DEFAULT_TASKS=os.getenv("SEED_DEFAULT_TASKS", "true"),
        )
    except ValidationError as exc:
        print(f"ERROR: invalid configuration in .env:\n{exc}", file=sys.stderr)
        sys.exit(1)


# Singleton — imported by the bootstrap as:
#   from src.config import settings
settings = _load_settings()
