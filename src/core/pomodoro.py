"""
Task Engine — Pomodoro (Focus-Timer) Engine.

A state machine over idle / working / shortBreak / longBreak / paused.
The countdown is driven from outside: a scheduler calls advance() with the
number of elapsed seconds (normally once per second). The engine never
reads the wall clock except through the injected ``clock``, which is used
only to timestamp recorded sessions.

Transitions never raise for a wrong phase: they return a TransitionResult
whose ``error`` explains the rejection, and the state is left unchanged.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from src.core.errors import InvalidTransitionError, ValidationError
from src.core.ids import generate_id
from src.data.models import PomodoroPhase, PomodoroSession, PomodoroState

logger = logging.getLogger(__name__)


class PomodoroSettings(BaseModel):
    """User-configurable timer settings. Durations are in minutes."""

    model_config = ConfigDict(frozen=True)

    work_duration: int = Field(default=25, gt=0)
    short_break_duration: int = Field(default=5, gt=0)
    long_break_duration: int = Field(default=15, gt=0)
    sessions_until_long_break: int = Field(default=4, gt=0)
    auto_start_breaks: bool = False
    auto_start_next_session: bool = False

    @classmethod
    def build(cls, **values) -> PomodoroSettings:
        """Validate values, raising the engine's ValidationError on bad input."""
        try:
            return cls(**values)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid Pomodoro settings: {exc}") from exc


@dataclass
class TransitionResult:
    accepted: bool
    phase: PomodoroPhase
    error: InvalidTransitionError | None = None
    sessions: list[PomodoroSession] = field(default_factory=list)  # recorded by this call


class PomodoroEngine:
    """Focus-timer state machine. Only one timer is active per engine."""

    def __init__(
        self,
        settings: PomodoroSettings | None = None,
        clock: Callable[[], datetime] = datetime.now,
        on_session: Callable[[PomodoroSession], None] | None = None,
    ) -> None:
        self._settings = settings or PomodoroSettings()
        self._clock = clock
        self._on_session = on_session
        self._state = PomodoroState()
        self.sessions: list[PomodoroSession] = []

    # ---- read access ----

    @property
    def settings(self) -> PomodoroSettings:
        return self._settings

    @property
    def state(self) -> PomodoroState:
        """A snapshot of the current state; mutating it has no effect."""
        return dataclasses.replace(self._state)

    @property
    def phase(self) -> PomodoroPhase:
        return self._state.phase

    @property
    def is_active(self) -> bool:
        return self._state.phase is not PomodoroPhase.IDLE

    def update_settings(self, **changes) -> PomodoroSettings:
        """Replace settings with validated values. A running countdown is not rescaled."""
        merged = {**self._settings.model_dump(), **changes}
        self._settings = PomodoroSettings.build(**merged)
        logger.info("Pomodoro settings updated: %s", self._settings.model_dump())
        return self._settings

    # ---- helpers ----

    def _result(self, sessions: list[PomodoroSession] | None = None) -> TransitionResult:
        return TransitionResult(
            accepted=True, phase=self._state.phase, sessions=sessions or [],
        )

    def _reject(self, operation: str) -> TransitionResult:
        error = InvalidTransitionError(operation, self._state.phase.value)
        logger.warning("Pomodoro: %s", error)
        return TransitionResult(accepted=False, phase=self._state.phase, error=error)

    def _duration_seconds(self, phase: PomodoroPhase) -> int:
        s = self._settings
        minutes = {
            PomodoroPhase.WORKING: s.work_duration,
            PomodoroPhase.SHORT_BREAK: s.short_break_duration,
            PomodoroPhase.LONG_BREAK: s.long_break_duration,
        }[phase]
        return minutes * 60

    def _enter_working(self) -> None:
        st = self._state
        st.phase = PomodoroPhase.WORKING
        st.remaining_seconds = self._duration_seconds(PomodoroPhase.WORKING)
        st.pending_break = None
        st.paused_phase = None
        st.session_started_at = self._clock()

    def _enter_break(self, phase: PomodoroPhase) -> None:
        st = self._state
        if phase is PomodoroPhase.LONG_BREAK:
            st.completed_since_long_break = 0
        st.phase = phase
        st.remaining_seconds = self._duration_seconds(phase)
        st.pending_break = None
        st.paused_phase = None
        st.session_started_at = None

    def _enter_idle(self, *, keep_task: bool) -> None:
        st = self._state
        st.phase = PomodoroPhase.IDLE
        st.remaining_seconds = 0
        st.paused_phase = None
        st.session_started_at = None
        if not keep_task:
            st.task_id = None
            st.pending_break = None

    def _record(self, *, completed: bool, notes: str = "") -> PomodoroSession:
        st = self._state
        now = self._clock()
        session = PomodoroSession(
            id=generate_id("pomo"),
            task_id=st.task_id or "",
            start_time=st.session_started_at or now,
            end_time=now,
            duration_minutes=self._settings.work_duration,
            completed=completed,
            interrupted=not completed,
            notes=notes,
        )
        self.sessions.append(session)
        logger.info(
            "Pomodoro session recorded for task %s (completed=%s)",
            session.task_id, completed,
        )
        if self._on_session is not None:
            self._on_session(session)
        return session

    def _complete_phase(self, recorded: list[PomodoroSession]) -> None:
        """Apply the completion rules when the countdown reaches zero."""
        st = self._state
        if st.phase is PomodoroPhase.WORKING:
            st.completed_since_long_break += 1
            recorded.append(self._record(completed=True))
            if st.completed_since_long_break % self._settings.sessions_until_long_break == 0:
                earned = PomodoroPhase.LONG_BREAK
            else:
                earned = PomodoroPhase.SHORT_BREAK

            if self._settings.auto_start_breaks:
                self._enter_break(earned)
            else:
                self._enter_idle(keep_task=True)
                st.pending_break = earned
            return

        # A break finished.
        if self._settings.auto_start_next_session and st.task_id:
            self._enter_working()
        else:
            self._enter_idle(keep_task=False)

    # ---- transitions ----

    def start(self, task_id: str) -> TransitionResult:
        """idle -> working. Rejected while any timer is active or paused."""
        if not task_id:
            raise ValidationError("A Pomodoro session needs a task id")
        if self._state.phase is not PomodoroPhase.IDLE:
            return self._reject("start")
        self._state.task_id = task_id
        self._enter_working()
        logger.info("Pomodoro started for task %s", task_id)
        return self._result()

    def start_break(self) -> TransitionResult:
        """idle with an earned break -> that break (when breaks are not auto-started)."""
        st = self._state
        if st.phase is not PomodoroPhase.IDLE or st.pending_break is None:
            return self._reject("start a break")
        self._enter_break(st.pending_break)
        return self._result()

    def pause(self) -> TransitionResult:
        st = self._state
        if not st.phase.is_running:
            return self._reject("pause")
        st.paused_phase = st.phase
        st.phase = PomodoroPhase.PAUSED
        return self._result()

    def resume(self) -> TransitionResult:
        st = self._state
        if st.phase is not PomodoroPhase.PAUSED or st.paused_phase is None:
            return self._reject("resume")
        st.phase = st.paused_phase
        st.paused_phase = None
        return self._result()

    def advance(self, elapsed_seconds: int = 1) -> TransitionResult:
        """Count down by ``elapsed_seconds``, applying every transition that fires.

        Seconds left over after a phase ends carry into the next phase when
        that phase starts automatically.
        """
        if elapsed_seconds < 0:
            raise ValidationError(f"elapsed_seconds must be >= 0, got {elapsed_seconds}")
        st = self._state
        if not st.phase.is_running:
            return self._reject("advance")

        recorded: list[PomodoroSession] = []
        left = elapsed_seconds
        while left > 0 and st.phase.is_running:
            step = min(left, st.remaining_seconds)
            st.remaining_seconds -= step
            left -= step
            if st.remaining_seconds == 0:
                previous = st.phase
                self._complete_phase(recorded)
                logger.debug("Pomodoro %s -> %s", previous.value, st.phase.value)
        return self._result(recorded)

    def stop(self, log_partial_session: bool = False, reason: str = "") -> TransitionResult:
        """Any non-idle phase -> idle. Optionally logs the interrupted work session.

        While idle, stop() only discards an earned break that was never started.
        """
        st = self._state
        if st.phase is PomodoroPhase.IDLE:
            if st.pending_break is None:
                return self._reject("stop")
            logger.info("Pomodoro pending %s discarded", st.pending_break.value)
            self._enter_idle(keep_task=False)
            return self._result()

        recorded: list[PomodoroSession] = []
        in_work = st.phase is PomodoroPhase.WORKING or st.paused_phase is PomodoroPhase.WORKING
        if log_partial_session and in_work:
            recorded.append(self._record(completed=False, notes=reason))
        logger.info("Pomodoro stopped (%s)", reason or "no reason")
        self._enter_idle(keep_task=False)
        return self._result(recorded)

    def skip_break(self) -> TransitionResult:
        """shortBreak | longBreak -> working, ignoring the auto-start policy."""
        if not self._state.phase.is_break:
            return self._reject("skip break")
        self._enter_working()
        return self._result()
