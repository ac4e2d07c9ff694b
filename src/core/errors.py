"""Error taxonomy for the task engine.

Callers can tell caller-correctable input (ValidationError) apart from
storage failures (PersistenceError). Unknown ids are not errors: update
and delete report them as a False / None result.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all task engine errors."""


class ValidationError(EngineError):
    """Raised for caller-correctable input: empty title, bad interval, bad config."""


class PersistenceError(EngineError):
    """Raised when the underlying row store fails (I/O, constraint violation)."""


class InvalidTransitionError(EngineError):
    """A Pomodoro operation that is not valid from the current phase.

    Returned inside a TransitionResult, never raised out of a transition.
    """

    def __init__(self, operation: str, phase: str) -> None:
        super().__init__(f"Cannot {operation} while {phase}")
        self.operation = operation
        self.phase = phase
