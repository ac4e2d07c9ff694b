"""Persistence port — abstract interface to the local row store.

The repository depends on this protocol, never on a specific storage engine.
Implementations raise PersistenceError on any storage failure.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

Row = Mapping[str, Any]
Statement = tuple[str, Sequence[Any]]


class PersistencePort(Protocol):
    """Async row-store interface used by TaskRepository."""

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int: ...

    async def execute_many(self, statements: Sequence[Statement]) -> int: ...

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[Row]: ...
