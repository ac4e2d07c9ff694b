"""Identifier generation: time-based base36 prefix plus a random suffix."""

from __future__ import annotations

import time
import uuid

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_id(prefix: str | None = None) -> str:
    """Return a globally unique id, e.g. "task-m1x2y3z4-9f3c1a2b7"."""
    stamp = _base36(time.time_ns() // 1_000_000)
    suffix = uuid.uuid4().hex[:12]
    if prefix:
        return f"{prefix}-{stamp}-{suffix}"
    return f"{stamp}-{suffix}"
