"""Durable text buffer for the generation in flight."""
from __future__ import annotations


class ResultAccumulator:
    """Append-only fragments plus a token counter.

    Not synchronized; the session controller only touches it under its lock.
    """

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._count = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def token_count(self) -> int:
        return self._count

    def reset(self) -> None:
        self._parts = []
        self._count = 0

    def append(self, fragment: str) -> int:
        self._parts.append(fragment)
        self._count += 1
        return self._count
