"""Outcomes for best-effort operations.

Anything that is a cache, an optimization or secondary bookkeeping (checkpoint
writes, rate-limit counters, lock upserts, HP restores) reports its result as
an ``Outcome`` instead of raising. Errors that guard hero exclusivity are
raised as ``RunError`` subclasses (see ``dungeon_runs.core.errors``).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class NonFatalError:
    operation: str
    message: str

    def __str__(self) -> str:
        return f"{self.operation}: {self.message}"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[NonFatalError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(True, value, None)

    @classmethod
    def failure(cls, operation: str, exc: BaseException | str) -> "Outcome[T]":
        return cls(False, None, NonFatalError(operation, str(exc)))
