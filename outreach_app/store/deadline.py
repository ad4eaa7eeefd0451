"""
Per-reconciliation deadlines.

The reconciler opens a :func:`deadline_scope`; the store client checks the
active deadline before every request attempt and before every sleep, so a
degraded store aborts the reconciliation instead of holding its identity
lease indefinitely.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Callable, Iterator


class DeadlineExceeded(RuntimeError):
    """Raised when a reconciliation runs past its deadline."""

    def __init__(self, operation: str, *, budget_seconds: float):
        super().__init__(f"Deadline of {budget_seconds:.1f}s exceeded before {operation}")
        self.operation = operation
        self.budget_seconds = budget_seconds


@dataclass
class Deadline:
    budget_seconds: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    started_at: float = field(default=0.0)

    def __post_init__(self) -> None:
        if not self.started_at:
            self.started_at = self.clock()

    @property
    def expires_at(self) -> float:
        return self.started_at + self.budget_seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    @property
    def expired(self) -> bool:
        return self.clock() >= self.expires_at

    def check(self, operation: str) -> None:
        if self.expired:
            raise DeadlineExceeded(operation, budget_seconds=self.budget_seconds)


_current_deadline: ContextVar[Deadline | None] = ContextVar("outreach_reconcile_deadline", default=None)


def current_deadline() -> Deadline | None:
    return _current_deadline.get()


@contextmanager
def deadline_scope(deadline: Deadline | None) -> Iterator[Deadline | None]:
    token = _current_deadline.set(deadline)
    try:
        yield deadline
    finally:
        _current_deadline.reset(token)


def check_deadline(operation: str) -> None:
    deadline = _current_deadline.get()
    if deadline is not None:
        deadline.check(operation)


def bounded_sleep(seconds: float, operation: str, sleep: Callable[[float], None] = time.sleep) -> None:
    """Sleep unless doing so would carry the caller past its deadline."""

    if seconds <= 0:
        return
    deadline = _current_deadline.get()
    if deadline is not None and deadline.remaining() < seconds:
        raise DeadlineExceeded(operation, budget_seconds=deadline.budget_seconds)
    sleep(seconds)
