from __future__ import annotations

import time

from .errors import OperationTimeoutError


class PhaseTimer:
    """Deadline for one operation phase, checked between units of work.

    A phase started with ``child()`` also fails once its parent's budget is
    spent.
    """

    def __init__(self, phase: str, timeout_s: float, *, parent: "PhaseTimer | None" = None) -> None:
        self.phase = phase
        self.timeout_s = timeout_s
        self.parent = parent
        self.started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def expired(self) -> bool:
        return self.timeout_s > 0 and self.elapsed > self.timeout_s

    def check(self) -> None:
        if self.parent is not None:
            self.parent.check()
        if self.expired():
            raise OperationTimeoutError(self.phase, self.timeout_s)

    def child(self, phase: str, timeout_s: float) -> "PhaseTimer":
        self.check()
        return PhaseTimer(phase, timeout_s, parent=self)
