"""
Cooperative cancellation for a running session.

The controller owns one CancelToken per run. Long-running work checks it
between steps (model turns, tool calls, issues) and shell commands poll it
while they wait, so a stop or a deadline lands within one step.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

STOPPED = "stopped"
TIMEOUT = "timeout"


class AttemptAbandoned(Exception):
    """In-flight work was abandoned because the session was stopped or timed out."""

    def __init__(self, reason: str):
        super().__init__(f"Attempt abandoned: {reason}")
        self.reason = reason


class CancelToken:
    def __init__(self, deadline: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.deadline = deadline
        self.clock = clock
        self._stopped = threading.Event()

    def stop(self) -> None:
        self._stopped.set()

    @property
    def reason(self) -> str | None:
        if self._stopped.is_set():
            return STOPPED
        if self.deadline is not None and self.clock() >= self.deadline:
            return TIMEOUT
        return None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def check(self) -> None:
        reason = self.reason
        if reason is not None:
            raise AttemptAbandoned(reason)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self.clock())
