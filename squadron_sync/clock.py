"""
Clock and wall-clock budget abstractions.

Everything that reads time or sleeps goes through a Clock so tests can
simulate a full run, including budget expiry, without real waiting.
"""

import time
from datetime import datetime, timezone


class Clock:
    """System clock: wall time for timestamps, monotonic time for budgets."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class RunBudget:
    """
    Wall-clock execution budget for one invocation.

    The budget is only consulted between operations; a remote call that is
    already in flight always completes.
    """

    def __init__(self, seconds: float, clock: Clock):
        self.seconds = seconds
        self.clock = clock
        self.started = clock.monotonic()

    def elapsed(self) -> float:
        return self.clock.monotonic() - self.started

    def expired(self) -> bool:
        return self.elapsed() >= self.seconds
