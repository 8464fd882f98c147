"""Timer scheduling for reconnect backoff.

The engine client never calls ``asyncio.sleep`` for backoff directly; it asks a
scheduler for a delayed callback so tests can substitute a manual clock.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    """Handle returned by a scheduler."""

    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Anything that can run a callback after a delay in seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class LoopScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, callback)


@dataclass
class ScheduledRetry:
    """A single pending reconnect attempt."""

    attempt: int
    delay: float
    phase: str
    handle: Optional[TimerHandle] = field(default=None, repr=False)
    cancelled: bool = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self.handle is not None:
            self.handle.cancel()
