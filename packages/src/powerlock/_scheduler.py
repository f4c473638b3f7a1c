"""Timer scheduling port and event-loop adapter.

Provides SchedulerPort (Protocol) and LoopScheduler for arming the
one-shot timers a lock controller owns (lock/unlock delays, auto-lock,
monitor polling).

Callbacks are plain synchronous callables invoked from the event
loop; anything asynchronous they need is spawned as a task by the
caller.  Tests inject :class:`powerlock.testing.FakeScheduler`,
whose ``advance()`` fires due callbacks without real waiting.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Protocol, runtime_checkable


@runtime_checkable
class TimerHandle(Protocol):
    """A pending scheduled callback that can be cancelled."""

    def cancel(self) -> None:
        """Prevent the callback from running.  No-op if it already ran."""
        ...


@runtime_checkable
class SchedulerPort(Protocol):
    """One-shot timer scheduling.

    The default implementation wraps ``loop.call_later()``.
    """

    def call_later(
        self,
        delay: float,
        callback: Callable[[], None],
    ) -> TimerHandle:
        """Run *callback* once after *delay* seconds.

        Returns:
            A handle whose ``cancel()`` prevents the callback.
        """
        ...


class LoopScheduler:
    """Production scheduler backed by the running asyncio loop.

    Satisfies :class:`SchedulerPort` via structural subtyping.
    ``asyncio.TimerHandle`` already satisfies :class:`TimerHandle`.
    """

    def call_later(
        self,
        delay: float,
        callback: Callable[[], None],
    ) -> TimerHandle:
        """Schedule *callback* on the running loop."""
        return asyncio.get_running_loop().call_later(delay, callback)
