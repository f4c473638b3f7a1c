"""Deterministic fake scheduler for testing.

Satisfies SchedulerPort (PEP 544 structural subtyping) with a manually
advanced time value — no real waiting and no event loop required.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass(eq=False)
class FakeTimer:
    """Handle returned by :meth:`FakeScheduler.call_later`."""

    when: float
    seq: int
    callback: Callable[[], None] = field(repr=False)
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class FakeScheduler:
    """Test double for SchedulerPort.

    Callbacks run synchronously from :meth:`advance`, in due-time
    order (ties in scheduling order).  Callbacks scheduled while
    advancing fire in the same call if they fall due within the
    advanced window.

    Example::

        scheduler = FakeScheduler()
        fired = []
        scheduler.call_later(5, lambda: fired.append("x"))
        scheduler.advance(4.9)
        assert fired == []
        scheduler.advance(0.1)
        assert fired == ["x"]
    """

    _time: float = 0.0
    _timers: list[FakeTimer] = field(default_factory=list, init=False, repr=False)
    _seq: int = field(default=0, init=False, repr=False)

    def now(self) -> float:
        """Return the current fake time."""
        return self._time

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        self._seq += 1
        timer = FakeTimer(when=self._time + max(delay, 0.0), seq=self._seq, callback=callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        """Timers neither fired nor cancelled, in due order."""
        return sorted(
            (t for t in self._timers if not t.cancelled),
            key=lambda t: (t.when, t.seq),
        )

    def advance(self, seconds: float) -> int:
        """Move time forward, firing due callbacks.  Returns the count fired."""
        target = self._time + seconds
        fired = 0
        while True:
            due = [t for t in self.pending if t.when <= target]
            if not due:
                break
            timer = due[0]
            self._timers.remove(timer)
            self._time = timer.when
            timer.fired = True
            timer.callback()
            fired += 1
        self._time = target
        self._timers = [t for t in self._timers if not t.cancelled]
        return fired
