"""Per-lock state controller.

A :class:`LockController` owns one lock's current and target state,
its timers and its mode strategy.  Every state change, whatever its
trigger (user request, bus message, poll result, delay or auto-lock
expiry), is reconciled through :meth:`LockController.apply_external_state`
so idempotence and auto-lock re-arming live in one place.

State machine::

    SECURED ──request(False)──► UNSECURING ──unlock delay──► UNSECURED
       ▲                                                        │
       └──── lock delay ◄── SECURING ◄──────request(True)───────┘

Without a configured delay the intermediate phase is skipped.

Timer callbacks and background tasks capture the controller's
*generation* when they are created.  :meth:`LockController.cleanup`
bumps the generation, so anything created for a superseded
configuration is a no-op when it eventually fires.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from enum import StrEnum
from functools import partial
from typing import Any

from powerlock._command import CommandPort
from powerlock._host import DeviceHandle, HostPort, LockState
from powerlock._logging import LockLogger
from powerlock._modes import ModeStrategy, build_mode
from powerlock._mqtt import BusClientFactory
from powerlock._scheduler import SchedulerPort, TimerHandle
from powerlock._settings import LockConfig

logger = logging.getLogger(__name__)

_TIMERS = ("_lock_delay_timer", "_unlock_delay_timer", "_auto_lock_timer", "_poll_timer")


class LockPhase(StrEnum):
    """Externally visible phase derived from current and target state."""

    SECURED = "secured"
    SECURING = "securing"
    UNSECURED = "unsecured"
    UNSECURING = "unsecuring"


def _label(locked: bool) -> str:
    return "SECURED" if locked else "UNSECURED"


@dataclass(frozen=True)
class LockServices:
    """Collaborators shared by every controller."""

    host: HostPort
    scheduler: SchedulerPort
    runner: CommandPort
    bus_client_factory: BusClientFactory


class LockController:
    """Owns the state, timers and mode strategy of one lock.

    Constructing a controller reads the persisted state (default
    locked/locked) and reports it to the host; nothing is started until
    :meth:`start`.  Only committed states are persisted, and a stored
    pair caught mid-transition is settled on its current state.
    """

    def __init__(
        self,
        config: LockConfig,
        device: DeviceHandle,
        services: LockServices,
    ) -> None:
        self._config = config
        self._device = device
        self._services = services
        self._host = services.host
        self._scheduler = services.scheduler
        self._log = LockLogger(logger, config.name, config.logging)

        self._generation = 0
        self._lock_delay_timer: TimerHandle | None = None
        self._unlock_delay_timer: TimerHandle | None = None
        self._auto_lock_timer: TimerHandle | None = None
        self._poll_timer: TimerHandle | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

        persisted = self._host.read_persisted_state(device)
        state = persisted if persisted is not None else LockState()
        if state.target_locked != state.is_locked:
            # Delay timers do not survive a restart.
            self._log.info(
                "Dropping pending %s from persisted state",
                "lock" if state.target_locked else "unlock",
            )
            state = LockState(state.is_locked, state.is_locked)
        self._is_locked = state.is_locked
        self._target_locked = state.target_locked

        self._mode = self._build_mode()
        self._report_state()

    # -- Properties ---------------------------------------------------------

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def stable_id(self) -> str:
        return self._device.stable_id

    @property
    def device(self) -> DeviceHandle:
        return self._device

    @property
    def config(self) -> LockConfig:
        return self._config

    @property
    def mode(self) -> ModeStrategy:
        return self._mode

    @property
    def is_locked(self) -> bool:
        return self._is_locked

    @property
    def target_locked(self) -> bool:
        return self._target_locked

    @property
    def state(self) -> LockState:
        return LockState(is_locked=self._is_locked, target_locked=self._target_locked)

    @property
    def phase(self) -> LockPhase:
        if self._target_locked == self._is_locked:
            return LockPhase.SECURED if self._is_locked else LockPhase.UNSECURED
        return LockPhase.SECURING if self._target_locked else LockPhase.UNSECURING

    @property
    def pending_timers(self) -> frozenset[str]:
        """Names of the timers currently armed, e.g. ``{"auto_lock"}``."""
        return frozenset(
            attr.removeprefix("_").removesuffix("_timer")
            for attr in _TIMERS
            if getattr(self, attr) is not None
        )

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start the mode strategy and arm the poll timer if it polls."""
        generation = self._generation
        try:
            await self._mode.start()
        except Exception:
            self._log.exception("Failed to start %s mode", self._config.mode)
            return
        if generation == self._generation:
            self._arm_poll()

    async def configure(self, config: LockConfig) -> None:
        """Tear everything down and start again with *config*."""
        await self.cleanup()
        self._config = config
        self._log = LockLogger(logger, config.name, config.logging)
        self._mode = self._build_mode()
        self._log.debug("Reconfigured in %s mode", config.mode)
        await self.start()

    async def cleanup(self) -> None:
        """Cancel every timer and stop the mode strategy.

        Safe to call any number of times.  In-flight commands and
        publishes are left to finish; their completions are ignored.
        """
        self._generation += 1
        for attr in _TIMERS:
            self._cancel_timer(attr)
        self._poll_task = None
        try:
            await self._mode.stop()
        except Exception as exc:
            self._log.debug("Error during teardown ignored: %s", exc)

    async def drain(self) -> None:
        """Wait until all background side effects have completed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- State transitions --------------------------------------------------

    def request_target_state(self, desired_locked: bool) -> None:
        """Handle a user (or auto-lock) request for *desired_locked*."""
        if desired_locked == self._is_locked and desired_locked == self._target_locked:
            self._log.debug("Lock already %s", _label(desired_locked))
            return

        self._target_locked = desired_locked
        self._host.set_target_lock_state(self._device, desired_locked)

        self._cancel_timer("_lock_delay_timer")
        self._cancel_timer("_unlock_delay_timer")

        delay = self._config.lock_delay if desired_locked else self._config.unlock_delay
        if delay > 0:
            self._log.info(
                "%s in %gs", "Locking" if desired_locked else "Unlocking", delay
            )
            handle = self._scheduler.call_later(
                delay,
                partial(self._on_delay_expired, self._generation, desired_locked),
            )
            if desired_locked:
                self._lock_delay_timer = handle
            else:
                self._unlock_delay_timer = handle
        else:
            self._commit(desired_locked)

    def apply_external_state(
        self,
        observed_locked: bool,
        *,
        trigger_auto_lock: bool,
    ) -> None:
        """Reconcile to an observed or committed state.

        An observation matching both current and target state only
        logs at debug level.  When *trigger_auto_lock* is set, auto-lock
        is enabled and the lock is unlocked, the auto-lock countdown is
        (re)started; a locked state cancels it.
        """
        if observed_locked == self._is_locked and observed_locked == self._target_locked:
            self._log.debug("Lock already %s", _label(observed_locked))
        else:
            self._is_locked = observed_locked
            self._target_locked = observed_locked
            self._report_state()
            self._log.info("Lock is now %s", _label(observed_locked))

        if observed_locked:
            self._cancel_timer("_auto_lock_timer")
        elif trigger_auto_lock and self._config.auto_lock:
            self._arm_auto_lock()

    # -- Internal -----------------------------------------------------------

    def _build_mode(self) -> ModeStrategy:
        return build_mode(
            self._config,
            self,
            runner=self._services.runner,
            bus_client_factory=self._services.bus_client_factory,
            log=self._log,
            client_prefix=f"powerlock-{self._device.slug}",
        )

    def _report_state(self) -> None:
        self._host.set_current_lock_state(self._device, self._is_locked)
        self._host.set_target_lock_state(self._device, self._target_locked)
        self._host.write_persisted_state(self._device, self.state)

    def _commit(self, desired_locked: bool) -> None:
        generation = self._generation
        if self._mode.awaits_side_effect:
            self._spawn(self._perform_then_apply(generation, desired_locked))
        else:
            self.apply_external_state(desired_locked, trigger_auto_lock=True)
            self._spawn(self._perform(desired_locked))

    async def _perform(self, desired_locked: bool) -> None:
        try:
            if desired_locked:
                await self._mode.perform_lock()
            else:
                await self._mode.perform_unlock()
        except Exception:
            self._log.exception("%s side effect failed", _label(desired_locked))

    async def _perform_then_apply(self, generation: int, desired_locked: bool) -> None:
        await self._perform(desired_locked)
        if generation != self._generation:
            return
        if self._target_locked != desired_locked:
            self._log.debug("%s superseded by a newer request", _label(desired_locked))
            return
        self.apply_external_state(desired_locked, trigger_auto_lock=True)

    def _on_delay_expired(self, generation: int, desired_locked: bool) -> None:
        if generation != self._generation:
            return
        if desired_locked:
            self._lock_delay_timer = None
        else:
            self._unlock_delay_timer = None
        self._commit(desired_locked)

    def _arm_auto_lock(self) -> None:
        self._cancel_timer("_auto_lock_timer")
        delay = self._config.auto_lock_delay
        self._auto_lock_timer = self._scheduler.call_later(
            delay,
            partial(self._on_auto_lock, self._generation),
        )
        self._log.info("Auto-lock in %gs", delay)

    def _on_auto_lock(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._auto_lock_timer = None
        self._log.info("Auto-locking")
        self.request_target_state(True)

    def _arm_poll(self) -> None:
        self._cancel_timer("_poll_timer")
        interval = self._mode.poll_interval
        if interval is None:
            return
        self._poll_timer = self._scheduler.call_later(
            interval,
            partial(self._on_poll_tick, self._generation),
        )

    def _on_poll_tick(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._poll_timer = None
        if self._poll_task is not None and not self._poll_task.done():
            self._log.debug("Previous monitor run still in progress, skipping")
        else:
            self._poll_task = self._spawn(self._mode.poll())
        self._arm_poll()

    def _cancel_timer(self, attr: str) -> None:
        handle: TimerHandle | None = getattr(self, attr)
        if handle is not None:
            handle.cancel()
            setattr(self, attr, None)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error("Background task failed: %s", exc, exc_info=exc)

    def __repr__(self) -> str:
        return (
            f"LockController(name={self.name!r}, mode={self._config.mode!r}, "
            f"phase={self.phase.value!r})"
        )
