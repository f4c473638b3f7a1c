"""Mode strategies: how a lock observes and drives the outside world.

Three interchangeable strategies share the :class:`ModeStrategy`
contract and are selected once per configuration by
:func:`build_mode`:

- :class:`BusSyncedMode` — one MQTT connection per lock; inbound
  messages on the subscribe topic are observations, lock/unlock
  publish literal messages.
- :class:`PolledCommandMode` — a monitor command is run on every poll
  tick; lock/unlock run shell commands.
- :class:`StandaloneMode` — purely virtual, no side effects.

Strategies never raise transport errors to the controller.  A
strategy whose settings are incomplete logs a warning and behaves
like :class:`StandaloneMode`.

Observations are reported back through the :class:`StateObserver`
(the controller) with ``trigger_auto_lock=False``: only user
requests restart the auto-lock countdown.
"""

from __future__ import annotations

import logging
import uuid
from typing import Protocol, runtime_checkable

from powerlock._command import CommandPort
from powerlock._mqtt import BusClient, BusClientFactory
from powerlock._settings import BusSettings, CommandSettings, LockConfig

POLL_TOKENS: dict[str, bool] = {
    "open": False,
    "unsecured": False,
    "closed": True,
    "secured": True,
}
"""Monitor output (trimmed, lower-cased) → observed lock state."""


@runtime_checkable
class StateObserver(Protocol):
    """Receiver of external lock state observations."""

    @property
    def is_locked(self) -> bool: ...

    def apply_external_state(
        self,
        observed_locked: bool,
        *,
        trigger_auto_lock: bool,
    ) -> None: ...


@runtime_checkable
class ModeStrategy(Protocol):
    """Contract shared by all lock modes.

    ``awaits_side_effect`` tells the controller whether to commit the
    new state only after ``perform_*`` completes (``True``) or
    immediately (``False``).  ``poll_interval`` is ``None`` for modes
    that do not poll.
    """

    awaits_side_effect: bool

    @property
    def poll_interval(self) -> float | None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def perform_lock(self) -> None: ...

    async def perform_unlock(self) -> None: ...

    async def poll(self) -> None: ...


class StandaloneMode:
    """Virtual lock: every operation completes immediately."""

    awaits_side_effect = False

    def __init__(self, log: logging.LoggerAdapter | None = None) -> None:  # type: ignore[type-arg]
        self._log = log

    @property
    def poll_interval(self) -> float | None:
        return None

    async def start(self) -> None:
        if self._log is not None:
            self._log.info("Running in standalone mode")

    async def stop(self) -> None:
        pass

    async def perform_lock(self) -> None:
        pass

    async def perform_unlock(self) -> None:
        pass

    async def poll(self) -> None:
        pass


class BusSyncedMode:
    """Lock mirrored over its own MQTT connection.

    State changes are committed optimistically: ``perform_*`` only
    publishes, and a failed publish is logged without rolling back.
    """

    awaits_side_effect = False

    def __init__(
        self,
        settings: BusSettings | None,
        observer: StateObserver,
        client_factory: BusClientFactory,
        log: logging.LoggerAdapter,  # type: ignore[type-arg]
        *,
        client_prefix: str = "powerlock",
    ) -> None:
        self._settings = settings
        self._observer = observer
        self._factory = client_factory
        self._log = log
        self._client_prefix = client_prefix
        self._client: BusClient | None = None
        self._active = False

    @property
    def poll_interval(self) -> float | None:
        return None

    @property
    def client(self) -> BusClient | None:
        """The live connection, ``None`` when stopped or degraded."""
        return self._client

    async def start(self) -> None:
        settings = self._settings
        if settings is None or not settings.broker or not settings.subscribe_topic:
            self._log.warning(
                "Bus settings incomplete (broker and subscribe topic "
                "required), running as standalone"
            )
            return

        client_id = f"{self._client_prefix}-{uuid.uuid4().hex[:8]}"
        client = self._factory(settings.connection_settings(client_id=client_id))
        client.on_message(self._on_message)
        self._client = client
        self._active = True
        await client.subscribe(settings.subscribe_topic)
        await client.start()
        self._log.info(
            "Connecting to MQTT broker %s, subscribed to %s",
            settings.broker,
            settings.subscribe_topic,
        )

    async def stop(self) -> None:
        self._active = False
        client, self._client = self._client, None
        if client is not None:
            await client.stop()
            self._log.debug("Disconnected from MQTT broker")

    async def perform_lock(self) -> None:
        if self._settings is not None:
            await self._publish(self._settings.publish_close_message)

    async def perform_unlock(self) -> None:
        if self._settings is not None:
            await self._publish(self._settings.publish_open_message)

    async def poll(self) -> None:
        pass

    async def _publish(self, message: str) -> None:
        if self._client is None or self._settings is None:
            return
        topic = self._settings.publish_topic
        if not topic:
            return
        try:
            await self._client.publish(topic, message, qos=1)
        except Exception as exc:
            self._log.error("Failed to publish MQTT message %r: %s", message, exc)
        else:
            self._log.debug("Published MQTT message %r to %s", message, topic)

    async def _on_message(self, topic: str, payload: str) -> None:
        settings = self._settings
        if not self._active or settings is None or topic != settings.subscribe_topic:
            return
        if payload == settings.open_message:
            self._log.debug("Received MQTT open message")
            self._observer.apply_external_state(False, trigger_auto_lock=False)
        elif payload == settings.close_message:
            self._log.debug("Received MQTT close message")
            self._observer.apply_external_state(True, trigger_auto_lock=False)
        else:
            self._log.debug("Ignoring MQTT message %r on %s", payload, topic)


class PolledCommandMode:
    """Lock driven by shell commands and a periodic monitor command.

    The controller waits for ``perform_*`` before committing the new
    state, but commits regardless of the command's outcome.
    """

    awaits_side_effect = True

    def __init__(
        self,
        settings: CommandSettings | None,
        observer: StateObserver,
        runner: CommandPort,
        log: logging.LoggerAdapter,  # type: ignore[type-arg]
    ) -> None:
        self._settings = settings
        self._observer = observer
        self._runner = runner
        self._log = log
        self._active = False

    @property
    def degraded(self) -> bool:
        settings = self._settings
        return (
            settings is None
            or not settings.monitor_command
            or settings.monitor_interval <= 0
        )

    @property
    def poll_interval(self) -> float | None:
        if self.degraded or self._settings is None:
            return None
        return self._settings.monitor_interval

    async def start(self) -> None:
        if self.degraded:
            self._log.warning(
                "Command settings incomplete (monitor command and positive "
                "interval required), running as standalone"
            )
            return
        self._active = True
        self._log.info(
            "Command mode initialized with monitor interval of %gs",
            self.poll_interval,
        )

    async def stop(self) -> None:
        self._active = False

    async def perform_lock(self) -> None:
        if self._settings is not None:
            await self._execute(self._settings.close_command, "close command")

    async def perform_unlock(self) -> None:
        if self._settings is not None:
            await self._execute(self._settings.open_command, "open command")

    async def poll(self) -> None:
        """Run the monitor command once and report a changed state."""
        if not self._active or self._settings is None:
            return
        result = await self._runner.run(self._settings.monitor_command)
        if not self._active:
            return
        if result.stderr.strip():
            self._log.error("Monitor command error output: %s", result.stderr.strip())
        if result.failed:
            self._log.error("Monitor command failed: %s", result.describe_failure())
            return

        output = result.stdout.strip().lower()
        observed = POLL_TOKENS.get(output)
        if observed is None:
            self._log.debug("Ignoring unrecognised monitor output %r", output)
            return
        if observed == self._observer.is_locked:
            self._log.debug("No state change detected from monitor command")
            return
        self._log.info(
            "Monitor detected lock is now %s",
            "SECURED" if observed else "UNSECURED",
        )
        self._observer.apply_external_state(observed, trigger_auto_lock=False)

    async def _execute(self, command: str, label: str) -> None:
        if not command:
            self._log.error("No %s configured", label)
            return
        result = await self._runner.run(command)
        if result.stdout.strip():
            self._log.debug("%s output: %s", label, result.stdout.strip())
        if result.failed:
            self._log.error("%s failed: %s", label, result.describe_failure())
        elif result.stderr.strip():
            self._log.error("%s error output: %s", label, result.stderr.strip())


def build_mode(
    config: LockConfig,
    observer: StateObserver,
    *,
    runner: CommandPort,
    bus_client_factory: BusClientFactory,
    log: logging.LoggerAdapter,  # type: ignore[type-arg]
    client_prefix: str = "powerlock",
) -> ModeStrategy:
    """Select the strategy for *config*'s mode."""
    if config.mode == "bus":
        return BusSyncedMode(
            config.bus,
            observer,
            bus_client_factory,
            log,
            client_prefix=client_prefix,
        )
    if config.mode == "command":
        return PolledCommandMode(config.command, observer, runner, log)
    return StandaloneMode(log)
