"""Application orchestrator for powerlock.

:class:`PowerLockApp` is the composition root: it builds the MQTT host
surface, the state store and the lock registry, runs discovery, and
tears everything down on shutdown.

Typical usage::

    from powerlock import PowerLockApp

    PowerLockApp(version="0.3.0").run()

Signals:

- ``SIGTERM`` / ``SIGINT`` — graceful shutdown
- ``SIGHUP`` — reload settings and run a new discovery pass; existing
  locks are reconfigured in place
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import uuid
from collections.abc import Callable
from functools import partial

from pydantic import ValidationError

from powerlock._command import CommandPort, ShellCommandRunner
from powerlock._controller import LockServices
from powerlock._host import MqttHost
from powerlock._logging import configure_logging
from powerlock._mqtt import (
    BusClient,
    BusClientFactory,
    MqttClient,
    MqttConnectNotifier,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    WillConfig,
)
from powerlock._registry import LockRegistry
from powerlock._scheduler import LoopScheduler, SchedulerPort
from powerlock._settings import MqttSettings, Settings, load_lock_configs, load_settings
from powerlock._store import StateStore

logger = logging.getLogger(__name__)

SettingsLoader = Callable[[], Settings]


def default_bus_client(settings: MqttSettings) -> BusClient:
    """Build the real per-lock bus connection."""
    return MqttClient(settings=settings)


class PowerLockApp:
    """Virtual lock service exposed over MQTT.

    Args:
        name: Service name, used for logging and the default topic
            prefix and client id.
        version: Service version reported by ``--version`` and in logs.
        description: One-line description shown in ``--help``.
        settings_class: :class:`Settings` subclass to load.
    """

    def __init__(
        self,
        name: str = "powerlock",
        version: str = "0.0.0",
        *,
        description: str = "Virtual locks synchronised over MQTT or shell commands",
        settings_class: type[Settings] = Settings,
    ) -> None:
        self._name = name
        self._version = version
        self._description = description
        self._settings_class = settings_class

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> str:
        return self._version

    # --- Lifecycle ---------------------------------------------------------

    def run(
        self,
        *,
        settings: Settings | None = None,
        mqtt: MqttPort | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Start the service (blocking, synchronous entrypoint).

        All parameters are optional and intended for programmatic or
        test use.
        """
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(
                    settings=settings,
                    mqtt=mqtt,
                    shutdown_event=shutdown_event,
                ),
            )

    def cli(self) -> None:
        """Start the service with CLI argument parsing."""
        from powerlock._cli import build_cli

        cli = build_cli(self)
        cli(standalone_mode=True)

    async def _run_async(
        self,
        *,
        settings: Settings | None = None,
        settings_loader: SettingsLoader | None = None,
        mqtt: MqttPort | None = None,
        bus_client_factory: BusClientFactory | None = None,
        runner: CommandPort | None = None,
        scheduler: SchedulerPort | None = None,
        store: StateStore | None = None,
        shutdown_event: asyncio.Event | None = None,
        reload_event: asyncio.Event | None = None,
        ready_event: asyncio.Event | None = None,
    ) -> None:
        """Async orchestration.

        Orchestration order:

        1. Bootstrap (settings, logging, MQTT, state store, host).
        2. Discovery pass over the configured locks.
        3. Wait for shutdown; on reload, rediscover with fresh settings.
        4. Tear down (locks, host availability, store, MQTT).

        Every collaborator can be injected for tests.  *ready_event*
        is set after every discovery pass (initial and reload).
        """
        # --- Phase 1: Bootstrap ---
        loader = settings_loader or partial(load_settings, self._settings_class)
        resolved_settings = settings if settings is not None else loader()
        prefix = resolved_settings.mqtt.topic_prefix or self._name
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )

        mqtt = self._create_mqtt(mqtt, resolved_settings, prefix)
        store = store if store is not None else StateStore(resolved_settings.state_db)
        await store.initialize()

        host = MqttHost(mqtt, store, topic_prefix=prefix)
        await host.load()
        if isinstance(mqtt, MqttMessageHandler):
            mqtt.on_message(host.route)
        if isinstance(mqtt, MqttLifecycle):
            await mqtt.start()
        if not isinstance(mqtt, MqttConnectNotifier):
            await host.announce()

        services = LockServices(
            host=host,
            scheduler=scheduler if scheduler is not None else LoopScheduler(),
            runner=runner if runner is not None else ShellCommandRunner(),
            bus_client_factory=(
                bus_client_factory if bus_client_factory is not None else default_bus_client
            ),
        )
        registry = LockRegistry(services)
        shutdown_event, reload_event = self._install_signal_handlers(
            shutdown_event, reload_event
        )

        try:
            # --- Phase 2: Discovery ---
            await registry.discover(load_lock_configs(resolved_settings.locks))
            logger.info(
                "%s v%s running with %d lock(s)",
                self._name,
                self._version,
                len(registry),
            )
            if ready_event is not None:
                ready_event.set()

            # --- Phase 3: Run ---
            while not await self._wait_for_signal(shutdown_event, reload_event):
                reload_event.clear()
                try:
                    resolved_settings = loader()
                except (ValidationError, OSError, ValueError) as exc:
                    logger.error("Reload failed, keeping current configuration: %s", exc)
                else:
                    logger.info("Reloading lock configuration")
                    await registry.discover(load_lock_configs(resolved_settings.locks))
                if ready_event is not None:
                    ready_event.set()
        finally:
            # --- Phase 4: Tear down ---
            await registry.shutdown()
            await host.shutdown()
            await store.close()
            if isinstance(mqtt, MqttLifecycle):
                await mqtt.stop()

        logger.info("Shutdown complete")

    # --- _run_async helpers ------------------------------------------------

    def _create_mqtt(
        self,
        mqtt: MqttPort | None,
        resolved_settings: Settings,
        prefix: str,
    ) -> MqttPort:
        """Create the host MQTT client, or return the injected one.

        When no explicit ``client_id`` is configured, generates one
        from the app name and a short random suffix.
        """
        if mqtt is not None:
            return mqtt
        mqtt_settings = resolved_settings.mqtt
        if not mqtt_settings.client_id:
            generated_id = f"{self._name}-{uuid.uuid4().hex[:8]}"
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": generated_id},
            )
        will = WillConfig(topic=f"{prefix}/status")
        return MqttClient(settings=mqtt_settings, will=will)

    @staticmethod
    def _install_signal_handlers(
        shutdown_event: asyncio.Event | None,
        reload_event: asyncio.Event | None,
    ) -> tuple[asyncio.Event, asyncio.Event]:
        """Install SIGTERM/SIGINT (shutdown) and SIGHUP (reload) handlers.

        Handlers are only installed for events that were not injected.
        """
        loop = asyncio.get_running_loop()
        if shutdown_event is None:
            shutdown_event = asyncio.Event()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, shutdown_event.set)
        if reload_event is None:
            reload_event = asyncio.Event()
            if hasattr(signal, "SIGHUP"):
                loop.add_signal_handler(signal.SIGHUP, reload_event.set)
        return shutdown_event, reload_event

    @staticmethod
    async def _wait_for_signal(
        shutdown_event: asyncio.Event,
        reload_event: asyncio.Event,
    ) -> bool:
        """Block until shutdown or reload is requested.

        Returns ``True`` for shutdown (which wins if both are set).
        """
        if not shutdown_event.is_set() and not reload_event.is_set():
            waiters = [
                asyncio.create_task(shutdown_event.wait()),
                asyncio.create_task(reload_event.wait()),
            ]
            try:
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in waiters:
                    task.cancel()
                await asyncio.gather(*waiters, return_exceptions=True)
        return shutdown_event.is_set()
