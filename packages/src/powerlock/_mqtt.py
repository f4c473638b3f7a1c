"""MQTT client port and adapters.

Provides MqttPort (Protocol) and two implementations:

- MqttClient — real aiomqtt-based client with reconnection
- MockMqttClient — test double that records calls

Used twice over: once for the host-facing connection that exposes all
locks, and once per bus-mode lock, each with its own connection to
that lock's broker.

Design decisions:

- aiomqtt imported lazily inside MqttClient._connection_loop() so the
  mock works without touching the network stack in tests
- Subscriptions tracked internally and restored on reconnect
- Reconnect delay doubles per consecutive failure up to
  ``reconnect_max_interval``
- MessageCallback dispatches (topic, payload) to registered handlers
- WillConfig abstracts LWT without leaking aiomqtt types
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from powerlock._settings import MqttSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Async callback receiving (topic, payload) for each inbound message."""

ConnectCallback = Callable[[], Awaitable[None]]
"""Async callback invoked after every (re)connection to the broker."""

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WillConfig:
    """Last-Will-and-Testament configuration.

    Abstracts ``aiomqtt.Will`` so that callers never depend on the
    aiomqtt package directly.
    """

    topic: str
    payload: str = "offline"
    qos: int = 1
    retain: bool = True


# ---------------------------------------------------------------------------
# Ports (Protocols)
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Port contract for MQTT publish/subscribe."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Adapters with an explicit connect/disconnect lifecycle."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


@runtime_checkable
class MqttMessageHandler(Protocol):
    """Adapters that deliver inbound messages to callbacks."""

    def on_message(self, callback: MessageCallback) -> None: ...


@runtime_checkable
class MqttConnectNotifier(Protocol):
    """Adapters that announce (re)connections.

    Retained state published before the first connection is lost, so
    publishers re-announce it from an ``on_connect`` callback.
    """

    def on_connect(self, callback: ConnectCallback) -> None: ...


@runtime_checkable
class BusClient(MqttPort, MqttLifecycle, MqttMessageHandler, Protocol):
    """Everything a bus-mode lock needs from its own connection."""


BusClientFactory = Callable[[MqttSettings], BusClient]
"""Builds one lock's bus connection from its connection settings."""

# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockMqttClient:
    """In-memory test double that records MQTT interactions.

    Records publishes, subscriptions and lifecycle calls for
    assertion.  Supports callback registration and simulated message
    delivery via ``deliver()``.  Setting ``publish_error`` makes every
    publish raise it, simulating a broker outage.
    """

    settings: MqttSettings | None = None
    published: list[tuple[str, str, bool, int]] = field(
        default_factory=list,
    )
    subscriptions: list[str] = field(default_factory=list)
    publish_error: Exception | None = None
    start_count: int = 0
    stop_count: int = 0
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _connect_callbacks: list[ConnectCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Record a publish call, or raise ``publish_error``."""
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((topic, payload, retain, qos))

    async def subscribe(self, topic: str) -> None:
        """Record a subscribe call."""
        self.subscriptions.append(topic)

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Record a start call and simulate an immediate connection."""
        self.start_count += 1
        await self.simulate_connect()

    async def stop(self) -> None:
        """Record a stop call."""
        self.stop_count += 1

    @property
    def is_running(self) -> bool:
        """Started more often than stopped."""
        return self.start_count > self.stop_count

    # -- Test helpers -------------------------------------------------------

    def on_message(self, callback: MessageCallback) -> None:
        """Register an inbound-message callback."""
        self._callbacks.append(callback)

    def on_connect(self, callback: ConnectCallback) -> None:
        """Register a (re)connection callback."""
        self._connect_callbacks.append(callback)

    async def simulate_connect(self) -> None:
        """Invoke all connection callbacks, as after a reconnect."""
        for cb in self._connect_callbacks:
            await cb()

    async def deliver(self, topic: str, payload: str) -> None:
        """Simulate an inbound message by invoking all callbacks."""
        for cb in self._callbacks:
            await cb(topic, payload)

    @property
    def publish_count(self) -> int:
        """Number of recorded publishes."""
        return len(self.published)

    def reset(self) -> None:
        """Clear all recorded data and callbacks."""
        self.published.clear()
        self.subscriptions.clear()
        self._callbacks.clear()
        self._connect_callbacks.clear()
        self.start_count = 0
        self.stop_count = 0

    def get_messages_for(
        self,
        topic: str,
    ) -> list[tuple[str, bool, int]]:
        """Return ``(payload, retain, qos)`` tuples for *topic*."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Production MQTT adapter backed by *aiomqtt*.

    Uses a background task that maintains a persistent connection
    with automatic reconnection.  Connection errors are logged and
    retried; they never propagate to callers of :meth:`start`.
    """

    settings: MqttSettings
    will: WillConfig | None = None

    # internal state --------------------------------------------------------
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _connect_callbacks: list[ConnectCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _subscriptions: set[str] = field(
        default_factory=set,
        init=False,
        repr=False,
    )
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish a message to the broker.

        Raises:
            RuntimeError: If the client is not connected.
        """
        if self._client is None:
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await self._client.publish(
            topic,
            payload,
            retain=retain,
            qos=qos,
        )
        logger.debug(
            "Published to %s (qos=%d, retain=%s)",
            topic,
            qos,
            retain,
        )

    async def subscribe(self, topic: str) -> None:
        """Subscribe to *topic*.

        The subscription is tracked internally so it can be made on
        connect and restored after a reconnection.
        """
        self._subscriptions.add(topic)
        if self._client is not None:
            await self._client.subscribe(
                topic,
                qos=self.settings.qos,
            )

    # -- Callback registration ---------------------------------------------

    def on_message(self, callback: MessageCallback) -> None:
        """Register a callback for inbound messages."""
        self._callbacks.append(callback)

    def on_connect(self, callback: ConnectCallback) -> None:
        """Register a callback run after every successful connection."""
        self._connect_callbacks.append(callback)

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start the background connection loop."""
        if self._listen_task is not None and not self._listen_task.done():
            logger.debug("MqttClient.start() called while already running")
            return
        self._stopping = False
        self._listen_task = asyncio.create_task(
            self._connection_loop(),
        )

    async def stop(self) -> None:
        """Stop the connection loop and disconnect.

        Idempotent — safe to call multiple times.
        """
        self._stopping = True
        if self._listen_task is not None:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None
        self._client = None
        self._connected.clear()

    @property
    def is_connected(self) -> bool:
        """Whether the client is currently connected to the broker."""
        return self._connected.is_set()

    # -- Internal -----------------------------------------------------------

    def _backoff(self, failures: int) -> float:
        """Reconnect delay after *failures* consecutive failures."""
        delay = self.settings.reconnect_interval * (2 ** max(failures - 1, 0))
        return min(delay, self.settings.reconnect_max_interval)

    async def _connection_loop(self) -> None:
        """Maintain a persistent connection with auto-reconnect."""
        import aiomqtt  # noqa: PLC0415

        failures = 0
        while not self._stopping:
            try:
                password: str | None = None
                if self.settings.password is not None:
                    password = self.settings.password.get_secret_value()

                will: aiomqtt.Will | None = None
                if self.will is not None:
                    will = aiomqtt.Will(
                        topic=self.will.topic,
                        payload=self.will.payload,
                        qos=self.will.qos,
                        retain=self.will.retain,
                    )

                async with aiomqtt.Client(
                    hostname=self.settings.host,
                    port=self.settings.port,
                    username=self.settings.username,
                    password=password,
                    identifier=self.settings.client_id or None,
                    will=will,
                ) as client:
                    self._client = client
                    try:
                        for topic in list(self._subscriptions):
                            await client.subscribe(
                                topic,
                                qos=self.settings.qos,
                            )

                        self._connected.set()
                        failures = 0
                        logger.info(
                            "MQTT connected to %s:%d",
                            self.settings.host,
                            self.settings.port,
                        )
                        await self._notify_connected()

                        async for message in client.messages:
                            await self._dispatch(message)
                    finally:
                        self._connected.clear()
                        self._client = None

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failures += 1
                delay = self._backoff(failures)
                if "not authorized" in str(exc).lower():
                    logger.error(
                        "MQTT authentication failed for %s:%d, check "
                        "username/password; retrying in %.1fs",
                        self.settings.host,
                        self.settings.port,
                        delay,
                    )
                else:
                    logger.warning(
                        "MQTT connection to %s:%d lost, reconnecting in %.1fs",
                        self.settings.host,
                        self.settings.port,
                        delay,
                        exc_info=True,
                    )
                await asyncio.sleep(delay)

    async def _notify_connected(self) -> None:
        for cb in self._connect_callbacks:
            try:
                await cb()
            except Exception:
                logger.exception("Error in connect callback")

    async def _dispatch(self, message: Any) -> None:
        """Decode and fan-out an inbound message to callbacks."""
        topic = str(message.topic)

        if message.payload is None:
            logger.debug(
                "Skipping message with None payload on %s",
                topic,
            )
            return

        if isinstance(message.payload, (bytes, bytearray)):
            try:
                payload = message.payload.decode("utf-8")
            except UnicodeDecodeError:
                logger.debug("Skipping non-UTF-8 payload on %s", topic)
                return
        else:
            payload = str(message.payload)

        for cb in self._callbacks:
            try:
                await cb(topic, payload)
            except Exception:
                logger.exception(
                    "Error in message callback for %s",
                    topic,
                )
