"""Accessory host port and its MQTT realisation.

The controller only needs a handful of primitives from the host that
exposes locks to users: register a device, read/write its persisted
state, report current and target lock state, and be told when a user
asks for a different target state.  :class:`HostPort` captures that
contract; :class:`MqttHost` implements it over MQTT with state
persisted in a :class:`~powerlock._store.StateStore`.

Topic layout::

    {prefix}/status                  ← "online" / LWT "offline" (retained)
    {prefix}/{lock}/current          ← SECURED | UNSECURED (retained)
    {prefix}/{lock}/target           ← SECURED | UNSECURED (retained)
    {prefix}/{lock}/availability     ← online | offline (retained)
    {prefix}/{lock}/set              → LOCK | UNLOCK (and synonyms)

Publication is fire-and-forget: failures are logged and the last
known values are re-announced on every broker (re)connection.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from powerlock._mqtt import MqttConnectNotifier, MqttPort

if TYPE_CHECKING:
    from powerlock._store import StateStore

logger = logging.getLogger(__name__)

LOCK_NAMESPACE = uuid.UUID("6f1d9a3e-52c4-4f7b-9a0e-3c8b1d2e4f60")

SECURED = "SECURED"
UNSECURED = "UNSECURED"

_LOCK_PAYLOADS = frozenset({"LOCK", "SECURED", "1", "TRUE", "ON"})
_UNLOCK_PAYLOADS = frozenset({"UNLOCK", "UNSECURED", "0", "FALSE", "OFF"})

TargetStateHandler = Callable[[bool], None]
"""Invoked with the requested lock state when a user writes a target."""

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LockState:
    """Current and target lock state of one lock."""

    is_locked: bool = True
    target_locked: bool = True

    def to_dict(self) -> dict[str, bool]:
        return {"is_locked": self.is_locked, "target_locked": self.target_locked}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LockState:
        """Build from a mapping; raises ``KeyError``/``TypeError`` if malformed."""
        is_locked = data["is_locked"]
        target_locked = data["target_locked"]
        if not isinstance(is_locked, bool) or not isinstance(target_locked, bool):
            msg = "lock state fields must be booleans"
            raise TypeError(msg)
        return cls(is_locked=is_locked, target_locked=target_locked)


@dataclass(eq=False)
class DeviceHandle:
    """A lock device registered with the host.

    ``cached`` is true for devices restored from persisted state
    rather than created during this run.
    """

    name: str
    stable_id: str
    slug: str
    cached: bool = False
    context: dict[str, Any] = field(default_factory=dict)


def stable_id_for(name: str) -> str:
    """Deterministic identifier for a lock name."""
    return str(uuid.uuid5(LOCK_NAMESPACE, name))


def topic_slug(name: str) -> str:
    """Lower-case, MQTT-safe topic segment for a lock name.

    >>> topic_slug("Front Door")
    'front-door'
    """
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "lock"


def parse_target_payload(payload: str) -> bool | None:
    """Map a ``/set`` payload to the requested lock state.

    Returns ``None`` for anything unrecognised.
    """
    token = payload.strip().upper()
    if token in _LOCK_PAYLOADS:
        return True
    if token in _UNLOCK_PAYLOADS:
        return False
    return None


def _state_payload(locked: bool) -> str:
    return SECURED if locked else UNSECURED


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------


@runtime_checkable
class HostPort(Protocol):
    """What a lock controller consumes from the accessory host."""

    def get_or_create_device(self, name: str, stable_id: str) -> DeviceHandle: ...

    def read_persisted_state(self, device: DeviceHandle) -> LockState | None: ...

    def write_persisted_state(self, device: DeviceHandle, state: LockState) -> None: ...

    def set_current_lock_state(self, device: DeviceHandle, locked: bool) -> None: ...

    def set_target_lock_state(self, device: DeviceHandle, locked: bool) -> None: ...

    def on_target_state_write_requested(
        self,
        device: DeviceHandle,
        handler: TargetStateHandler,
    ) -> None: ...

    def devices(self) -> list[DeviceHandle]: ...


# ---------------------------------------------------------------------------
# MQTT implementation
# ---------------------------------------------------------------------------


class MqttHost:
    """Expose locks over MQTT and persist their state.

    Call :meth:`load` once before registering devices so that cached
    devices from the state store are known, then :meth:`announce` once
    the MQTT client is started.  :meth:`route` is the inbound message
    callback; :meth:`shutdown` publishes offline availability and
    flushes pending writes.
    """

    def __init__(
        self,
        mqtt: MqttPort,
        store: StateStore | None = None,
        *,
        topic_prefix: str = "powerlock",
    ) -> None:
        self._mqtt = mqtt
        self._store = store
        self._prefix = topic_prefix
        self._devices: dict[str, DeviceHandle] = {}
        self._by_slug: dict[str, DeviceHandle] = {}
        self._handlers: dict[str, TargetStateHandler] = {}
        self._persisted: dict[str, LockState] = {}
        self._current: dict[str, bool] = {}
        self._target: dict[str, bool] = {}
        self._online: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        if isinstance(mqtt, MqttConnectNotifier):
            mqtt.on_connect(self.announce)

    @property
    def status_topic(self) -> str:
        return f"{self._prefix}/status"

    @property
    def set_subscription(self) -> str:
        return f"{self._prefix}/+/set"

    def topic(self, device: DeviceHandle, leaf: str) -> str:
        return f"{self._prefix}/{device.slug}/{leaf}"

    # -- Startup / shutdown -------------------------------------------------

    async def load(self) -> None:
        """Register the cached devices found in the state store."""
        if self._store is None:
            return
        for stable_id, stored in (await self._store.load_all()).items():
            self._register(stored.name, stable_id, cached=True)
            self._persisted[stable_id] = stored.state
        logger.debug("Loaded %d cached lock(s)", len(self._devices))

    async def announce(self) -> None:
        """Subscribe to ``/set`` and (re)publish all known state."""
        await self._mqtt.subscribe(self.set_subscription)
        await self._safe_publish(self.status_topic, "online")
        for stable_id in list(self._online):
            device = self._devices[stable_id]
            await self._safe_publish(self.topic(device, "availability"), "online")
        for stable_id, locked in list(self._current.items()):
            device = self._devices[stable_id]
            await self._safe_publish(
                self.topic(device, "current"), _state_payload(locked)
            )
        for stable_id, locked in list(self._target.items()):
            device = self._devices[stable_id]
            await self._safe_publish(
                self.topic(device, "target"), _state_payload(locked)
            )

    async def flush(self) -> None:
        """Wait for all pending publishes and state writes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Mark every lock and the service offline, then flush."""
        await self.flush()
        for stable_id in sorted(self._online):
            device = self._devices[stable_id]
            await self._safe_publish(self.topic(device, "availability"), "offline")
        self._online.clear()
        await self._safe_publish(self.status_topic, "offline")
        await self.flush()
        self._closed = True

    # -- HostPort -----------------------------------------------------------

    def get_or_create_device(self, name: str, stable_id: str) -> DeviceHandle:
        device = self._devices.get(stable_id)
        if device is not None:
            logger.info('Restoring existing lock from cache: "%s"', name)
            device.name = name
        else:
            logger.info('Adding new lock: "%s"', name)
            device = self._register(name, stable_id, cached=False)
        self._online.add(stable_id)
        self._spawn(self._safe_publish(self.topic(device, "availability"), "online"))
        return device

    def read_persisted_state(self, device: DeviceHandle) -> LockState | None:
        return self._persisted.get(device.stable_id)

    def write_persisted_state(self, device: DeviceHandle, state: LockState) -> None:
        self._persisted[device.stable_id] = state
        device.context["state"] = state.to_dict()
        if self._store is not None and not self._closed:
            self._spawn(self._save(device.stable_id, device.name, state))

    def set_current_lock_state(self, device: DeviceHandle, locked: bool) -> None:
        self._current[device.stable_id] = locked
        self._spawn(
            self._safe_publish(self.topic(device, "current"), _state_payload(locked))
        )

    def set_target_lock_state(self, device: DeviceHandle, locked: bool) -> None:
        self._target[device.stable_id] = locked
        self._spawn(
            self._safe_publish(self.topic(device, "target"), _state_payload(locked))
        )

    def on_target_state_write_requested(
        self,
        device: DeviceHandle,
        handler: TargetStateHandler,
    ) -> None:
        self._handlers[device.stable_id] = handler

    def devices(self) -> list[DeviceHandle]:
        return list(self._devices.values())

    # -- Inbound ------------------------------------------------------------

    async def route(self, topic: str, payload: str) -> None:
        """Dispatch a ``{prefix}/{lock}/set`` message to its handler.

        Messages on other topics are ignored.  Unknown locks and
        unrecognised payloads are logged and dropped; handler errors
        are logged and never propagate to the MQTT client.
        """
        prefix = f"{self._prefix}/"
        if not topic.startswith(prefix) or not topic.endswith("/set"):
            return
        slug = topic[len(prefix) : -len("/set")]
        device = self._by_slug.get(slug)
        if device is None:
            logger.warning("Target state for unknown lock on %s", topic)
            return
        handler = self._handlers.get(device.stable_id)
        if handler is None:
            logger.warning('Lock "%s" is not configured, ignoring %s', device.name, topic)
            return
        desired = parse_target_payload(payload)
        if desired is None:
            logger.warning('Unrecognised payload %r for lock "%s"', payload, device.name)
            return
        try:
            handler(desired)
        except Exception:
            logger.exception('Target state handler for "%s" failed', device.name)

    # -- Internal -----------------------------------------------------------

    def _register(self, name: str, stable_id: str, *, cached: bool) -> DeviceHandle:
        slug = topic_slug(name)
        taken = self._by_slug.get(slug)
        if taken is not None and taken.stable_id != stable_id:
            slug = f"{slug}-{stable_id[:8]}"
        device = DeviceHandle(name=name, stable_id=stable_id, slug=slug, cached=cached)
        self._devices[stable_id] = device
        self._by_slug[slug] = device
        return device

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _safe_publish(self, topic: str, payload: str) -> None:
        try:
            await self._mqtt.publish(topic, payload, retain=True, qos=1)
        except Exception as exc:
            logger.debug("Publish to %s deferred until reconnect: %s", topic, exc)

    async def _save(self, stable_id: str, name: str, state: LockState) -> None:
        assert self._store is not None
        try:
            await self._store.save(stable_id, name, state)
        except Exception:
            logger.exception('Could not persist state of "%s"', name)
