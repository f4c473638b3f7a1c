"""powerlock.

Virtual lock devices whose state is kept in sync with a message bus,
a polled shell command, or nothing at all, exposed to a home
automation host over MQTT.
"""

from importlib.metadata import PackageNotFoundError, version

from powerlock._app import PowerLockApp, default_bus_client
from powerlock._command import (
    CommandPort,
    CommandResult,
    MockCommandRunner,
    ShellCommandRunner,
)
from powerlock._controller import LockController, LockPhase, LockServices
from powerlock._errors import LockConfigError, PowerLockError
from powerlock._host import (
    DeviceHandle,
    HostPort,
    LockState,
    MqttHost,
    parse_target_payload,
    stable_id_for,
    topic_slug,
)
from powerlock._logging import JsonFormatter, LockLogger, configure_logging
from powerlock._modes import (
    POLL_TOKENS,
    BusSyncedMode,
    ModeStrategy,
    PolledCommandMode,
    StandaloneMode,
    StateObserver,
    build_mode,
)
from powerlock._mqtt import (
    BusClient,
    BusClientFactory,
    MessageCallback,
    MockMqttClient,
    MqttClient,
    MqttConnectNotifier,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    WillConfig,
)
from powerlock._registry import LockRegistry
from powerlock._scheduler import LoopScheduler, SchedulerPort, TimerHandle
from powerlock._settings import (
    BusSettings,
    CommandSettings,
    LockConfig,
    LoggingSettings,
    MqttSettings,
    Settings,
    load_lock_configs,
    load_settings,
    parse_lock_config,
)
from powerlock._store import StateStore, StoredLock

try:
    __version__ = version("powerlock")
except PackageNotFoundError:
    # Editable installs without metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # App
    "PowerLockApp",
    "default_bus_client",
    # Controller / registry
    "LockController",
    "LockPhase",
    "LockRegistry",
    "LockServices",
    # Modes
    "POLL_TOKENS",
    "BusSyncedMode",
    "ModeStrategy",
    "PolledCommandMode",
    "StandaloneMode",
    "StateObserver",
    "build_mode",
    # Host / state
    "DeviceHandle",
    "HostPort",
    "LockState",
    "MqttHost",
    "StateStore",
    "StoredLock",
    "parse_target_payload",
    "stable_id_for",
    "topic_slug",
    # Commands
    "CommandPort",
    "CommandResult",
    "MockCommandRunner",
    "ShellCommandRunner",
    # MQTT
    "BusClient",
    "BusClientFactory",
    "MessageCallback",
    "MockMqttClient",
    "MqttClient",
    "MqttConnectNotifier",
    "MqttLifecycle",
    "MqttMessageHandler",
    "MqttPort",
    "WillConfig",
    # Scheduling
    "LoopScheduler",
    "SchedulerPort",
    "TimerHandle",
    # Logging
    "JsonFormatter",
    "LockLogger",
    "configure_logging",
    # Errors
    "LockConfigError",
    "PowerLockError",
    # Settings
    "BusSettings",
    "CommandSettings",
    "LockConfig",
    "LoggingSettings",
    "MqttSettings",
    "Settings",
    "load_lock_configs",
    "load_settings",
    "parse_lock_config",
]
