"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables and/or ``.env``
files, optionally overlaid with a JSON configuration file.  Nested
models use ``__`` as the delimiter in env var names, e.g.
``POWERLOCK_MQTT__HOST=broker.local``.

The schema covers three concerns:

* **MQTT** — the connection that exposes the locks to the host side
  (state topics, ``/set`` command topics, availability).
* **Logging** — level, format, optional file sink, rotation.
* **Locks** — the per-lock entries.  These are kept as raw mappings
  on :class:`Settings` and validated one at a time by
  :func:`load_lock_configs`, so a single broken entry never takes the
  others down with it.

Lock entries accept the camelCase keys of the older Homebridge-style
configuration (``autoLock``, ``mqttSettings``, ``monitorInterval``
…) as well as the snake_case field names, and the legacy mode names
``mqtt``, ``cmd`` and ``dummy``.  The flat ``mqtt*`` and ``cmd*`` keys
of a Homebridge accessory entry (``mqttBrokerUrl``, ``mqttTopic``,
``cmdPollCommand`` …) are moved into the ``bus``/``command`` blocks.

All durations are in **seconds**.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Annotated, Any, Literal, Self
from urllib.parse import urlsplit

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from powerlock._errors import LockConfigError

logger = logging.getLogger(__name__)

DEFAULT_STATE_DB = str(Path.home() / ".local" / "share" / "powerlock" / "state.db")

LockMode = Literal["bus", "command", "standalone"]
Verbosity = Literal["debug", "normal", "minimal"]

_MODE_ALIASES: dict[str, str] = {
    "mqtt": "bus",
    "cmd": "command",
    "dummy": "standalone",
}

# Flat per-lock keys of the Homebridge accessory configuration.
_FLAT_BUS_KEYS = (
    "mqttBrokerUrl",
    "mqttUsername",
    "mqttPassword",
    "mqttTopic",
    "mqttMessageOpen",
    "mqttMessageClosed",
    "mqttMessageSendOpen",
    "mqttMessageSendClosed",
)
_FLAT_COMMAND_KEYS = (
    "cmdUnlockCommand",
    "cmdLockCommand",
    "cmdPollCommand",
    "cmdPollInterval",
)

# -------------------------------------------------------------------
# Connection / logging sub-models
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT broker connection configuration.

    Used for the host-facing connection (from :class:`Settings`) and,
    via :meth:`BusSettings.connection_settings`, for each bus-mode
    lock's own connection.

    Environment variables (with ``__`` nesting)::

        POWERLOCK_MQTT__HOST=broker.local
        POWERLOCK_MQTT__PORT=1883
        POWERLOCK_MQTT__USERNAME=user
        POWERLOCK_MQTT__PASSWORD=secret
        POWERLOCK_MQTT__TOPIC_PREFIX=powerlock
    """

    host: str = Field(
        default="localhost",
        description="MQTT broker hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, one is generated as "
            "'{name}-{hex8}' at startup."
        ),
    )
    qos: Literal[0, 1, 2] = Field(
        default=1,
        description="QoS used for subscriptions.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description=(
            "Initial seconds to wait before reconnecting after "
            "connection loss.  Doubles on each consecutive failure "
            "up to ``reconnect_max_interval``."
        ),
    )
    reconnect_max_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Upper bound (seconds) for the reconnect backoff.",
    )
    topic_prefix: str = Field(
        default="powerlock",
        description="Root prefix for the host-facing lock topics.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    The ``format`` field selects the output format:

    - ``"json"`` (default) — structured JSON lines for log
      aggregators.
    - ``"text"`` — human-readable timestamped lines.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format ('json' or 'text').",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Per-lock models
# -------------------------------------------------------------------


class BusSettings(BaseModel):
    """Bus-synced mode settings for one lock.

    ``broker`` may be a bare hostname or an ``mqtt://host:port`` URL;
    a port in the URL takes precedence over ``port``.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    broker: str = Field(
        default="",
        validation_alias=AliasChoices("broker", "mqttBroker", "mqttBrokerUrl"),
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        validation_alias=AliasChoices("port", "mqttPort"),
    )
    username: str | None = Field(
        default=None,
        validation_alias=AliasChoices("username", "mqttUsername"),
    )
    password: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("password", "mqttPassword"),
    )
    subscribe_topic: str = Field(
        default="",
        validation_alias=AliasChoices(
            "subscribe_topic", "mqttTopicSubscribe", "mqttTopic"
        ),
    )
    publish_topic: str = Field(
        default="",
        validation_alias=AliasChoices("publish_topic", "mqttTopicPublish"),
    )
    open_message: str = Field(
        default="OPEN",
        validation_alias=AliasChoices(
            "open_message", "mqttOpenMessage", "mqttMessageOpen"
        ),
    )
    close_message: str = Field(
        default="CLOSED",
        validation_alias=AliasChoices(
            "close_message", "mqttCloseMessage", "mqttMessageClosed"
        ),
    )
    publish_open_message: str = Field(
        default="UNLOCK",
        validation_alias=AliasChoices(
            "publish_open_message", "mqttPublishOpenMessage", "mqttMessageSendOpen"
        ),
    )
    publish_close_message: str = Field(
        default="LOCK",
        validation_alias=AliasChoices(
            "publish_close_message",
            "mqttPublishCloseMessage",
            "mqttMessageSendClosed",
        ),
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = 5.0

    @model_validator(mode="before")
    @classmethod
    def _single_topic(cls, data: object) -> object:
        """``mqttTopic`` alone is used for both directions."""
        if isinstance(data, Mapping) and "mqttTopic" in data:
            if not any(key in data for key in ("publish_topic", "mqttTopicPublish")):
                return {**data, "mqttTopicPublish": data["mqttTopic"]}
        return data

    @field_validator("username", "password", mode="before")
    @classmethod
    def _blank_is_absent(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_credentials(self) -> Self:
        if (self.username is None) != (self.password is None):
            msg = "username and password must be provided together"
            raise ValueError(msg)
        return self

    def connection_settings(self, *, client_id: str = "") -> MqttSettings:
        """Translate into :class:`MqttSettings` for an MQTT client."""
        host, port = self.broker, self.port
        if "://" in self.broker:
            parts = urlsplit(self.broker)
            host = parts.hostname or ""
            port = parts.port or self.port
        return MqttSettings(
            host=host,
            port=port,
            username=self.username,
            password=self.password,
            client_id=client_id,
            reconnect_interval=self.reconnect_interval,
        )


class CommandSettings(BaseModel):
    """Polled-command mode settings for one lock."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    open_command: str = Field(
        default="",
        validation_alias=AliasChoices(
            "open_command", "openCommand", "cmdUnlockCommand"
        ),
    )
    close_command: str = Field(
        default="",
        validation_alias=AliasChoices(
            "close_command", "closeCommand", "cmdLockCommand"
        ),
    )
    monitor_command: str = Field(
        default="",
        validation_alias=AliasChoices(
            "monitor_command", "monitorCommand", "cmdPollCommand"
        ),
    )
    monitor_interval: Annotated[float, Field(ge=0)] = Field(
        default=0.0,
        validation_alias=AliasChoices(
            "monitor_interval", "monitorInterval", "cmdPollInterval"
        ),
    )


class LockConfig(BaseModel):
    """Validated configuration of a single lock.

    Immutable: a changed configuration is a new ``LockConfig`` handed
    to :meth:`LockController.configure`.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: Annotated[str, Field(min_length=1)] = Field(
        validation_alias=AliasChoices("name", "lockName"),
    )
    mode: LockMode
    auto_lock: bool = Field(
        default=False,
        validation_alias=AliasChoices("auto_lock", "autoLock"),
    )
    auto_lock_delay: Annotated[float, Field(ge=0)] = Field(
        default=30.0,
        validation_alias=AliasChoices("auto_lock_delay", "autoLockDelay"),
    )
    lock_delay: Annotated[float, Field(ge=0)] = Field(
        default=0.0,
        validation_alias=AliasChoices("lock_delay", "lockDelay"),
    )
    unlock_delay: Annotated[float, Field(ge=0)] = Field(
        default=0.0,
        validation_alias=AliasChoices("unlock_delay", "unlockDelay"),
    )
    logging: Verbosity = "normal"
    bus: BusSettings | None = Field(
        default=None,
        validation_alias=AliasChoices("bus", "mqttSettings"),
    )
    command: CommandSettings | None = Field(
        default=None,
        validation_alias=AliasChoices("command", "commandSettings"),
    )

    @model_validator(mode="before")
    @classmethod
    def _nest_flat_keys(cls, data: object) -> object:
        """Move flat ``mqtt*`` / ``cmd*`` keys into their settings block.

        Blank and null values are dropped so field defaults apply.  An
        explicit ``bus``/``command`` block always wins.
        """
        if not isinstance(data, Mapping):
            return data
        nested = dict(data)
        for block, aliases, keys in (
            ("bus", ("bus", "mqttSettings"), _FLAT_BUS_KEYS),
            ("command", ("command", "commandSettings"), _FLAT_COMMAND_KEYS),
        ):
            if any(alias in nested for alias in aliases):
                continue
            flat = {
                key: nested[key]
                for key in keys
                if nested.get(key) is not None and nested.get(key) != ""
            }
            if flat:
                nested[block] = flat
        return nested

    @field_validator("mode", mode="before")
    @classmethod
    def _normalise_mode(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _MODE_ALIASES.get(lowered, lowered)
        return value

    @model_validator(mode="after")
    def _check_mode_requirements(self) -> Self:
        if self.mode == "bus":
            if self.bus is None:
                msg = "mode 'bus' requires bus settings"
                raise ValueError(msg)
            required = ("broker", "subscribe_topic", "publish_topic")
            missing = [key for key in required if not getattr(self.bus, key)]
            if missing:
                msg = f"bus settings missing {', '.join(missing)}"
                raise ValueError(msg)
        elif self.mode == "command":
            if self.command is None:
                msg = "mode 'command' requires command settings"
                raise ValueError(msg)
            required = ("open_command", "close_command", "monitor_command")
            missing = [key for key in required if not getattr(self.command, key)]
            if missing:
                msg = f"command settings missing {', '.join(missing)}"
                raise ValueError(msg)
            if self.command.monitor_interval <= 0:
                msg = "monitor_interval must be > 0"
                raise ValueError(msg)
        if self.auto_lock and self.auto_lock_delay <= 0:
            msg = "auto_lock_delay must be > 0 when auto_lock is enabled"
            raise ValueError(msg)
        return self


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for powerlock.

    Loaded from environment variables prefixed ``POWERLOCK_`` with the
    nested delimiter ``__`` and an optional ``.env`` file in the
    working directory.  ``locks`` is a JSON list when given through
    the environment.

    Example ``.env``::

        POWERLOCK_MQTT__HOST=broker.local
        POWERLOCK_LOGGING__FORMAT=text
        POWERLOCK_LOCKS='[{"name": "Front Door", "mode": "standalone"}]'
    """

    model_config = SettingsConfigDict(
        env_prefix="POWERLOCK_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="Host-facing MQTT connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
    state_db: str = Field(
        default=DEFAULT_STATE_DB,
        description="SQLite database holding persisted lock state.",
    )
    locks: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Raw lock entries, validated per lock at discovery.",
    )


def load_settings(
    settings_class: type[Settings] = Settings,
    *,
    env_file: str | None = ".env",
    config_file: str | None = None,
) -> Settings:
    """Build settings from the environment plus an optional JSON file.

    Keys in *config_file* override environment values.  A Homebridge
    platform block (``{"platform": ..., "locks": [...]}``) can be used
    as-is; unknown keys are ignored.

    Raises:
        pydantic.ValidationError: If the merged settings are invalid.
        OSError: If *config_file* cannot be read.
        ValueError: If *config_file* is not a JSON object.
    """
    overrides: dict[str, Any] = {}
    if config_file is not None:
        data = json.loads(Path(config_file).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            msg = f"{config_file} must contain a JSON object"
            raise ValueError(msg)  # noqa: TRY004
        overrides = data
    return settings_class(_env_file=env_file, **overrides)  # type: ignore[call-arg]


def parse_lock_config(entry: object, *, index: int = 0) -> LockConfig:
    """Validate one raw lock entry.

    Raises:
        LockConfigError: If the entry is not a mapping or fails
            validation.
    """
    if not isinstance(entry, Mapping):
        raise LockConfigError(f"#{index}", "entry must be an object")
    lock_name = str(entry.get("name") or entry.get("lockName") or f"#{index}")
    try:
        return LockConfig.model_validate(dict(entry))
    except ValidationError as exc:
        raise LockConfigError.from_validation_error(lock_name, exc) from exc


def load_lock_configs(entries: Iterable[object]) -> list[LockConfig]:
    """Validate lock entries independently.

    Invalid entries and repeated names are logged and skipped; the
    remaining entries are returned in configuration order.
    """
    configs: list[LockConfig] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        try:
            config = parse_lock_config(entry, index=index)
        except LockConfigError as exc:
            logger.error("Skipping lock: %s", exc)
            continue
        if config.name in seen:
            logger.error('Skipping lock: duplicate name "%s"', config.name)
            continue
        seen.add(config.name)
        configs.append(config)
    if not configs:
        logger.warning("No locks configured")
    return configs
