"""Unit tests for powerlock._settings — configuration models.

Test Techniques Used:
    - Specification-based Testing: Default values and legacy aliases
    - Boundary Value Analysis: delays, monitor interval, port range
    - Equivalence Partitioning: per-mode required settings
    - Environment Override: monkeypatch for env var injection
    - Error Isolation: one invalid lock entry never drops the others
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from powerlock._errors import LockConfigError
from powerlock._settings import (
    BusSettings,
    LockConfig,
    LoggingSettings,
    MqttSettings,
    Settings,
    load_lock_configs,
    load_settings,
    parse_lock_config,
)
from powerlock.testing import make_lock_config, make_settings

BUS = {
    "broker": "broker.local",
    "subscribe_topic": "door/state",
    "publish_topic": "door/set",
}
COMMAND = {
    "open_command": "unlock.sh",
    "close_command": "lock.sh",
    "monitor_command": "status.sh",
    "monitor_interval": 10,
}


class TestDefaults:
    """Default values of every model.

    Technique: Specification-based Testing.
    """

    def test_mqtt_defaults(self) -> None:
        s = MqttSettings()
        assert s.host == "localhost"
        assert s.port == 1883
        assert s.topic_prefix == "powerlock"
        assert s.reconnect_interval == 5.0
        assert s.reconnect_max_interval == 300.0

    def test_logging_defaults(self) -> None:
        s = LoggingSettings()
        assert s.level == "INFO"
        assert s.format == "json"
        assert s.file is None

    def test_lock_defaults(self) -> None:
        config = make_lock_config()
        assert config.auto_lock is False
        assert config.auto_lock_delay == 30
        assert config.lock_delay == 0
        assert config.unlock_delay == 0
        assert config.logging == "normal"

    def test_bus_message_defaults(self) -> None:
        bus = BusSettings(**BUS)
        assert bus.port == 1883
        assert bus.open_message == "OPEN"
        assert bus.close_message == "CLOSED"
        assert bus.publish_open_message == "UNLOCK"
        assert bus.publish_close_message == "LOCK"

    def test_make_settings_uses_memory_db(self) -> None:
        assert make_settings().state_db == ":memory:"


class TestModeAliases:
    """Legacy mode names map to the current ones.

    Technique: Equivalence Partitioning.
    """

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("mqtt", "bus"),
            ("cmd", "command"),
            ("dummy", "standalone"),
            ("Standalone", "standalone"),
        ],
    )
    def test_alias(self, raw: str, expected: str) -> None:
        data: dict[str, object] = {"name": "Door", "mode": raw}
        if expected == "bus":
            data["bus"] = BUS
        if expected == "command":
            data["command"] = COMMAND
        assert LockConfig.model_validate(data).mode == expected

    def test_unknown_mode_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LockConfig.model_validate({"name": "Door", "mode": "zigbee"})


class TestLegacyKeys:
    """Homebridge-style camelCase keys are accepted.

    Technique: Specification-based Testing.
    """

    def test_camel_case_lock_entry(self) -> None:
        config = LockConfig.model_validate(
            {
                "lockName": "Garage",
                "mode": "mqtt",
                "autoLock": True,
                "autoLockDelay": 15,
                "unlockDelay": 2,
                "mqttSettings": {
                    "mqttBroker": "mqtt://broker.local:1884",
                    "mqttTopicSubscribe": "garage/state",
                    "mqttTopicPublish": "garage/set",
                    "mqttOpenMessage": "open",
                    "mqttCloseMessage": "closed",
                },
            }
        )
        assert config.name == "Garage"
        assert config.auto_lock is True
        assert config.auto_lock_delay == 15
        assert config.unlock_delay == 2
        assert config.bus is not None
        assert config.bus.open_message == "open"

    def test_command_settings_aliases(self) -> None:
        config = LockConfig.model_validate(
            {
                "name": "Shed",
                "mode": "cmd",
                "commandSettings": {
                    "openCommand": "o",
                    "closeCommand": "c",
                    "monitorCommand": "m",
                    "monitorInterval": 3,
                },
            }
        )
        assert config.command is not None
        assert config.command.monitor_interval == 3

    def test_flat_accessory_bus_entry(self) -> None:
        config = LockConfig.model_validate(
            {
                "lockName": "Gate",
                "mode": "mqtt",
                "mqttBrokerUrl": "mqtt://broker.local:1884",
                "mqttUsername": "",
                "mqttPassword": "",
                "mqttTopic": "gate/lock",
                "mqttMessageOpen": "open",
                "mqttMessageClosed": "closed",
                "cmdPollInterval": 0,
            }
        )
        assert config.mode == "bus"
        assert config.bus is not None
        assert config.bus.subscribe_topic == "gate/lock"
        assert config.bus.publish_topic == "gate/lock"
        assert config.bus.open_message == "open"
        assert config.bus.publish_open_message == "UNLOCK"
        assert config.bus.username is None
        assert config.bus.connection_settings().port == 1884

    def test_flat_accessory_command_entry(self) -> None:
        config = LockConfig.model_validate(
            {
                "lockName": "Shed",
                "mode": "cmd",
                "mqttTopic": "",
                "cmdUnlockCommand": "o",
                "cmdLockCommand": "c",
                "cmdPollCommand": "m",
                "cmdPollInterval": 5,
            }
        )
        assert config.bus is None
        assert config.command is not None
        assert config.command.open_command == "o"
        assert config.command.monitor_interval == 5

    def test_nested_block_wins_over_flat_keys(self) -> None:
        config = LockConfig.model_validate(
            {
                "name": "Gate",
                "mode": "bus",
                "mqttTopic": "ignored",
                "bus": BUS,
            }
        )
        assert config.bus is not None
        assert config.bus.subscribe_topic == "door/state"

    def test_single_topic_keeps_explicit_publish_topic(self) -> None:
        bus = BusSettings.model_validate(
            {"mqttTopic": "gate/state", "mqttTopicPublish": "gate/set"}
        )
        assert bus.subscribe_topic == "gate/state"
        assert bus.publish_topic == "gate/set"


class TestModeRequirements:
    """Per-mode required settings.

    Technique: Equivalence Partitioning + Boundary Value Analysis.
    """

    def test_standalone_needs_nothing(self) -> None:
        assert make_lock_config(mode="standalone").bus is None

    def test_bus_requires_settings(self) -> None:
        with pytest.raises(ValidationError, match="requires bus settings"):
            make_lock_config(mode="bus")

    @pytest.mark.parametrize("missing", ["broker", "subscribe_topic", "publish_topic"])
    def test_bus_required_field(self, missing: str) -> None:
        bus = {**BUS, missing: ""}
        with pytest.raises(ValidationError, match=missing):
            make_lock_config(mode="bus", bus=bus)

    def test_bus_credentials_must_pair(self) -> None:
        with pytest.raises(ValidationError, match="together"):
            BusSettings(**BUS, username="user")

    def test_blank_credentials_treated_as_absent(self) -> None:
        bus = BusSettings(**BUS, username="  ", password="")
        assert bus.username is None
        assert bus.password is None

    @pytest.mark.parametrize("missing", ["open_command", "close_command", "monitor_command"])
    def test_command_required_field(self, missing: str) -> None:
        command = {**COMMAND, missing: ""}
        with pytest.raises(ValidationError, match=missing):
            make_lock_config(mode="command", command=command)

    def test_command_interval_must_be_positive(self) -> None:
        with pytest.raises(ValidationError, match="monitor_interval"):
            make_lock_config(mode="command", command={**COMMAND, "monitor_interval": 0})

    def test_auto_lock_delay_must_be_positive(self) -> None:
        with pytest.raises(ValidationError, match="auto_lock_delay"):
            make_lock_config(auto_lock=True, auto_lock_delay=0)

    def test_zero_auto_lock_delay_allowed_when_disabled(self) -> None:
        assert make_lock_config(auto_lock_delay=0).auto_lock_delay == 0

    def test_negative_delay_rejected(self) -> None:
        with pytest.raises(ValidationError):
            make_lock_config(lock_delay=-1)

    def test_invalid_verbosity_rejected(self) -> None:
        with pytest.raises(ValidationError):
            make_lock_config(logging="chatty")

    def test_config_is_frozen(self) -> None:
        config = make_lock_config()
        with pytest.raises(ValidationError):
            config.name = "Other"  # type: ignore[misc]


class TestConnectionSettings:
    """BusSettings → MqttSettings translation.

    Technique: Specification-based Testing.
    """

    def test_bare_host(self) -> None:
        mqtt = BusSettings(**BUS, port=1884).connection_settings(client_id="x")
        assert mqtt.host == "broker.local"
        assert mqtt.port == 1884
        assert mqtt.client_id == "x"

    def test_url_port_wins(self) -> None:
        bus = BusSettings(**{**BUS, "broker": "mqtt://10.0.0.2:1999"})
        mqtt = bus.connection_settings()
        assert mqtt.host == "10.0.0.2"
        assert mqtt.port == 1999

    def test_url_without_port_uses_field(self) -> None:
        bus = BusSettings(**{**BUS, "broker": "mqtt://10.0.0.2"}, port=1885)
        assert bus.connection_settings().port == 1885

    def test_credentials_carried(self) -> None:
        bus = BusSettings(**BUS, username="u", password="p")
        mqtt = bus.connection_settings()
        assert mqtt.username == "u"
        assert isinstance(mqtt.password, SecretStr)
        assert mqtt.password.get_secret_value() == "p"


class TestParseLockConfig:
    """Per-entry validation errors.

    Technique: Specification-based Testing.
    """

    def test_non_mapping_rejected(self) -> None:
        with pytest.raises(LockConfigError, match="#2"):
            parse_lock_config(["not", "a", "dict"], index=2)

    def test_error_names_the_lock(self) -> None:
        with pytest.raises(LockConfigError) as excinfo:
            parse_lock_config({"name": "Gate", "mode": "bus"})
        assert excinfo.value.lock_name == "Gate"
        assert "Gate" in str(excinfo.value)

    def test_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_lock_config({"mode": "standalone"})


class TestLoadLockConfigs:
    """Batch validation with error isolation.

    Technique: Error Isolation.
    """

    def test_invalid_entry_skipped_others_kept(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.ERROR):
            configs = load_lock_configs(
                [
                    {"name": "Front", "mode": "standalone"},
                    {"name": "Broken", "mode": "command"},
                    {"name": "Back", "mode": "dummy"},
                ]
            )
        assert [c.name for c in configs] == ["Front", "Back"]
        assert "Broken" in caplog.text

    def test_duplicate_names_skipped(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.ERROR):
            configs = load_lock_configs(
                [
                    {"name": "Front", "mode": "standalone"},
                    {"name": "Front", "mode": "standalone", "autoLock": True},
                ]
            )
        assert len(configs) == 1
        assert configs[0].auto_lock is False
        assert "duplicate" in caplog.text

    def test_empty_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            assert load_lock_configs([]) == []
        assert "No locks configured" in caplog.text


class TestLoadSettings:
    """Environment and JSON file sources.

    Technique: Environment Override.
    """

    def test_env_prefix_and_nesting(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("POWERLOCK_MQTT__HOST", "broker.test")
        monkeypatch.setenv("POWERLOCK_LOGGING__FORMAT", "text")
        settings = load_settings(env_file=None)
        assert settings.mqtt.host == "broker.test"
        assert settings.logging.format == "text"

    def test_locks_from_env_json(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(
            "POWERLOCK_LOCKS", json.dumps([{"name": "Door", "mode": "dummy"}])
        )
        settings = load_settings(env_file=None)
        assert settings.locks == [{"name": "Door", "mode": "dummy"}]

    def test_config_file_overrides_env(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("POWERLOCK_STATE_DB", "/from/env.db")
        config = tmp_path / "config.json"
        config.write_text(
            json.dumps(
                {
                    "platform": "PowerLockPlatform",
                    "state_db": str(tmp_path / "state.db"),
                    "locks": [{"name": "Door", "mode": "dummy"}],
                }
            )
        )
        settings = load_settings(env_file=None, config_file=str(config))
        assert settings.state_db == str(tmp_path / "state.db")
        assert len(settings.locks) == 1

    def test_config_file_must_be_object(self, tmp_path: Path) -> None:
        config = tmp_path / "config.json"
        config.write_text("[]")
        with pytest.raises(ValueError, match="JSON object"):
            load_settings(env_file=None, config_file=str(config))

    def test_missing_config_file_raises_oserror(self, tmp_path: Path) -> None:
        with pytest.raises(OSError):
            load_settings(env_file=None, config_file=str(tmp_path / "nope.json"))

    def test_invalid_port_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("POWERLOCK_MQTT__PORT", "0")
        with pytest.raises(ValidationError):
            load_settings(env_file=None)

    def test_settings_class_respected(self) -> None:
        assert isinstance(load_settings(Settings, env_file=None), Settings)
