"""Integration tests — full service lifecycle.

Runs the whole service through :class:`PowerLockHarness`: bootstrap,
discovery, user requests over MQTT, bus observations, monitor polls,
reload, and shutdown, asserting on what the host MQTT client saw.

Test Techniques Used:
    - Integration Testing: end-to-end lifecycle via PowerLockHarness.
    - State-based Testing: verify retained state topics.
    - Simulated Time: FakeScheduler drives delays, auto-lock and polls.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from powerlock.testing import PowerLockHarness

pytestmark = [
    pytest.mark.integration,
    pytest.mark.usefixtures("_restore_root_logger"),
]

BUS_LOCK = {
    "name": "Garage",
    "mode": "mqtt",
    "mqttSettings": {
        "mqttBroker": "mqtt://garage.local:1884",
        "mqttTopicSubscribe": "garage/state",
        "mqttTopicPublish": "garage/set",
        "mqttOpenMessage": "open",
        "mqttCloseMessage": "closed",
    },
}
COMMAND_LOCK = {
    "name": "Shed",
    "mode": "cmd",
    "commandSettings": {
        "openCommand": "shed-open",
        "closeCommand": "shed-close",
        "monitorCommand": "shed-status",
        "monitorInterval": 1,
    },
}


async def settle(rounds: int = 5) -> None:
    """Let spawned publishes and side effects run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def last_payload(harness: PowerLockHarness, topic: str) -> str:
    messages = harness.mqtt.get_messages_for(topic)
    assert messages, f"nothing published on {topic}"
    return messages[-1][0]


@pytest.fixture
async def running() -> AsyncIterator[PowerLockHarness]:
    harness = PowerLockHarness.create(
        locks=[
            {"name": "Front Door", "mode": "dummy", "autoLock": True, "autoLockDelay": 10},
            BUS_LOCK,
            COMMAND_LOCK,
        ]
    )
    await harness.start()
    await settle()
    yield harness
    await harness.stop()


class TestStartup:
    """Bootstrap and initial announcements.

    Technique: State-based Testing.
    """

    async def test_announces_every_lock(self, running: PowerLockHarness) -> None:
        assert "powerlock/+/set" in running.mqtt.subscriptions
        assert last_payload(running, "powerlock/status") == "online"
        for slug in ("front-door", "garage", "shed"):
            assert last_payload(running, f"powerlock/{slug}/availability") == "online"
            assert last_payload(running, f"powerlock/{slug}/current") == "SECURED"
            assert last_payload(running, f"powerlock/{slug}/target") == "SECURED"

    async def test_bus_lock_has_own_connection(self, running: PowerLockHarness) -> None:
        (client,) = running.bus_clients.clients
        assert client.is_running
        assert client.subscriptions == ["garage/state"]
        assert client.settings is not None
        assert (client.settings.host, client.settings.port) == ("garage.local", 1884)

    async def test_reconnect_reannounces(self, running: PowerLockHarness) -> None:
        running.mqtt.published.clear()
        await running.mqtt.simulate_connect()
        assert last_payload(running, "powerlock/shed/current") == "SECURED"


class TestUserRequests:
    """Target state writes over MQTT.

    Technique: Simulated Time.
    """

    async def test_unlock_then_auto_lock(self, running: PowerLockHarness) -> None:
        await running.mqtt.deliver("powerlock/front-door/set", "UNLOCK")
        await settle()
        assert last_payload(running, "powerlock/front-door/current") == "UNSECURED"

        running.scheduler.advance(10)
        await settle()
        assert last_payload(running, "powerlock/front-door/target") == "SECURED"
        assert last_payload(running, "powerlock/front-door/current") == "SECURED"

    async def test_bus_lock_publishes_command(self, running: PowerLockHarness) -> None:
        await running.mqtt.deliver("powerlock/garage/set", "unlock")
        await settle()
        assert running.bus_clients.last.get_messages_for("garage/set") == [
            ("UNLOCK", False, 1)
        ]
        assert last_payload(running, "powerlock/garage/current") == "UNSECURED"

    async def test_failing_command_still_transitions(
        self, running: PowerLockHarness
    ) -> None:
        running.runner.set_result("shed-open", stderr="relay offline", returncode=1)
        await running.mqtt.deliver("powerlock/shed/set", "UNLOCK")
        await settle()
        assert running.runner.count("shed-open") == 1
        assert last_payload(running, "powerlock/shed/current") == "UNSECURED"

    async def test_unknown_lock_ignored(self, running: PowerLockHarness) -> None:
        before = running.mqtt.publish_count
        await running.mqtt.deliver("powerlock/back-door/set", "UNLOCK")
        await settle()
        assert running.mqtt.publish_count == before


class TestObservations:
    """Bus messages and monitor polls.

    Technique: State-based Testing + Simulated Time.
    """

    async def test_bus_open_message(self, running: PowerLockHarness) -> None:
        await running.bus_clients.last.deliver("garage/state", "open")
        await settle()
        assert last_payload(running, "powerlock/garage/current") == "UNSECURED"

        running.scheduler.advance(60)
        await settle()
        assert last_payload(running, "powerlock/garage/current") == "UNSECURED"

    async def test_monitor_detects_secured(self, running: PowerLockHarness) -> None:
        await running.mqtt.deliver("powerlock/shed/set", "UNLOCK")
        await settle()
        assert last_payload(running, "powerlock/shed/current") == "UNSECURED"

        running.runner.set_result("shed-status", "secured\n")
        running.scheduler.advance(1)
        await settle()
        assert last_payload(running, "powerlock/shed/current") == "SECURED"


class TestReload:
    """Rediscovery with changed configuration.

    Technique: Integration Testing.
    """

    async def test_reload_reconfigures_and_adds(self, running: PowerLockHarness) -> None:
        old_client = running.bus_clients.last
        await running.reload(
            locks=[
                BUS_LOCK,
                {"name": "Back Door", "mode": "standalone"},
            ]
        )
        await settle()

        assert not old_client.is_running
        assert running.bus_clients.running == [running.bus_clients.last]
        assert last_payload(running, "powerlock/back-door/current") == "SECURED"

        await running.mqtt.deliver("powerlock/back-door/set", "UNLOCK")
        await settle()
        assert last_payload(running, "powerlock/back-door/current") == "UNSECURED"


class TestShutdown:
    """Teardown.

    Technique: State-based Testing.
    """

    async def test_everything_goes_offline(self) -> None:
        harness = PowerLockHarness.create(locks=[BUS_LOCK, COMMAND_LOCK])
        await harness.start()
        await harness.stop()

        assert last_payload(harness, "powerlock/status") == "offline"
        assert last_payload(harness, "powerlock/garage/availability") == "offline"
        assert last_payload(harness, "powerlock/shed/availability") == "offline"
        assert harness.bus_clients.running == []
        assert harness.mqtt.stop_count == 1
        assert harness.scheduler.advance(60) == 0
