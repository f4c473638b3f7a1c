"""Public test-support utilities for powerlock.

Re-exports test doubles and factories so that test suites can import
everything from a single ``powerlock.testing`` namespace.

Provided symbols:

- :class:`PowerLockHarness` — runs the whole service against test doubles.
- :class:`FakeScheduler` — deterministic timers, advanced manually.
- :class:`MemoryHost` — in-memory accessory host recording writes.
- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`MockBusClientFactory` — hands out MockMqttClient per lock.
- :class:`MockCommandRunner` — canned command results.
- :func:`make_settings` / :func:`make_lock_config` — isolated factories.
"""

from powerlock._command import MockCommandRunner
from powerlock._mqtt import MockMqttClient
from powerlock.testing._bus import MockBusClientFactory
from powerlock.testing._harness import PowerLockHarness
from powerlock.testing._host import MemoryHost
from powerlock.testing._scheduler import FakeScheduler, FakeTimer
from powerlock.testing._settings import make_lock_config, make_settings

__all__ = [
    "FakeScheduler",
    "FakeTimer",
    "MemoryHost",
    "MockBusClientFactory",
    "MockCommandRunner",
    "MockMqttClient",
    "PowerLockHarness",
    "make_lock_config",
    "make_settings",
]
