"""
Pytest configuration and shared fixtures
"""
import os
import sys
import time

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from pc2mqtt.config import MqttSettings, WillSettings  # noqa: E402
from pc2mqtt.transport import FakeTransport  # noqa: E402


class FakeExecutor:
    """Runs submitted work immediately on the caller's thread."""

    def __init__(self, *a, **k):
        self.submitted = []
        self.shut_down = False

    def submit(self, fn, *args):
        if self.shut_down:
            raise RuntimeError("cannot schedule new futures after shutdown")
        self.submitted.append((fn, args))
        fn(*args)

    def shutdown(self, *a, **k):
        self.shut_down = True


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def sync_executors(monkeypatch):
    """Make the event bus and the inbound executor synchronous."""
    monkeypatch.setattr("pc2mqtt.events.ThreadPoolExecutor", FakeExecutor)
    monkeypatch.setattr("pc2mqtt.mqtt_client.ThreadPoolExecutor", FakeExecutor)


@pytest.fixture
def settings():
    return MqttSettings(
        broker="localhost",
        port=1883,
        username="bridge",
        password="pw",
        device_id="pc",
        reconnect_interval_s=60.0,
        auto_reconnect=False,
        queue_size=10,
        will=WillSettings(),
    )


@pytest.fixture
def wait_until():
    def _wait(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def mock_env(monkeypatch):
    """Set up mock environment variables"""
    env_vars = {
        'MQTT_HOST': 'test.mqtt.local',
        'MQTT_PORT': '1883',
        'MQTT_USERNAME': 'bridge',
        'MQTT_PASSWORD': 'test-password',
        'PC2MQTT_DEVICE_ID': 'test-pc',
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars
