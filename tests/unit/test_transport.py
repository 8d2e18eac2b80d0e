from __future__ import annotations

from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from pc2mqtt.events import CloseReason, EventType
from pc2mqtt.mqtt_client import BridgeMQTTClient
from pc2mqtt.transport import (
    CONNACK_SERVER_UNAVAILABLE,
    CONNACK_TIMEOUT,
    FakeTransport,
    PahoTransport,
    WillMessage,
)


class FakeMQTTMessage:
    def __init__(self, topic: str, payload: bytes):
        self.topic = topic
        self.payload = payload


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    connect() immediately delivers the CONNACK code in fake.connack_rc.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True
    fake.connack_rc = 0
    fake.late_disconnect = False
    fake.ctor_calls = []

    def _connect(host, port, keepalive=60):
        # paho reads on_disconnect on its loop thread, possibly before on_connect runs
        on_disconnect = fake.on_disconnect
        fake.on_connect(fake, None, {}, fake.connack_rc)
        if fake.connack_rc:
            if fake.on_disconnect is not None:
                fake.on_disconnect(fake, None, mqtt.MQTT_ERR_CONN_REFUSED)
            if fake.late_disconnect:
                on_disconnect(fake, None, mqtt.MQTT_ERR_CONN_REFUSED)
        return 0

    fake.connect.side_effect = _connect

    def _ctor(*args, **kwargs):
        fake.ctor_calls.append((args, kwargs))
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


def test_connect_configures_client_and_returns_connack(fake_paho_client):
    t = PahoTransport("broker.local", 1884)
    will = WillMessage(topic="pc/status", payload="Offline", qos=2, retain=True)

    rc = t.connect("pc", "user", "pw", 30, will)

    assert rc == 0
    args, kwargs = fake_paho_client.ctor_calls[0]
    assert args[0] == mqtt.CallbackAPIVersion.VERSION1
    assert kwargs["client_id"] == "pc"
    assert kwargs["protocol"] == mqtt.MQTTv311
    fake_paho_client.username_pw_set.assert_called_once_with("user", "pw")
    fake_paho_client.will_set.assert_called_once_with("pc/status", payload="Offline", qos=2, retain=True)
    fake_paho_client.connect.assert_called_with("broker.local", 1884, keepalive=30)
    fake_paho_client.loop_start.assert_called_once()
    assert t.is_connected() is True


def test_connect_without_credentials_or_will(fake_paho_client):
    t = PahoTransport("h", 1883)
    t.connect("pc", "", "", 60, None)

    fake_paho_client.username_pw_set.assert_not_called()
    fake_paho_client.will_set.assert_not_called()


def test_refused_connack_tears_down(fake_paho_client):
    fake_paho_client.connack_rc = 5
    t = PahoTransport("h", 1883)

    assert t.connect("pc", "u", "p", 60, None) == 5
    fake_paho_client.loop_stop.assert_called()
    assert t.is_connected() is False


def test_refused_connack_does_not_report_connection_loss(fake_paho_client):
    fake_paho_client.connack_rc = 5
    t = PahoTransport("h", 1883)
    closed = []
    t.on_connection_closed = closed.append

    assert t.connect("pc", "u", "p", 60, None) == 5
    assert closed == []


def test_disconnect_racing_a_refused_connack_is_ignored(fake_paho_client):
    fake_paho_client.connack_rc = 5
    fake_paho_client.late_disconnect = True
    t = PahoTransport("h", 1883)
    closed = []
    t.on_connection_closed = closed.append

    assert t.connect("pc", "u", "p", 60, None) == 5
    assert closed == []


def test_refused_connect_reaches_listeners_as_one_closed_event(fake_paho_client, settings, sync_executors):
    fake_paho_client.connack_rc = 5
    fake_paho_client.late_disconnect = True
    client = BridgeMQTTClient(settings, transport=PahoTransport("h", 1883))
    seen = []
    client.add_listener(seen.append)
    try:
        assert client.connect() is False
        closed = [(e.reason, e.code) for e in seen if e.type is EventType.CLOSED]
    finally:
        client.disconnect()

    assert closed == [(CloseReason.NOT_AUTHORIZED, 5)]


def test_socket_error_maps_to_server_unavailable(fake_paho_client):
    fake_paho_client.connect.side_effect = ConnectionRefusedError("nope")
    t = PahoTransport("h", 1883)

    assert t.connect("pc", "u", "p", 60, None) == CONNACK_SERVER_UNAVAILABLE
    fake_paho_client.loop_start.assert_not_called()


def test_missing_connack_times_out(fake_paho_client):
    fake_paho_client.connect.side_effect = None
    t = PahoTransport("h", 1883, connect_timeout_s=0.01)

    assert t.connect("pc", "u", "p", 60, None) == CONNACK_TIMEOUT
    assert t.is_connected() is False


def test_publish_subscribe_unsubscribe_return_mid(fake_paho_client):
    fake_paho_client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS, mid=11)
    fake_paho_client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 12)
    fake_paho_client.unsubscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 13)
    t = PahoTransport("h", 1883)
    t.connect("pc", "", "", 60, None)

    assert t.publish("pc/a", b"1", 2, False) == 11
    fake_paho_client.publish.assert_called_with("pc/a", payload=b"1", qos=2, retain=False)
    assert t.subscribe(["cmd/+"], [2]) == 12
    fake_paho_client.subscribe.assert_called_with([("cmd/+", 2)])
    assert t.unsubscribe(["cmd/+"]) == 13


def test_publish_failure_returns_zero(fake_paho_client):
    fake_paho_client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_NO_CONN, mid=4)
    t = PahoTransport("h", 1883)
    t.connect("pc", "", "", 60, None)

    assert t.publish("pc/a", b"1", 2, False) == 0


def test_operations_before_connect_return_zero():
    t = PahoTransport("h", 1883)
    assert t.publish("a", b"", 2, False) == 0
    assert t.subscribe(["a"], [2]) == 0
    assert t.unsubscribe(["a"]) == 0
    assert t.is_connected() is False


def test_on_message_forwards_topic_and_payload(fake_paho_client):
    t = PahoTransport("h", 1883)
    got = []
    t.on_message = lambda topic, payload: got.append((topic, payload))
    t.connect("pc", "", "", 60, None)

    fake_paho_client.on_message(fake_paho_client, None, FakeMQTTMessage("cmd/reset", b"1"))

    assert got == [("cmd/reset", b"1")]


def test_unexpected_disconnect_reports_and_disables_paho_reconnect(fake_paho_client):
    t = PahoTransport("h", 1883)
    closed = []
    t.on_connection_closed = closed.append
    t.connect("pc", "", "", 60, None)
    on_disconnect = fake_paho_client.on_disconnect

    on_disconnect(fake_paho_client, None, 7)

    assert closed == [7]
    assert fake_paho_client.on_disconnect is None


def test_clean_disconnect_is_silent(fake_paho_client):
    t = PahoTransport("h", 1883)
    closed = []
    t.on_connection_closed = closed.append
    t.connect("pc", "", "", 60, None)

    fake_paho_client.on_disconnect(fake_paho_client, None, 0)
    t.disconnect()

    assert closed == []
    fake_paho_client.disconnect.assert_called_once()
    assert t.is_connected() is False


# -------------------------
# In-memory broker
# -------------------------
def test_fake_transport_hands_out_increasing_ids():
    t = FakeTransport()
    assert t.publish("a", b"1", 2, False) == 0

    assert t.connect("pc", "", "", 60, None) == 0
    assert t.publish("a", b"1", 2, False) == 1
    assert t.subscribe(["b/#"], [2]) == 2
    assert t.unsubscribe(["b/#"]) == 3
    assert t.published == [("a", b"1", 2, False)]


def test_fake_transport_loopback_delivers_matching_publishes():
    t = FakeTransport(loopback=True)
    got = []
    t.on_message = lambda topic, payload: got.append((topic, payload))
    t.connect("pc", "", "", 60, None)
    t.subscribe(["pc/cmd/+"], [2])

    t.publish("pc/cmd/reset", b"1", 2, False)
    t.publish("pc/status", b"Online", 2, True)
    t.unsubscribe(["pc/cmd/+"])
    t.publish("pc/cmd/reset", b"2", 2, False)

    assert got == [("pc/cmd/reset", b"1")]


def test_fake_transport_without_loopback_stays_silent():
    t = FakeTransport()
    got = []
    t.on_message = lambda topic, payload: got.append(topic)
    t.connect("pc", "", "", 60, None)
    t.subscribe(["#"], [2])

    t.publish("a", b"1", 2, False)

    assert got == []


def test_fake_transport_failure_injection():
    t = FakeTransport(failure_rate=1.0)

    assert t.connect("pc", "", "", 60, None) == CONNACK_SERVER_UNAVAILABLE
    assert t.is_connected() is False

    t.failure_rate = 0.0
    t.connect("pc", "", "", 60, None)
    t.failure_rate = 1.0
    assert t.publish("a", b"1", 2, False) == 0
    assert t.subscribe(["a"], [2]) == 0
    assert t.published == []


def test_fake_transport_drop_reports_loss():
    t = FakeTransport()
    closed = []
    t.on_connection_closed = closed.append
    t.connect("pc", "", "", 60, None)

    t.drop(rc=7)

    assert closed == [7]
    assert t.is_connected() is False
