"""
Transport primitive the connection supervisor is built on.

PahoTransport adapts paho-mqtt (MQTT 3.1.1) to a synchronous connect that
returns the CONNACK code, and to message-id returning publish / subscribe /
unsubscribe calls (0 = not accepted). FakeTransport is an in-memory stand-in
used when no broker is available.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence

import paho.mqtt.client as mqtt

from pc2mqtt import mqtt_topics

logger = logging.getLogger(__name__)

CONNACK_ACCEPTED = 0
CONNACK_SERVER_UNAVAILABLE = 3
CONNACK_TIMEOUT = 255

MessageCallback = Callable[[str, bytes], None]
ClosedCallback = Callable[[int], None]


@dataclass(frozen=True, slots=True)
class WillMessage:
    topic: str
    payload: str
    qos: int = 2
    retain: bool = True


class Transport(Protocol):
    """Minimal broker connection the supervisor drives."""

    on_message: Optional[MessageCallback]
    on_connection_closed: Optional[ClosedCallback]

    def connect(
        self,
        client_id: str,
        username: str,
        password: str,
        keepalive: int,
        will: Optional[WillMessage],
    ) -> int: ...

    def disconnect(self) -> None: ...

    def publish(self, topic: str, payload: bytes, qos: int, retain: bool) -> int: ...

    def subscribe(self, topics: Sequence[str], qos_list: Sequence[int]) -> int: ...

    def unsubscribe(self, topics: Sequence[str]) -> int: ...

    def is_connected(self) -> bool: ...


class PahoTransport:
    """
    paho-mqtt backed transport for one broker address.

    A fresh paho client is created on every connect() so no state leaks between
    connection epochs. Reconnect policy belongs to the supervisor, not paho.
    """

    def __init__(self, host: str, port: int, *, connect_timeout_s: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.connect_timeout_s = connect_timeout_s

        self.on_message: Optional[MessageCallback] = None
        self.on_connection_closed: Optional[ClosedCallback] = None

        self._client: Optional[mqtt.Client] = None
        self._lock = threading.Lock()
        self._connack = threading.Event()
        self._connack_rc = CONNACK_TIMEOUT

    def connect(
        self,
        client_id: str,
        username: str,
        password: str,
        keepalive: int,
        will: Optional[WillMessage],
    ) -> int:
        self._teardown()

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION1,
            client_id=client_id,
            clean_session=True,
            protocol=mqtt.MQTTv311,
        )
        if username:
            client.username_pw_set(username, password or None)
        if will is not None:
            client.will_set(will.topic, payload=will.payload, qos=will.qos, retain=will.retain)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._connack.clear()
        self._connack_rc = CONNACK_TIMEOUT
        try:
            client.connect(self.host, self.port, keepalive=keepalive)
        except OSError as exc:
            logger.error("MQTT connect to %s:%s failed: %s", self.host, self.port, exc)
            return CONNACK_SERVER_UNAVAILABLE

        with self._lock:
            self._client = client
        client.loop_start()

        if not self._connack.wait(timeout=self.connect_timeout_s):
            logger.error("No CONNACK from %s:%s within %.1fs", self.host, self.port, self.connect_timeout_s)
            self._teardown()
            return CONNACK_TIMEOUT

        if self._connack_rc != CONNACK_ACCEPTED:
            self._teardown()
        return self._connack_rc

    def disconnect(self) -> None:
        self._teardown()

    def _teardown(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        client.on_disconnect = None
        try:
            client.disconnect()
        except Exception:
            logger.exception("Error disconnecting paho client")
        client.loop_stop()

    def is_connected(self) -> bool:
        with self._lock:
            client = self._client
        return bool(client and client.is_connected())

    def publish(self, topic: str, payload: bytes, qos: int, retain: bool) -> int:
        client = self._current()
        if client is None:
            return 0
        info = client.publish(topic, payload=payload, qos=qos, retain=retain)
        return info.mid if info.rc == mqtt.MQTT_ERR_SUCCESS else 0

    def subscribe(self, topics: Sequence[str], qos_list: Sequence[int]) -> int:
        client = self._current()
        if client is None:
            return 0
        rc, mid = client.subscribe(list(zip(topics, qos_list)))
        return mid if rc == mqtt.MQTT_ERR_SUCCESS and mid else 0

    def unsubscribe(self, topics: Sequence[str]) -> int:
        client = self._current()
        if client is None:
            return 0
        rc, mid = client.unsubscribe(list(topics))
        return mid if rc == mqtt.MQTT_ERR_SUCCESS and mid else 0

    def _current(self) -> Optional[mqtt.Client]:
        with self._lock:
            client = self._client
        if client is None or not client.is_connected():
            return None
        return client

    # -------------------------
    # paho callbacks (network thread)
    # -------------------------
    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: dict, rc: int) -> None:
        if rc != CONNACK_ACCEPTED:
            # paho follows a refused CONNACK with on_disconnect; connect() reports the refusal.
            client.on_disconnect = None
        self._connack_rc = rc
        self._connack.set()

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, rc: int) -> None:
        if rc == 0:
            return
        with self._lock:
            current = self._client
        if client is not current:
            logger.debug("Ignoring disconnect rc=%s from a retired paho client", rc)
            return
        logger.warning("Unexpected disconnect rc=%s", rc)
        # paho would reconnect on its own from the loop thread; the supervisor decides instead.
        client.on_disconnect = None
        threading.Thread(target=client.loop_stop, name="paho-stop", daemon=True).start()
        callback = self.on_connection_closed
        if callback is not None:
            try:
                callback(rc)
            except Exception:
                logger.exception("connection-closed callback failed")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        callback = self.on_message
        if callback is None:
            return
        try:
            callback(msg.topic, msg.payload)
        except Exception:
            logger.exception("inbound message callback failed for %s", msg.topic)


class FakeTransport:
    """
    In-memory broker for running the bridge without a server.

    Every call is recorded and accepted calls get increasing message ids.
    connect_rc is the CONNACK code the next connect() returns; refuse=True
    makes publish/subscribe/unsubscribe return 0. With loopback enabled a
    publish is delivered back through on_message when one of the subscribed
    patterns matches, as a broker would. delay_s adds a random pause of up to
    that many seconds to each call, and failure_rate refuses that share of
    calls at random.
    """

    def __init__(
        self,
        connect_rc: int = CONNACK_ACCEPTED,
        *,
        loopback: bool = False,
        delay_s: float = 0.0,
        failure_rate: float = 0.0,
        seed: Optional[int] = None,
    ) -> None:
        self.on_message: Optional[MessageCallback] = None
        self.on_connection_closed: Optional[ClosedCallback] = None
        self.connect_rc = connect_rc
        self.loopback = loopback
        self.delay_s = delay_s
        self.failure_rate = failure_rate
        self.refuse = False
        self.connected = False
        self.connect_calls: list[tuple] = []
        self.disconnect_calls = 0
        self.published: list[tuple[str, bytes, int, bool]] = []
        self.subscribed: list[tuple[list[str], list[int]]] = []
        self.unsubscribed: list[list[str]] = []
        self._patterns: set[str] = set()
        self._mid = 0
        self._lock = threading.Lock()
        self._random = random.Random(seed)

    def _next_mid(self) -> int:
        self._mid += 1
        return self._mid

    def _pause(self) -> None:
        if self.delay_s > 0:
            time.sleep(self._random.uniform(0, self.delay_s))

    def _roll_failure(self) -> bool:
        return self.failure_rate > 0 and self._random.random() < self.failure_rate

    def _fails(self) -> bool:
        return self.refuse or self._roll_failure()

    def connect(
        self,
        client_id: str,
        username: str,
        password: str,
        keepalive: int,
        will: Optional[WillMessage],
    ) -> int:
        self._pause()
        with self._lock:
            self.connect_calls.append((client_id, username, password, keepalive, will))
            rc = self.connect_rc
            if rc == CONNACK_ACCEPTED and self._roll_failure():
                rc = CONNACK_SERVER_UNAVAILABLE
            self.connected = rc == CONNACK_ACCEPTED
            if self.connected:
                self._patterns.clear()
            return rc

    def disconnect(self) -> None:
        with self._lock:
            self.disconnect_calls += 1
            self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def publish(self, topic: str, payload: bytes, qos: int, retain: bool) -> int:
        self._pause()
        with self._lock:
            if not self.connected or self._fails():
                return 0
            self.published.append((topic, payload, qos, retain))
            mid = self._next_mid()
            echo = self.loopback and any(
                mqtt_topics.matches(p, mqtt_topics.routing_key(topic)) for p in self._patterns
            )
        if echo:
            self.deliver(topic, payload)
        return mid

    def subscribe(self, topics: Sequence[str], qos_list: Sequence[int]) -> int:
        self._pause()
        with self._lock:
            if not self.connected or self._fails():
                return 0
            self.subscribed.append((list(topics), list(qos_list)))
            self._patterns.update(mqtt_topics.normalize(t) for t in topics)
            return self._next_mid()

    def unsubscribe(self, topics: Sequence[str]) -> int:
        self._pause()
        with self._lock:
            if not self.connected or self._fails():
                return 0
            self.unsubscribed.append(list(topics))
            self._patterns.difference_update(mqtt_topics.normalize(t) for t in topics)
            return self._next_mid()

    def drop(self, rc: int = 1) -> None:
        """Lose the connection as if the broker went away."""
        self.connected = False
        callback = self.on_connection_closed
        if callback is not None:
            callback(rc)

    def deliver(self, topic: str, payload: bytes) -> None:
        """Hand an inbound message to on_message, as the network thread would."""
        callback = self.on_message
        if callback is not None:
            callback(topic, payload)

    def published_topics(self) -> list[str]:
        with self._lock:
            return [p[0] for p in self.published]
