"""
MQTT client for pc2mqtt: connection supervision, ordered delivery, inbound routing.

connect() performs the broker handshake with a last will configured up front and
starts one dispatcher per connection epoch. A reconnect timer (started once)
brings the connection back after a loss. All outbound traffic either goes
through the delivery queue (queue_message) or is sent synchronously
(send_message). Inbound messages are handed to the topic router on a single
worker thread, never on the network thread.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Optional

from pc2mqtt import mqtt_topics
from pc2mqtt.config import MqttSettings
from pc2mqtt.delivery_queue import DeliveryQueue
from pc2mqtt.dispatcher import DEFAULT_POLL_INTERVAL_S, Dispatcher
from pc2mqtt.events import ClientEvent, CloseReason, EventBus, EventListener, EventType
from pc2mqtt.message import QOS_EXACTLY_ONCE, Message, MessageKind
from pc2mqtt.router import TopicRouter
from pc2mqtt.transport import CONNACK_ACCEPTED, FakeTransport, PahoTransport, Transport, WillMessage

logger = logging.getLogger(__name__)

SETTLE_DELAY_S = 0.01
FAKE_MAX_DELAY_S = 0.05
FAKE_FAILURE_RATE = 0.1


def make_transport(settings: MqttSettings) -> Transport:
    """Paho connection to the configured broker, or the in-memory broker when fake_broker is set."""
    if not settings.fake_broker:
        return PahoTransport(settings.broker, settings.port)
    logger.warning(
        "Using in-memory fake broker (delays=%s, failures=%s); nothing leaves this process",
        settings.fake_delays,
        settings.fake_failures,
    )
    return FakeTransport(
        loopback=True,
        delay_s=FAKE_MAX_DELAY_S if settings.fake_delays else 0.0,
        failure_rate=FAKE_FAILURE_RATE if settings.fake_failures else 0.0,
    )


class ClientClosedError(RuntimeError):
    """Raised when the client is used after an explicit disconnect()."""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class BridgeMQTTClient:
    """
    Owns the broker connection for one device.

    Context rules:
    - connect() blocks for the handshake; do not call it from a handler's
      process_message().
    - queue_message() blocks while the delivery queue is full.
    - Listeners registered with add_listener() run on the event worker thread.
    """

    def __init__(
        self,
        settings: MqttSettings,
        *,
        transport: Optional[Transport] = None,
        router: Optional[TopicRouter] = None,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        dispatcher_join_timeout_s: float = 5.0,
    ) -> None:
        self.settings = settings
        self.client_id = mqtt_topics.validate_device_id(settings.device_id)
        self.poll_interval_s = poll_interval_s
        self.dispatcher_join_timeout_s = dispatcher_join_timeout_s

        self.router = router if router is not None else TopicRouter()
        self.events = EventBus()
        self.queue = DeliveryQueue(settings.queue_size)

        if transport is None:
            transport = make_transport(settings)
        transport.on_message = self._on_message
        transport.on_connection_closed = self._on_connection_closed
        self._transport: Optional[Transport] = transport

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mqtt-inbound")
        self._inbound_ident: Optional[int] = None

        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._connect_lock = threading.RLock()
        self._closed = False

        self._dispatcher: Optional[Dispatcher] = None
        self._epoch = 0

        self._reconnect_thread: Optional[threading.Thread] = None
        self._reconnect_stop_event = threading.Event()

    # -------------------------
    # State / listeners
    # -------------------------
    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def closed(self) -> bool:
        return self._closed

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        if previous is not state:
            logger.debug("Connection state %s -> %s", previous.value, state.value)

    def add_listener(self, listener: EventListener) -> None:
        self.events.add_listener(listener)

    def remove_listener(self, listener: EventListener) -> None:
        self.events.remove_listener(listener)

    def is_connected(self) -> bool:
        transport = self._transport
        return bool(transport is not None and transport.is_connected())

    def dispatcher_alive(self) -> bool:
        d = self._dispatcher
        return bool(d and d.is_alive())

    # -------------------------
    # Connection lifecycle
    # -------------------------
    def connect(self) -> bool:
        """
        Connect (or reconnect) to the broker. Returns True when CONNACK accepted.

        A refusal is reported as a CLOSED event and is not retried here; the
        reconnect timer retries on its next tick.
        """
        with self._connect_lock:
            if self._closed:
                raise ClientClosedError("client has been disconnected")
            transport = self._transport
            assert transport is not None

            if self.settings.auto_reconnect:
                self._start_reconnect_timer()

            retired = self._retire_dispatcher()

            if transport.is_connected():
                transport.disconnect()
                time.sleep(SETTLE_DELAY_S)

            self._set_state(ConnectionState.CONNECTING)
            will = self._build_will()
            try:
                rc = transport.connect(
                    self.client_id,
                    self.settings.username,
                    self.settings.password,
                    self.settings.will.keepalive_s,
                    will,
                )
            except Exception:
                logger.exception("Failed to connect to MQTT broker")
                rc = int(CloseReason.UNKNOWN)

            if rc != CONNACK_ACCEPTED or not transport.is_connected():
                reason = CloseReason.from_connack(rc) if rc != CONNACK_ACCEPTED else CloseReason.CONNECTION_LOST
                logger.error("MQTT connect failed rc=%s (%s)", rc, reason.description)
                self._set_state(
                    ConnectionState.RECONNECTING if self.settings.auto_reconnect else ConnectionState.DISCONNECTED
                )
                self._emit(ClientEvent(EventType.CLOSED, reason=reason, code=int(rc)))
                return False

            logger.info(
                "Connected to MQTT broker %s:%s as %s",
                self.settings.broker,
                self.settings.port,
                self.client_id,
            )
            self._set_state(ConnectionState.CONNECTED)

            if self.settings.will.enabled:
                self.send_message(self._status_message(self.settings.will.online_message))
            if self.settings.resubscribe_on_reconnect:
                self._resubscribe()

            self._emit(ClientEvent(EventType.CONNECTED))
            if retired:
                self._start_dispatcher()
            return True

    def disconnect(self) -> None:
        """Terminal shutdown: no reconnect is attempted afterwards."""
        with self._connect_lock:
            if self._closed:
                return
            self._closed = True

        self._stop_reconnect_timer()
        self._retire_dispatcher()

        transport = self._transport
        try:
            if transport is not None:
                if transport.is_connected() and self.settings.will.enabled:
                    self.send_message(self._status_message(self.settings.will.offline_message))
                transport.disconnect()
        finally:
            self._transport = None
            self._set_state(ConnectionState.CLOSED)
            logger.info("Disconnected from MQTT broker")
            self._emit(
                ClientEvent(
                    EventType.CLOSED,
                    reason=CloseReason.DISCONNECTED,
                    code=int(CloseReason.DISCONNECTED),
                )
            )
            self.events.close()
            # A handler disconnecting must not wait on its own thread.
            self._executor.shutdown(wait=threading.get_ident() != self._inbound_ident)

    def check_connection(self) -> bool:
        """
        One reconnect-timer tick. Returns True if a reconnect was attempted.

        Does nothing while connected, closed, or while another connect() runs.
        """
        if self._closed or self.is_connected():
            return False
        if not self._connect_lock.acquire(blocking=False):
            return False
        try:
            if self._closed or self.is_connected():
                return False
            logger.info("MQTT connection lost; reconnecting")
            self._set_state(ConnectionState.RECONNECTING)
            self._emit(ClientEvent(EventType.RECONNECTING))
            if self._dispatcher is not None:
                self._dispatcher.cancel()
            self.connect()
            return True
        except ClientClosedError:
            return False
        except Exception:
            logger.exception("Reconnect attempt failed")
            return True
        finally:
            self._connect_lock.release()

    def _build_will(self) -> Optional[WillMessage]:
        will = self.settings.will
        if not will.enabled:
            return None
        return WillMessage(
            topic=mqtt_topics.with_device_id(will.topic, self.client_id),
            payload=will.offline_message,
            qos=QOS_EXACTLY_ONCE,
            retain=will.retain,
        )

    def _status_message(self, payload: str) -> Message:
        return Message.publish(
            self.settings.will.topic,
            payload,
            retain=self.settings.will.retain,
            prepend_device_id=True,
        )

    def _resubscribe(self) -> None:
        patterns = self.router.patterns()
        for pattern in patterns:
            result = self.subscribe(Message.subscribe(pattern, prepend_device_id=False))
            if not result.accepted:
                logger.warning("Re-subscribe failed: %s", pattern)
        if patterns:
            logger.info("Re-subscribed %d topics", len(patterns))

    # -------------------------
    # Reconnect timer
    # -------------------------
    def _start_reconnect_timer(self) -> None:
        if self._reconnect_thread is not None:
            return
        self._reconnect_stop_event.clear()
        self._reconnect_thread = threading.Thread(
            target=self._reconnect_loop,
            name="mqtt-reconnect",
            daemon=True,
        )
        self._reconnect_thread.start()

    def _stop_reconnect_timer(self) -> None:
        thread = self._reconnect_thread
        if thread is None:
            return
        self._reconnect_stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def _reconnect_loop(self) -> None:
        interval = self.settings.reconnect_interval_s
        while not self._reconnect_stop_event.wait(timeout=interval):
            try:
                self.check_connection()
            except Exception:
                logger.exception("Reconnect timer error")

    # -------------------------
    # Dispatcher
    # -------------------------
    def _start_dispatcher(self) -> None:
        self._epoch += 1
        dispatcher = Dispatcher(
            self.queue,
            self.send_message,
            self.is_connected,
            epoch=self._epoch,
            poll_interval_s=self.poll_interval_s,
        )
        self._dispatcher = dispatcher
        dispatcher.start()

    def _retire_dispatcher(self) -> bool:
        """Stop the current dispatcher. Returns False if it is still running."""
        dispatcher = self._dispatcher
        if dispatcher is None:
            return True
        if not dispatcher.stop(timeout=self.dispatcher_join_timeout_s):
            logger.error(
                "Previous dispatcher (epoch=%s) is still running; not starting another",
                dispatcher.epoch,
            )
            return False
        self._dispatcher = None
        return True

    # -------------------------
    # Outbound
    # -------------------------
    def queue_message(
        self, message: Message, *, block: bool = True, timeout: Optional[float] = None
    ) -> bool:
        """
        Accept a message for ordered delivery. Returns once it is queued, not sent.

        Raises QueueFullError when block is False (or timeout expires) and the
        queue stays full.
        """
        if self._closed:
            raise ClientClosedError("client has been disconnected")
        _validate_topic(message)
        self.queue.put(message, block=block, timeout=timeout)
        logger.debug("Queued %s (%d pending)", message.describe(), len(self.queue))
        return True

    def send_message(self, message: Message) -> Message:
        """Send now, bypassing the queue. Returns the accepted copy, or the message with id 0."""
        if message.kind is MessageKind.SUBSCRIBE:
            return self.subscribe(message)
        if message.kind is MessageKind.UNSUBSCRIBE:
            return self.unsubscribe(message)
        return self.publish(message)

    def publish(self, message: Message) -> Message:
        msg = message.resolve(self.client_id)
        _validate_topic(msg)
        transport = self._transport
        if transport is None:
            logger.warning("Publish to %s after disconnect ignored", msg.topic)
            return msg
        try:
            mid = transport.publish(msg.topic, msg.payload, QOS_EXACTLY_ONCE, msg.retain)
        except Exception:
            logger.exception("Publish to %s failed", msg.topic)
            mid = 0
        if mid <= 0:
            return msg
        result = msg.with_id(mid)
        self._emit(ClientEvent(EventType.PUBLISHED, message=result))
        return result

    def subscribe(self, message: Message) -> Message:
        msg = message.resolve(self.client_id)
        pattern = mqtt_topics.validate_pattern(msg.topic)
        transport = self._transport
        if transport is None:
            logger.warning("Subscribe to %s after disconnect ignored", pattern)
            return msg
        try:
            mid = transport.subscribe([pattern], [QOS_EXACTLY_ONCE])
        except Exception:
            logger.exception("Subscribe to %s failed", pattern)
            mid = 0
        if mid <= 0:
            return msg
        result = msg.with_id(mid)
        if result.origin:
            self.router.register(pattern, result.origin)
        logger.info("Subscribed: %s", pattern)
        self._emit(ClientEvent(EventType.SUBSCRIBED, message=result))
        return result

    def unsubscribe(self, message: Message) -> Message:
        msg = message.resolve(self.client_id)
        pattern = mqtt_topics.validate_pattern(msg.topic)
        transport = self._transport
        if transport is None:
            logger.warning("Unsubscribe from %s after disconnect ignored", pattern)
            return msg
        try:
            mid = transport.unsubscribe([pattern])
        except Exception:
            logger.exception("Unsubscribe from %s failed", pattern)
            mid = 0
        if mid <= 0:
            return msg
        result = msg.with_id(mid)
        if result.origin:
            self.router.unregister(pattern, result.origin)
        logger.info("Unsubscribed: %s", pattern)
        self._emit(ClientEvent(EventType.UNSUBSCRIBED, message=result))
        return result

    # -------------------------
    # Transport callbacks (network thread)
    # -------------------------
    def _on_message(self, topic: str, payload: bytes) -> None:
        try:
            msg = Message.inbound(topic, payload)
        except ValueError as exc:
            logger.error("Dropping inbound message topic=%r err=%s", topic, exc)
            return
        logger.debug("Message received for [%s]", topic)
        try:
            self._executor.submit(self._dispatch_inbound, msg)
        except RuntimeError:
            logger.debug("Inbound executor stopped; dropping %s", topic)

    def _dispatch_inbound(self, msg: Message) -> None:
        self._inbound_ident = threading.get_ident()
        try:
            self.router.dispatch(msg)
        except Exception:
            logger.exception("Routing inbound message %s failed", msg.topic)

    def _on_connection_closed(self, rc: int) -> None:
        if self._closed:
            return
        if self.state is ConnectionState.CONNECTING:
            # connect() reports the outcome of its own handshake
            logger.debug("Connection closed rc=%s during handshake", rc)
            return
        logger.warning("Connection to MQTT server closed rc=%s", rc)
        self._set_state(
            ConnectionState.RECONNECTING if self.settings.auto_reconnect else ConnectionState.DISCONNECTED
        )
        self._emit(
            ClientEvent(
                EventType.CLOSED,
                reason=CloseReason.CONNECTION_LOST,
                code=int(CloseReason.CONNECTION_LOST),
            )
        )

    def _emit(self, event: ClientEvent) -> None:
        try:
            self.events.emit(event)
        except Exception:
            logger.exception("Failed to emit %s", event.type.value)


def _validate_topic(message: Message) -> None:
    if message.kind is MessageKind.PUBLISH:
        mqtt_topics.normalize(message.topic)
        if mqtt_topics.is_pattern(message.topic):
            raise mqtt_topics.TopicError(f"cannot publish to a wildcard topic: {message.topic!r}")
    else:
        mqtt_topics.validate_pattern(message.topic)
