"""
Handler host: the facade a handler uses to reach the MQTT client.

Provides publish / subscribe on the handler's behalf (tagging every request
with the handler id so routes land on the right handler), device id, options
and a handler-scoped logger.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, Union

from pc2mqtt import mqtt_topics
from pc2mqtt.message import Message
from pc2mqtt.router import TopicRouter


class MqttBridge(Protocol):
    """
    Minimal interface handlers need from the MQTT client.
    Keep it small to prevent tight coupling.
    """

    client_id: str
    router: TopicRouter

    def send_message(self, message: Message) -> Message: ...

    def queue_message(self, message: Message, *, block: bool = True, timeout: Optional[float] = None) -> bool: ...


class HandlerHost:
    def __init__(self, handler_id: str, client: MqttBridge, *, options: Optional[dict[str, Any]] = None) -> None:
        if not isinstance(handler_id, str) or not handler_id:
            raise ValueError("handler_id must be a non-empty string")
        self.handler_id = handler_id
        self.options = dict(options or {})
        self._client: Optional[MqttBridge] = client
        self.logger = logging.getLogger(f"pc2mqtt.handler.{handler_id}")

    @property
    def device_id(self) -> str:
        if self._client is None:
            return ""
        return self._client.client_id

    @property
    def active(self) -> bool:
        return self._client is not None

    def release(self) -> None:
        """Detach from the client; later calls fail softly."""
        self._client = None

    def topic(self, topic: str, prepend_device_id: bool = True) -> str:
        """The topic as it will appear on the broker."""
        if prepend_device_id and self._client is not None:
            return mqtt_topics.with_device_id(topic, self._client.client_id)
        return topic

    # -------------------------
    # Outbound
    # -------------------------
    def publish(
        self,
        topic_or_message: Union[str, Message],
        payload: Union[str, bytes, None] = None,
        *,
        prepend_device_id: bool = True,
        retain: bool = False,
    ) -> bool:
        """Send now. True once the transport accepted it (message id > 0)."""
        if self._client is None:
            return False
        msg = self._publish_message(topic_or_message, payload, prepend_device_id, retain)
        self.logger.debug("publishing to [%s]: %s", msg.topic, msg.describe())
        return self._client.send_message(msg).accepted

    def queue_publish(
        self,
        topic_or_message: Union[str, Message],
        payload: Union[str, bytes, None] = None,
        *,
        prepend_device_id: bool = True,
        retain: bool = False,
        block: bool = True,
        timeout: Optional[float] = None,
    ) -> bool:
        """Queue for ordered delivery. Returns True once queued."""
        if self._client is None:
            return False
        msg = self._publish_message(topic_or_message, payload, prepend_device_id, retain)
        return self._client.queue_message(msg, block=block, timeout=timeout)

    def subscribe(self, pattern: str, *, prepend_device_id: bool = True) -> bool:
        if self._client is None:
            return False
        msg = Message.subscribe(pattern, prepend_device_id=prepend_device_id, origin=self.handler_id)
        result = self._client.send_message(msg)
        self.logger.debug("subscribing to [%s] (%s)", result.topic, result.message_id)
        return result.accepted

    def unsubscribe(self, pattern: str, *, prepend_device_id: bool = True) -> bool:
        if self._client is None:
            return False
        msg = Message.unsubscribe(pattern, prepend_device_id=prepend_device_id, origin=self.handler_id)
        result = self._client.send_message(msg)
        self.logger.debug("unsubscribing from [%s] (%s)", result.topic, result.message_id)
        return result.accepted

    def unsubscribe_all(self) -> list[str]:
        """Drop every route of this handler; broker subscriptions no one else uses are removed."""
        client = self._client
        if client is None:
            return []
        removed = client.router.unregister_all(self.handler_id)
        still_routed = set(client.router.patterns())
        for pattern in removed:
            if pattern in still_routed:
                continue
            client.send_message(Message.unsubscribe(pattern, prepend_device_id=False))
        return removed

    def _publish_message(
        self,
        topic_or_message: Union[str, Message],
        payload: Union[str, bytes, None],
        prepend_device_id: bool,
        retain: bool,
    ) -> Message:
        if isinstance(topic_or_message, Message):
            return topic_or_message
        return Message.publish(
            topic_or_message,
            payload if payload is not None else "",
            retain=retain,
            prepend_device_id=prepend_device_id,
            origin=self.handler_id,
        )
