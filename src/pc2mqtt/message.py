"""
Message value passed between handlers, the delivery queue and the transport.

Messages are immutable. The transport's acceptance is recorded by producing an
accepted copy (with_id), and device-id prefixing by producing a resolved copy
(resolve), so neither can be applied twice to the same value.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from pc2mqtt import mqtt_topics

QOS_EXACTLY_ONCE = 2


class MessageError(ValueError):
    """Raised when a message is constructed with invalid fields."""


class MessageKind(str, Enum):
    PUBLISH = "publish"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


@dataclass(frozen=True, slots=True)
class Message:
    topic: str
    kind: MessageKind = MessageKind.PUBLISH
    text: Optional[str] = None
    raw: Optional[bytes] = None
    retain: bool = False
    prepend_device_id: bool = False
    origin: Optional[str] = None  # handler_id that asked for it
    message_id: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.topic, str) or not self.topic.strip():
            raise MessageError("topic must be a non-empty string")
        if not isinstance(self.kind, MessageKind):
            raise MessageError(f"unknown message kind: {self.kind!r}")
        if self.kind is MessageKind.PUBLISH and self.text is None and self.raw is None:
            raise MessageError(f"publish to {self.topic!r} has no payload")
        if self.message_id < 0:
            raise MessageError("message_id must be >= 0")

    # -------------------------
    # Factories
    # -------------------------
    @classmethod
    def publish(
        cls,
        topic: str,
        payload: Union[str, bytes, bytearray],
        *,
        retain: bool = False,
        prepend_device_id: bool = True,
        origin: Optional[str] = None,
    ) -> "Message":
        if isinstance(payload, (bytes, bytearray)):
            return cls(
                topic=topic,
                kind=MessageKind.PUBLISH,
                raw=bytes(payload),
                retain=retain,
                prepend_device_id=prepend_device_id,
                origin=origin,
            )
        return cls(
            topic=topic,
            kind=MessageKind.PUBLISH,
            text=str(payload),
            retain=retain,
            prepend_device_id=prepend_device_id,
            origin=origin,
        )

    @classmethod
    def subscribe(
        cls, topic: str, *, prepend_device_id: bool = True, origin: Optional[str] = None
    ) -> "Message":
        return cls(
            topic=topic,
            kind=MessageKind.SUBSCRIBE,
            prepend_device_id=prepend_device_id,
            origin=origin,
        )

    @classmethod
    def unsubscribe(
        cls, topic: str, *, prepend_device_id: bool = True, origin: Optional[str] = None
    ) -> "Message":
        return cls(
            topic=topic,
            kind=MessageKind.UNSUBSCRIBE,
            prepend_device_id=prepend_device_id,
            origin=origin,
        )

    @classmethod
    def inbound(cls, topic: str, payload: bytes) -> "Message":
        """Build a received message; text is populated only for valid UTF-8."""
        raw = bytes(payload)
        try:
            text: Optional[str] = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = None
        return cls(topic=topic, kind=MessageKind.PUBLISH, text=text, raw=raw)

    # -------------------------
    # Accessors
    # -------------------------
    @property
    def qos(self) -> int:
        return QOS_EXACTLY_ONCE

    @property
    def payload(self) -> bytes:
        if self.raw:
            return self.raw
        if self.text is not None:
            return self.text.encode("utf-8")
        return b""

    @property
    def accepted(self) -> bool:
        return self.message_id > 0

    # -------------------------
    # Derived copies
    # -------------------------
    def resolve(self, device_id: str) -> "Message":
        """Apply the device-id prefix if requested. Idempotent."""
        if not self.prepend_device_id:
            return self
        return dataclasses.replace(
            self,
            topic=mqtt_topics.with_device_id(self.topic, device_id),
            prepend_device_id=False,
        )

    def with_id(self, message_id: int) -> "Message":
        return dataclasses.replace(self, message_id=message_id)

    def with_topic(self, topic: str) -> "Message":
        return dataclasses.replace(self, topic=topic, message_id=0)

    def append_topic(self, *segments: str) -> "Message":
        return self.with_topic(mqtt_topics.join(self.topic, *segments))

    def multi_level_wildcard(self) -> "Message":
        return self.append_topic(mqtt_topics.MULTI_LEVEL_WILDCARD)

    def describe(self) -> str:
        body = self.text if self.text is not None else f"<{len(self.raw or b'')} bytes>"
        return f"[{self.kind.value}] {self.topic}: {body}"
