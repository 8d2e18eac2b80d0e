"""
Topic relay handler.

Re-publishes everything under source_prefix to the same sub-topic under
target_prefix, payload untouched. Used e.g. to copy audio frames from a base
station to a satellite:

    source_prefix = "hermes/audioServer/base/playBytes"
    target_prefix = "hermes/audioServer/satellite/playBytes"
"""
from __future__ import annotations

from pc2mqtt import mqtt_topics
from pc2mqtt.handlers.base import Handler
from pc2mqtt.message import Message


class TopicRelayHandler(Handler):
    def __init__(
        self,
        source_prefix: str = "hermes/audioServer/base/playBytes",
        target_prefix: str = "hermes/audioServer/satellite/playBytes",
        **options,
    ) -> None:
        super().__init__(source_prefix=source_prefix, target_prefix=target_prefix, **options)
        self.source_prefix = mqtt_topics.normalize(source_prefix)
        self.target_prefix = mqtt_topics.normalize(target_prefix)
        if mqtt_topics.matches(f"{self.source_prefix}/#", self.target_prefix):
            raise ValueError("target_prefix must not be inside source_prefix")

    @property
    def handler_id(self) -> str:
        return "topic_relay"

    def setup(self) -> bool:
        pattern = Message.subscribe(self.source_prefix, prepend_device_id=False).multi_level_wildcard()
        return self.host.subscribe(pattern.topic, prepend_device_id=False)

    def process_message(self, message: Message) -> None:
        topic = mqtt_topics.normalize(message.topic)
        prefix = self.source_prefix + mqtt_topics.SEPARATOR
        if not topic.startswith(prefix):
            return
        relayed = Message.publish(
            mqtt_topics.join(self.target_prefix, topic[len(prefix):]),
            message.payload,
            prepend_device_id=False,
            origin=self.handler_id,
        )
        self.host.publish(relayed)
