"""
System load handler.

Publishes the 1/5/15-minute load average to <device_id>/system/load every
interval_s seconds, and on demand when anything is published to
<device_id>/system/load/get.
"""
from __future__ import annotations

import json
import os
import threading

from pc2mqtt.handlers.base import Handler
from pc2mqtt.message import Message


class SystemLoadHandler(Handler):
    def __init__(self, interval_s: float = 30.0, topic: str = "system/load", **options) -> None:
        super().__init__(interval_s=interval_s, topic=topic, **options)
        self.interval_s = float(interval_s)
        self.topic = topic

    @property
    def handler_id(self) -> str:
        return "system_load"

    def is_compatible(self) -> bool:
        return hasattr(os, "getloadavg")

    def setup(self) -> bool:
        return self.host.subscribe(f"{self.topic}/get")

    def process_message(self, message: Message) -> None:
        self.publish_load()

    def run(self, stop: threading.Event) -> None:
        while not stop.wait(timeout=self.interval_s):
            self.publish_load()

    def publish_load(self) -> bool:
        one, five, fifteen = os.getloadavg()
        payload = json.dumps({"load1": one, "load5": five, "load15": fifteen})
        return self.host.queue_publish(self.topic, payload)
