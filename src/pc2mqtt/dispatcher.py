"""
Dispatcher: drains the delivery queue for one connection epoch.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from pc2mqtt.delivery_queue import DeliveryQueue
from pc2mqtt.message import Message

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 0.05


class Dispatcher:
    """
    Pops the head of the queue while connected and hands it to submit().

    While disconnected it idles without popping, so the head message is never
    handed to a dead transport. A message that was popped but could not be
    delivered (epoch cancelled, or the transport dropped and refused it) goes
    back to the head of the queue.
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        submit: Callable[[Message], Message],
        is_connected: Callable[[], bool],
        *,
        epoch: int = 0,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ) -> None:
        self.queue = queue
        self.submit = submit
        self.is_connected = is_connected
        self.epoch = epoch
        self.poll_interval_s = poll_interval_s
        self.cancel_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self.run,
            name=f"mqtt-dispatch-{self.epoch}",
            daemon=True,
        )
        self._thread.start()

    def cancel(self) -> None:
        self.cancel_event.set()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Cancel and wait for the loop to exit. Returns True once it has."""
        self.cancel()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Dispatcher epoch=%s did not stop within %.1fs", self.epoch, timeout or 0)
            return False
        return True

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    # -------------------------
    # Loop
    # -------------------------
    def run(self) -> None:
        logger.debug("Dispatcher epoch=%s started", self.epoch)
        while not self.cancel_event.is_set():
            if not self.is_connected():
                self.cancel_event.wait(self.poll_interval_s)
                continue

            msg = self.queue.get(timeout=self.poll_interval_s)
            if msg is None:
                continue

            if self.cancel_event.is_set() or not self.is_connected():
                self.queue.requeue(msg)
                continue

            self._deliver(msg)
        logger.debug("Dispatcher epoch=%s stopped", self.epoch)

    def _deliver(self, msg: Message) -> None:
        logger.debug("Process msg queue: %s", msg.describe())
        try:
            result = self.submit(msg)
        except Exception:
            logger.exception("Submitting %s failed", msg.describe())
            result = msg

        if result.accepted:
            return
        if not self.is_connected():
            logger.info("Transport dropped while sending %s; requeued", msg.topic)
            self.queue.requeue(msg)
            return
        logger.warning("Transport refused %s; dropped", msg.describe())
