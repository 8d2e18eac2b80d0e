"""
Lifecycle and acknowledgment events emitted by the MQTT client.

Events are delivered in emission order on a single worker thread, never on the
thread that emitted them, so a listener cannot block the dispatcher or re-enter
the connection supervisor. A failing listener is logged and skipped.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Callable, Optional

from pc2mqtt.message import Message

logger = logging.getLogger(__name__)


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventType(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    PUBLISHED = "published"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


class CloseReason(IntEnum):
    """CONNACK refusal codes (MQTT 3.1.1) plus local close codes."""

    PROTOCOL_VERSION = 1
    IDENTITY_REJECTED = 2
    SERVER_UNAVAILABLE = 3
    BAD_CREDENTIALS = 4
    NOT_AUTHORIZED = 5
    UNKNOWN = 255
    DISCONNECTED = 98
    CONNECTION_LOST = 99

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @classmethod
    def from_connack(cls, rc: int) -> "CloseReason":
        try:
            reason = cls(rc)
        except ValueError:
            return cls.UNKNOWN
        if reason in (cls.DISCONNECTED, cls.CONNECTION_LOST):
            return cls.UNKNOWN
        return reason


_DESCRIPTIONS = {
    CloseReason.PROTOCOL_VERSION: "Protocol version mismatch",
    CloseReason.IDENTITY_REJECTED: "Identity rejected by server",
    CloseReason.SERVER_UNAVAILABLE: "Server unavailable",
    CloseReason.BAD_CREDENTIALS: "Bad username or password",
    CloseReason.NOT_AUTHORIZED: "Not authorized",
    CloseReason.UNKNOWN: "Unknown error",
    CloseReason.DISCONNECTED: "Disconnected by request",
    CloseReason.CONNECTION_LOST: "Connection lost",
}


@dataclass(frozen=True, slots=True)
class ClientEvent:
    type: EventType
    message: Optional[Message] = None
    reason: Optional[CloseReason] = None
    code: int = 0
    ts: str = field(default_factory=_utc_iso)

    @property
    def description(self) -> str:
        return self.reason.description if self.reason is not None else ""


EventListener = Callable[[ClientEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mqtt-events")
        self._closed = False
        self._worker_ident: Optional[int] = None

    def add_listener(self, listener: EventListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def emit(self, event: ClientEvent) -> None:
        with self._lock:
            if self._closed:
                logger.debug("Event bus closed, dropping %s", event.type.value)
                return
            self._executor.submit(self._deliver, event)

    def _deliver(self, event: ClientEvent) -> None:
        self._worker_ident = threading.get_ident()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", event.type.value)

    def close(self) -> None:
        """Deliver what is pending, then stop accepting events."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        # A listener closing the bus must not wait on its own thread.
        self._executor.shutdown(wait=threading.get_ident() != self._worker_ident)
