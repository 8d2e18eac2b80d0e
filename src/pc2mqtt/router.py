"""
Topic router: many-to-many mapping of subscription patterns to handlers.

Mutations happen under one table lock; dispatch works on a snapshot and runs
under a dispatch lock that unregister_all() also takes, so once
unregister_all() returns no dispatch can still reach the removed handler.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from pc2mqtt import mqtt_topics
from pc2mqtt.message import Message

logger = logging.getLogger(__name__)

DEFAULT_OVERFLOW_SIZE = 500


class RoutableHandler(Protocol):
    handler_id: str
    is_initialized: bool

    def process_message(self, message: Message) -> None: ...


HandlerRef = Union[str, RoutableHandler]


@dataclass(frozen=True, slots=True)
class Registration:
    pattern: str
    handler_id: str
    registered_at: float = field(default_factory=time.time)


class TopicRouter:
    def __init__(self, *, overflow_size: int = DEFAULT_OVERFLOW_SIZE, hold_unrouted: bool = True) -> None:
        self._lock = threading.RLock()
        self._dispatch_lock = threading.RLock()
        self._handlers: dict[str, RoutableHandler] = {}
        self._routes: dict[str, dict[str, Registration]] = {}
        self._pending: dict[str, list[Message]] = {}
        self._unrouted: deque[Message] = deque(maxlen=overflow_size)
        self._holding = hold_unrouted

    # -------------------------
    # Known handlers
    # -------------------------
    def attach(self, handler: RoutableHandler) -> None:
        hid = _handler_id(handler)
        with self._lock:
            existing = self._handlers.get(hid)
            if existing is not None and existing is not handler:
                raise ValueError(f"another handler is already attached as '{hid}'")
            self._handlers[hid] = handler

    def detach(self, handler: HandlerRef) -> list[str]:
        removed = self.unregister_all(handler)
        with self._lock:
            hid = _handler_id(handler)
            self._handlers.pop(hid, None)
            self._pending.pop(hid, None)
        return removed

    def get_handler(self, handler_id: str) -> Optional[RoutableHandler]:
        with self._lock:
            return self._handlers.get(handler_id)

    # -------------------------
    # Registration
    # -------------------------
    def register(self, pattern: str, handler: HandlerRef) -> bool:
        """
        Route pattern to handler. Returns False if the handler is unknown.

        Held unrouted messages matching the new pattern are replayed to the
        handler in arrival order and then forgotten.
        """
        norm = mqtt_topics.validate_pattern(pattern)
        hid = _handler_id(handler)
        with self._dispatch_lock:
            with self._lock:
                if hid not in self._handlers:
                    if isinstance(handler, str):
                        logger.warning("Cannot route %s: unknown handler '%s'", norm, hid)
                        return False
                    self._handlers[hid] = handler
                routes = self._routes.setdefault(norm, {})
                if hid not in routes:
                    routes[hid] = Registration(pattern=norm, handler_id=hid)
                    logger.debug("Mapped %s -> %s", norm, hid)
                replay = self._take_unrouted(norm)
            for msg in replay:
                logger.debug("Replaying held message %s to %s", msg.topic, hid)
                self._deliver(hid, msg)
        return True

    def unregister(self, pattern: str, handler: HandlerRef) -> bool:
        norm = mqtt_topics.normalize(pattern)
        hid = _handler_id(handler)
        with self._dispatch_lock, self._lock:
            routes = self._routes.get(norm)
            if not routes or hid not in routes:
                return False
            del routes[hid]
            if not routes:
                del self._routes[norm]
            logger.debug("Unmapped %s -> %s", norm, hid)
            return True

    def unregister_all(self, handler: HandlerRef) -> list[str]:
        hid = _handler_id(handler)
        removed: list[str] = []
        with self._dispatch_lock, self._lock:
            for pattern in list(self._routes):
                routes = self._routes[pattern]
                if routes.pop(hid, None) is not None:
                    removed.append(pattern)
                if not routes:
                    del self._routes[pattern]
        if removed:
            logger.debug("Unmapped all topics for %s: %s", hid, removed)
        return removed

    def patterns(self, handler: Optional[HandlerRef] = None) -> list[str]:
        with self._lock:
            if handler is None:
                return sorted(self._routes)
            hid = _handler_id(handler)
            return sorted(p for p, routes in self._routes.items() if hid in routes)

    def registrations(self) -> list[Registration]:
        with self._lock:
            return [reg for routes in self._routes.values() for reg in routes.values()]

    # -------------------------
    # Dispatch
    # -------------------------
    def match(self, topic: str) -> list[str]:
        """Handler ids whose patterns match topic, each listed once."""
        norm = mqtt_topics.routing_key(topic)
        with self._lock:
            seen: dict[str, None] = {}
            for pattern, routes in self._routes.items():
                if mqtt_topics.matches(pattern, norm):
                    for hid in routes:
                        seen.setdefault(hid, None)
            return list(seen)

    def dispatch(self, message: Message) -> int:
        """Deliver an inbound message to every matching handler. Returns the number reached."""
        with self._dispatch_lock:
            targets = self.match(message.topic)
            if not targets:
                self._hold_unrouted(message)
                return 0
            delivered = 0
            for hid in targets:
                if self._deliver(hid, message):
                    delivered += 1
            return delivered

    def _deliver(self, hid: str, message: Message) -> bool:
        with self._lock:
            handler = self._handlers.get(hid)
            if handler is None:
                return False
            if not getattr(handler, "is_initialized", True):
                self._pending.setdefault(hid, []).append(message)
                logger.debug("Handler %s not initialized; holding %s", hid, message.topic)
                return False
        try:
            handler.process_message(message)
        except Exception:
            logger.exception("Handler %s failed processing %s", hid, message.topic)
        return True

    def flush(self, handler: HandlerRef) -> int:
        """
        Mark the handler initialized and replay messages held while it was
        initializing, in order. No new message can overtake the held ones.
        """
        hid = _handler_id(handler)
        with self._dispatch_lock:
            with self._lock:
                target = self._handlers.get(hid)
                if target is not None:
                    target.is_initialized = True
                pending = self._pending.pop(hid, [])
            delivered = 0
            for msg in pending:
                if self._deliver(hid, msg):
                    delivered += 1
            return delivered

    def discard_pending(self, handler: HandlerRef) -> int:
        with self._lock:
            return len(self._pending.pop(_handler_id(handler), []))

    # -------------------------
    # Unrouted hold window
    # -------------------------
    @property
    def holding_unrouted(self) -> bool:
        return self._holding

    def release_unrouted(self) -> int:
        """Stop holding unrouted messages; drop any still held. Returns the number dropped."""
        with self._lock:
            self._holding = False
            dropped = len(self._unrouted)
            self._unrouted.clear()
        if dropped:
            logger.info("Dropped %d unrouted messages held during startup", dropped)
        return dropped

    def _hold_unrouted(self, message: Message) -> None:
        with self._lock:
            if not self._holding:
                logger.debug("No handler for %s", message.topic)
                return
            if len(self._unrouted) == self._unrouted.maxlen:
                logger.warning("Unrouted hold buffer full; dropping oldest message")
            self._unrouted.append(message)

    def _take_unrouted(self, pattern: str) -> list[Message]:
        taken: list[Message] = []
        kept: deque[Message] = deque(maxlen=self._unrouted.maxlen)
        for msg in self._unrouted:
            if mqtt_topics.matches(pattern, mqtt_topics.routing_key(msg.topic)):
                taken.append(msg)
            else:
                kept.append(msg)
        self._unrouted = kept
        return taken


def _handler_id(handler: Any) -> str:
    if isinstance(handler, str):
        return handler
    return handler.handler_id
