"""
Handler manager. Owns the loaded handlers for one MQTT client.

Attaches handlers to the router, initializes them through their HandlerHost,
runs optional main loops, forwards broker up/down changes, and tears
everything down in order.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from pc2mqtt.events import ClientEvent, EventType
from pc2mqtt.handlers.base import Handler
from pc2mqtt.handlers.host import HandlerHost, MqttBridge

logger = logging.getLogger(__name__)


@dataclass
class _Managed:
    handler: Handler
    host: HandlerHost
    error: Optional[str] = None
    stop: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None


class HandlerManager:
    def __init__(self, client: MqttBridge, *, join_timeout_s: float = 2.0) -> None:
        self.client = client
        self.join_timeout_s = join_timeout_s
        self._managed: dict[str, _Managed] = {}
        self._lock = threading.Lock()

    # -------------------------
    # Queries
    # -------------------------
    def get(self, handler_id: str) -> Optional[Handler]:
        with self._lock:
            m = self._managed.get(handler_id)
        return m.handler if m else None

    def handlers(self) -> list[Handler]:
        with self._lock:
            return [m.handler for m in self._managed.values()]

    def initialized(self) -> list[Handler]:
        return [h for h in self.handlers() if h.is_initialized]

    def last_error(self, handler_id: str) -> Optional[str]:
        with self._lock:
            m = self._managed.get(handler_id)
        return m.error if m else None

    # -------------------------
    # Lifecycle
    # -------------------------
    def add(self, handler: Handler, *, options: Optional[dict] = None) -> None:
        hid = handler.handler_id
        with self._lock:
            if hid in self._managed:
                raise ValueError(f"handler '{hid}' already added")
            host = HandlerHost(hid, self.client, options=options or handler.options)
            self._managed[hid] = _Managed(handler=handler, host=host)
        self.client.router.attach(handler)

    def initialize(self, handler_id: str) -> bool:
        """
        Initialize one handler. Failures are logged and isolated: the handler is
        detached from the router and its held messages are discarded.
        """
        with self._lock:
            m = self._managed.get(handler_id)
        if m is None:
            logger.warning("Unknown handler: %s", handler_id)
            return False

        handler = m.handler
        try:
            ok = bool(handler.initialize(m.host))
        except Exception as exc:
            logger.exception("Handler %s failed to initialize", handler_id)
            m.error = str(exc)
            ok = False

        if not ok:
            m.error = m.error or "initialize() returned False"
            m.host.unsubscribe_all()
            self.client.router.detach(handler)
            m.host.release()
            with self._lock:
                self._managed.pop(handler_id, None)
            logger.warning("Handler %s not registered: %s", handler_id, m.error)
            return False

        replayed = self.client.router.flush(handler)
        if replayed:
            logger.debug("Replayed %d held messages to %s", replayed, handler_id)
        logger.info("Initialized handler: %s", handler_id)
        return True

    def initialize_all(self) -> dict[str, bool]:
        return {hid: self.initialize(hid) for hid in [h.handler_id for h in self.handlers()]}

    def start(self) -> None:
        """Start the main loop of every initialized handler that has one."""
        with self._lock:
            managed = list(self._managed.values())
        for m in managed:
            if not m.handler.is_initialized or not m.handler.has_main_loop() or m.thread:
                continue
            m.stop.clear()
            m.thread = threading.Thread(
                target=self._run_handler,
                args=(m,),
                name=f"handler-{m.handler.handler_id}",
                daemon=True,
            )
            m.thread.start()

    def _run_handler(self, m: _Managed) -> None:
        try:
            m.handler.run(m.stop)
        except Exception as exc:
            m.error = str(exc)
            logger.exception("Handler %s main loop crashed", m.handler.handler_id)

    def remove(self, handler_id: str) -> bool:
        with self._lock:
            m = self._managed.pop(handler_id, None)
        if m is None:
            return False
        self._dispose(m)
        return True

    def dispose(self) -> None:
        with self._lock:
            managed = list(self._managed.values())
            self._managed.clear()
        for m in managed:
            self._dispose(m)

    def _dispose(self, m: _Managed) -> None:
        handler = m.handler
        hid = handler.handler_id
        m.stop.set()
        if m.thread is not None and m.thread is not threading.current_thread():
            m.thread.join(timeout=self.join_timeout_s)
            if m.thread.is_alive():
                logger.warning("Handler %s main loop did not stop within timeout", hid)

        try:
            m.host.unsubscribe_all()
        except Exception:
            logger.exception("Failed to unsubscribe topics of %s", hid)
        self.client.router.detach(handler)

        try:
            if handler.is_initialized:
                handler.uninitialize()
        except Exception as exc:
            logger.warning("Unable to properly dispose of %s: %s", hid, exc)
        finally:
            handler.is_initialized = False
            m.host.release()
        logger.info("Disposed handler: %s", hid)

    # -------------------------
    # Client events
    # -------------------------
    def on_client_event(self, event: ClientEvent) -> None:
        """Listener for BridgeMQTTClient events: tells handlers when the broker goes up or down."""
        if event.type is EventType.CONNECTED:
            connected = True
        elif event.type in (EventType.CLOSED, EventType.RECONNECTING):
            connected = False
        else:
            return
        for handler in self.initialized():
            try:
                handler.on_server_state(connected)
            except Exception:
                logger.exception("Handler %s failed handling server state", handler.handler_id)
