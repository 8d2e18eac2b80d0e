# pc2mqtt/handlers/base.py

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from pc2mqtt.message import Message

if TYPE_CHECKING:  # pragma: no cover
    from pc2mqtt.handlers.host import HandlerHost


class Handler(ABC):
    """
    Base class for all pc2mqtt handlers.

    Handlers are instantiated and managed by the handler manager.
    They must not create their own MQTT clients; everything goes through the
    HandlerHost passed to initialize().
    """

    def __init__(self, **options: Any) -> None:
        self.options = options
        self.host: Optional["HandlerHost"] = None
        self.is_initialized = False

    @property
    @abstractmethod
    def handler_id(self) -> str:
        """Stable, lowercase identifier."""
        raise NotImplementedError

    def is_compatible(self) -> bool:
        """False if the handler cannot run on this host (platform, missing tools)."""
        return True

    def initialize(self, host: "HandlerHost") -> bool:
        """Keep the host and subscribe here. Return False to refuse loading."""
        self.host = host
        return self.setup()

    def setup(self) -> bool:
        return True

    @abstractmethod
    def process_message(self, message: Message) -> None:
        """Called for every inbound message routed to this handler."""
        raise NotImplementedError

    def uninitialize(self) -> None:
        """Release resources. Subscriptions are removed by the host."""

    def on_server_state(self, connected: bool) -> None:
        """Broker connection went up (True) or down (False)."""

    def run(self, stop: threading.Event) -> None:
        """Optional main loop, run in its own thread until stop is set."""

    @classmethod
    def has_main_loop(cls) -> bool:
        return cls.run is not Handler.run
