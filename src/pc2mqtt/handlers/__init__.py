from pc2mqtt.handlers.base import Handler
from pc2mqtt.handlers.host import HandlerHost

__all__ = ["Handler", "HandlerHost"]
