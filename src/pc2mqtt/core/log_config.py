"""
Apply log level from the command line or env.

Single log level for all scopes (core, handlers).
An explicit level (--log-level) takes precedence over PC2MQTT_LOG_LEVEL env.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def resolve_level(explicit: Optional[str] = None) -> int:
    """
    Resolve log level: explicit value if given, else PC2MQTT_LOG_LEVEL env, else INFO.
    """
    if explicit:
        return _parse_level(explicit)
    raw = os.environ.get("PC2MQTT_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def apply_log_level(level: int) -> None:
    """Set root logger level so all loggers (core, handlers) use this level."""
    logging.getLogger().setLevel(level)


def configure_logging(explicit: Optional[str] = None) -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    apply_log_level(resolve_level(explicit))
