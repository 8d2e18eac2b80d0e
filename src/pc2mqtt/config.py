"""
pc2mqtt configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/pc2mqtt/pc2mqtt.env (system install)
2) ~/.config/pc2mqtt/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable

from dotenv import load_dotenv

from pc2mqtt.mqtt_topics import TopicError, validate_device_id


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("pc2mqtt")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/pc2mqtt/pc2mqtt.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "pc2mqtt" / ".env"

    # 3) project override
    yield Path(".env")


def _require_env(key: str) -> str:
    v = os.getenv(key)
    if v is None or v == "":
        raise ConfigError(f"Missing required environment variable: {key}")
    return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_bool(key: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def _int_env(key: str, default: int, *, minimum: int) -> int:
    value = _parse_int(key, os.getenv(key, str(default)))
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}")
    return value


def _bool_env(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return _parse_bool(key, raw)


@dataclass(frozen=True, slots=True)
class WillSettings:
    enabled: bool = True
    topic: str = "status"
    online_message: str = "Online"
    offline_message: str = "Offline"
    retain: bool = True
    keepalive_s: int = 60


@dataclass(frozen=True, slots=True)
class MqttSettings:
    broker: str
    port: int = 1883
    username: str = ""
    password: str = ""
    device_id: str = "pc2mqtt"
    reconnect_interval_s: float = 10.0
    auto_reconnect: bool = True
    queue_size: int = 500
    resubscribe_on_reconnect: bool = True
    will: WillSettings = field(default_factory=WillSettings)
    # in-memory broker instead of a network connection
    fake_broker: bool = False
    fake_delays: bool = True
    fake_failures: bool = False


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    mqtt: MqttSettings
    version: str
    builtin_only: bool = True


def load_config(*, dotenv_enabled: bool = True) -> BridgeConfig:
    """
    Load config by reading env files and then validating environment variables.

    Returns an immutable BridgeConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    fake_broker = _bool_env("PC2MQTT_FAKE_BROKER", False)
    broker = (os.getenv("MQTT_HOST") or "fake") if fake_broker else _require_env("MQTT_HOST")
    port = _parse_int("MQTT_PORT", os.getenv("MQTT_PORT", "1883"))
    if not (1 <= port <= 65535):
        raise ConfigError(f"MQTT_PORT out of range: {port}")

    device_id = os.getenv("PC2MQTT_DEVICE_ID", "pc2mqtt")
    try:
        validate_device_id(device_id)
    except TopicError as exc:
        raise ConfigError(f"Invalid PC2MQTT_DEVICE_ID: {exc}") from exc

    will_topic = os.getenv("PC2MQTT_WILL_TOPIC", "status").strip()
    if not will_topic.strip("/"):
        raise ConfigError("PC2MQTT_WILL_TOPIC must be non-empty")

    will = WillSettings(
        enabled=_bool_env("PC2MQTT_WILL_ENABLED", True),
        topic=will_topic,
        online_message=os.getenv("PC2MQTT_WILL_ONLINE", "Online"),
        offline_message=os.getenv("PC2MQTT_WILL_OFFLINE", "Offline"),
        retain=_bool_env("PC2MQTT_WILL_RETAIN", True),
        keepalive_s=_int_env("PC2MQTT_KEEPALIVE_S", 60, minimum=1),
    )

    mqtt = MqttSettings(
        broker=broker,
        port=port,
        username=os.getenv("MQTT_USERNAME", ""),
        password=os.getenv("MQTT_PASSWORD", ""),
        device_id=device_id,
        reconnect_interval_s=float(_int_env("PC2MQTT_RECONNECT_S", 10, minimum=1)),
        auto_reconnect=_bool_env("PC2MQTT_AUTO_RECONNECT", True),
        queue_size=_int_env("PC2MQTT_QUEUE_SIZE", 500, minimum=1),
        resubscribe_on_reconnect=_bool_env("PC2MQTT_RESUBSCRIBE", True),
        will=will,
        fake_broker=fake_broker,
        fake_delays=_bool_env("PC2MQTT_FAKE_DELAYS", True),
        fake_failures=_bool_env("PC2MQTT_FAKE_FAILURES", False),
    )

    return BridgeConfig(
        mqtt=mqtt,
        version=package_version(),
        builtin_only=_bool_env("PC2MQTT_BUILTIN_ONLY", True),
    )
