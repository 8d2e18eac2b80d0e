"""
pc2mqtt entrypoint.

CLI:
  pc2mqtt run [--log-level LEVEL]   -> run the bridge until SIGINT/SIGTERM
  pc2mqtt handlers                  -> list available handlers and whether they are enabled
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import asdict, dataclass
from typing import Any, Optional

from pc2mqtt.config import package_version
from pc2mqtt.handlers.loader import builtin_registry, discover_scripts, load_handlers

logger = logging.getLogger(__name__)


def get_version_string() -> str:
    return package_version()


@dataclass
class Runtime:
    shutdown: threading.Event
    client: Optional[Any] = None
    manager: Optional[Any] = None
    registry: Optional[dict[str, dict[str, Any]]] = None


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _available_handlers(builtin_only: bool) -> dict[str, dict[str, Any]]:
    from pc2mqtt.paths import get_paths

    available = builtin_registry()
    if not builtin_only:
        available.update(discover_scripts(get_paths().scripts_dir))
    else:
        logger.info("Using only built-in handlers")
    return available


def _sync_registry(builtin_only: bool) -> dict[str, dict[str, Any]]:
    from pc2mqtt.handlers.registry import load_registry, merge_available, write_registry

    registry, changed = merge_available(load_registry(), _available_handlers(builtin_only))
    if changed:
        logger.info("Handler registry updated: %s", sorted(registry))
        write_registry(registry)
    return registry


def run_bridge() -> int:
    """
    Runtime mode: connect to MQTT, load handlers, block until shutdown.
    Returns process exit code.
    """
    # Lazy imports keep `pc2mqtt handlers` free of the MQTT runtime.
    from pc2mqtt.config import ConfigError, load_config
    from pc2mqtt.handlers.manager import HandlerManager
    from pc2mqtt.mqtt_client import BridgeMQTTClient
    from pc2mqtt.paths import ensure_dirs, get_paths

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    ensure_dirs(get_paths())

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    logger.info("============================================================")
    logger.info("pc2mqtt")
    logger.info("Version: %s", get_version_string())
    logger.info("Device id: %s", cfg.mqtt.device_id)
    logger.info("Broker: %s:%s", cfg.mqtt.broker, cfg.mqtt.port)
    logger.info("============================================================")

    client = BridgeMQTTClient(cfg.mqtt)
    rt.client = client

    manager = HandlerManager(client)
    rt.manager = manager
    client.add_listener(manager.on_client_event)
    client.add_listener(_log_client_event)

    if not client.connect() and not cfg.mqtt.auto_reconnect:
        logger.error("MQTT connection failed")
        _shutdown(rt)
        return 1

    try:
        # Handlers subscribe in setup(), which needs a live connection.
        while not client.is_connected() and not rt.shutdown.is_set():
            rt.shutdown.wait(timeout=0.5)
        if rt.shutdown.is_set():
            return 0

        rt.registry = _sync_registry(cfg.builtin_only)
        handlers, load_results = load_handlers(rt.registry)
        logger.info("Handler load results: %s", [asdict(r) for r in load_results])

        for handler in handlers:
            manager.add(handler)
        manager.initialize_all()
        manager.start()
        client.router.release_unrouted()

        logger.info("Bridge running (shutdown via SIGINT/SIGTERM)")
        while not rt.shutdown.is_set():
            rt.shutdown.wait(timeout=0.5)
    finally:
        _shutdown(rt)

    return 0


def _log_client_event(event) -> None:
    from pc2mqtt.events import EventType

    if event.type is EventType.CONNECTED:
        logger.info("Connected to MQTT server")
    elif event.type is EventType.RECONNECTING:
        logger.info("Reconnecting to MQTT server")
    elif event.type is EventType.CLOSED:
        logger.warning("Connection to MQTT server closed: %s (%s)", event.description, event.code)


def _shutdown(rt: Runtime) -> None:
    logger.info("Shutting down...")

    # Dispose handlers first (they unsubscribe through the mqtt connection)
    if rt.manager:
        try:
            rt.manager.dispose()
        except Exception:
            logger.exception("Error disposing handlers")
        logger.info("Handlers disposed")

    if rt.client:
        try:
            rt.client.disconnect()
        except Exception:
            logger.exception("Error disconnecting MQTT")
        logger.info("MQTT disconnected")

    if rt.registry:
        from pc2mqtt.handlers.registry import RegistryError, write_registry

        try:
            write_registry(rt.registry)
        except (RegistryError, OSError):
            logger.exception("Failed to persist handler registry")


def list_handlers() -> int:
    from pc2mqtt.config import ConfigError, load_config
    from pc2mqtt.handlers.registry import load_registry

    try:
        builtin_only = load_config().builtin_only
    except ConfigError:
        builtin_only = False
    registry = load_registry()
    available = _available_handlers(builtin_only)
    for hid in sorted(set(available) | set(registry)):
        meta = registry.get(hid) or available[hid]
        enabled = hid in registry and meta.get("enabled", True) is not False
        print(f"{hid:20} {'enabled ' if enabled else 'disabled'} {meta['entrypoint']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pc2mqtt")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)

    run_parser = sub.add_parser("run", help="Run the bridge")
    run_parser.add_argument(
        "--log-level",
        metavar="LEVEL",
        help="DEBUG, INFO, WARNING, ERROR (default: PC2MQTT_LOG_LEVEL or INFO)",
    )

    sub.add_parser("handlers", help="List available handlers")

    return p


def main(argv: list[str] | None = None) -> None:
    from pc2mqtt.core.log_config import configure_logging

    args = build_parser().parse_args(argv)
    configure_logging(getattr(args, "log_level", None))

    if args.cmd == "run":
        raise SystemExit(run_bridge())

    if args.cmd == "handlers":
        raise SystemExit(list_handlers())

    raise SystemExit(2)


if __name__ == "__main__":
    main()
